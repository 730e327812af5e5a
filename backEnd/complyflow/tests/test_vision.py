"""Tests for the vision model tier."""

import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from complyflow.config.settings import Settings
from complyflow.errors import ErrorCategory
from complyflow.schemas import DocumentInput
from complyflow.tiered_extraction import TierContext, VisionModelAdapter
from complyflow.tiered_extraction.vision import build_extraction_prompt, parse_model_response

from .factories import ORG


class FakeCompletions:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=response))])


class FakeChatClient:
    def __init__(self, *responses):
        self.completions = FakeCompletions(responses)
        self.chat = SimpleNamespace(completions=self.completions)

    async def close(self):
        pass


def _image_document() -> DocumentInput:
    return DocumentInput(
        content=b"\x89PNG fake",
        mime_type="image/png",
        certificate_type="GAS_SAFETY",
        page_count=1,
    )


def _context(**kwargs) -> TierContext:
    return TierContext(org_id=ORG, run_id="run_test", certificate_type="GAS_SAFETY", **kwargs)


def _adapter(client) -> VisionModelAdapter:
    return VisionModelAdapter(Settings(_env_file=None), client=client)


class TestResponseParsing:
    """Tests for prompt building and response parsing."""

    def test_prompt_lists_fields_and_known_values(self):
        """The prompt names the record's fields and any carried values."""
        prompt = build_extraction_prompt("GAS_SAFETY", {"uprn": "100023336956"})

        assert "- appliances" in prompt
        assert "- certificate_type" not in prompt
        assert "100023336956" in prompt

    def test_fenced_json(self):
        """JSON inside a markdown fence is extracted."""
        content = 'Here you go:\n```json\n{"fields": {"outcome": "PASS"}}\n```'

        assert parse_model_response(content) == {"fields": {"outcome": "PASS"}}


class TestVisionModelAdapter:
    """Tests for VisionModelAdapter."""

    @pytest.mark.asyncio
    async def test_reported_confidence(self):
        """Fields and the model's own confidence are returned."""
        client = FakeChatClient(json.dumps({
            "fields": {"outcome": "PASS", "issue_date": "2024-01-01", "uprn": None},
            "field_confidence": {"outcome": 0.9, "issue_date": 0.8, "uprn": 0.1},
            "confidence": 0.88,
        }))

        result = await _adapter(client).attempt(_image_document(), _context())

        assert result.succeeded
        assert result.confidence == 0.88
        assert result.structured_fields == {"outcome": "PASS", "issue_date": "2024-01-01"}
        assert "uprn" not in result.field_confidence
        assert result.estimated_cost == pytest.approx(0.01)
        request = client.completions.calls[0]
        assert request["temperature"] == 0.0
        assert request["messages"][1]["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_confidence_from_fields(self):
        """Without an overall confidence the mean field confidence is used."""
        client = FakeChatClient(json.dumps({
            "fields": {"outcome": "PASS", "issue_date": "2024-01-01"},
            "field_confidence": {"outcome": 0.9, "issue_date": 0.7},
        }))

        result = await _adapter(client).attempt(_image_document(), _context())

        assert result.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_carried_fields_are_kept(self):
        """High-confidence lower-tier fields survive when the model omits them."""
        client = FakeChatClient(json.dumps({"fields": {"outcome": "PASS"}, "confidence": 0.9}))
        context = _context(
            carried_fields={"engineer_registration": "123456"},
            prior_field_confidence={"engineer_registration": 0.97},
        )

        result = await _adapter(client).attempt(_image_document(), context)

        assert result.structured_fields["engineer_registration"] == "123456"
        assert result.field_confidence["engineer_registration"] == 0.97
        assert "123456" in client.completions.calls[0]["messages"][1]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Unparseable model output is a data failure."""
        result = await _adapter(FakeChatClient("I cannot read this certificate.")).attempt(
            _image_document(), _context()
        )

        assert not result.succeeded
        assert result.error_category == ErrorCategory.DATA

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        """An authentication error is a configuration failure."""
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        error = openai.AuthenticationError(
            "Incorrect API key", response=httpx.Response(401, request=request), body=None
        )

        result = await _adapter(FakeChatClient(error)).attempt(_image_document(), _context())

        assert result.error_category == ErrorCategory.CONFIGURATION

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        """No provider and no injected client means no call is made."""
        adapter = VisionModelAdapter(Settings(_env_file=None))

        result = await adapter.attempt(_image_document(), _context())

        assert not adapter.is_configured()
        assert result.error_category == ErrorCategory.CONFIGURATION

    def test_azure_overrides_openai(self):
        """A complete Azure OpenAI configuration selects the Azure deployment."""
        settings = Settings(
            _env_file=None,
            openai_api_key="sk-test",
            azure_openai_endpoint="https://test.openai.azure.com",
            azure_openai_api_key="azure-key",
            azure_openai_deployment_name="gpt-4o-certs",
        )

        adapter = VisionModelAdapter(settings)

        assert adapter.provider_name == "azure-openai"
        assert adapter.model == "gpt-4o-certs"
