"""Tests for the layout analysis tier."""

import httpx
import pytest

from complyflow.config.settings import Settings
from complyflow.errors import ErrorCategory
from complyflow.tiered_extraction import LayoutAnalysisAdapter, TierContext
from complyflow.tiered_extraction.azure_di import match_key_to_field

from .factories import ORG, gas_document

ENDPOINT = "https://di.example.cognitiveservices.azure.com"
OPERATION_URL = f"{ENDPOINT}/documentintelligence/documentModels/prebuilt-layout/analyzeResults/op-1"

ANALYZE_RESULT = {
    "content": "Landlord Gas Safety Record\nDate of inspection: 01/01/2024",
    "pages": [
        {"words": [{"confidence": 0.9}, {"confidence": 0.8}]},
        {"words": [{"confidence": 1.0}]},
    ],
    "tables": [{
        "rowCount": 1,
        "columnCount": 2,
        "cells": [
            {"rowIndex": 0, "columnIndex": 0, "content": "Boiler"},
            {"rowIndex": 0, "columnIndex": 1, "content": "Safe"},
        ],
    }],
    "keyValuePairs": [
        {"key": {"content": "Date of inspection:"}, "value": {"content": "01/01/2024"}, "confidence": 0.95},
        {"key": {"content": "Next inspection date"}, "value": {"content": "31/12/2024"}, "confidence": 0.9},
        {"key": {"content": "Gas Safe Registration"}, "value": {"content": "12345"}, "confidence": 0.4},
        {"key": {"content": "Registration number"}, "value": {"content": "123456"}, "confidence": 0.93},
        {"key": {"content": "Notes"}, "value": {"content": "none"}, "confidence": 0.99},
        {"key": {"content": "Outcome"}, "value": None, "confidence": 0.8},
    ],
}


async def _no_sleep(seconds: float) -> None:
    return None


def _settings(**overrides) -> Settings:
    values = {
        "azure_di_endpoint": ENDPOINT,
        "azure_di_key": "di-key",
        "poll_interval_seconds": 0.0,
        "poll_max_attempts": 3,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _context() -> TierContext:
    return TierContext(org_id=ORG, run_id="run_test", certificate_type="GAS_SAFETY")


def _adapter(handler, **overrides) -> LayoutAnalysisAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LayoutAnalysisAdapter(_settings(**overrides), client=client, sleep=_no_sleep)


class TestKeyMapping:
    """Tests for key text to field mapping."""

    @pytest.mark.parametrize(
        "key,field",
        [
            ("Date of inspection:", "issue_date"),
            ("Next inspection date", "next_inspection_date"),
            ("EXPIRY DATE", "expiry_date"),
            ("Overall risk rating", "risk_level"),
            ("Favourite colour", None),
        ],
    )
    def test_longest_alias_wins(self, key, field):
        """Keys map to the field of the longest alias they contain."""
        assert match_key_to_field(key) == field


class TestLayoutAnalysisAdapter:
    """Tests for LayoutAnalysisAdapter."""

    @pytest.mark.asyncio
    async def test_submit_and_poll(self):
        """A submitted job is polled until it succeeds and is then parsed."""
        requests = []
        polls = iter([{"status": "running"}, {"status": "succeeded", "analyzeResult": ANALYZE_RESULT}])

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "POST":
                assert request.headers["Ocp-Apim-Subscription-Key"] == "di-key"
                return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})
            return httpx.Response(200, json=next(polls))

        adapter = _adapter(handler)
        result = await adapter.attempt(gas_document(pages=2), _context())

        assert result.succeeded
        assert result.confidence == pytest.approx(0.925)
        assert result.structured_fields["issue_date"] == "01/01/2024"
        assert result.structured_fields["engineer_registration"] == "123456"
        assert "outcome" not in result.structured_fields
        assert result.metadata["page_count"] == 2
        assert result.metadata["tables"][0]["cells"][1]["content"] == "Safe"
        assert result.estimated_cost == pytest.approx(2 * 0.0015)
        assert [r.method for r in requests] == ["POST", "GET", "GET"]
        assert ":analyze" in str(requests[0].url)

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        """A 401 is reported as a configuration failure without retrying."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="Access denied")

        result = await _adapter(handler).attempt(gas_document(), _context())

        assert not result.succeeded
        assert result.error_category == ErrorCategory.CONFIGURATION
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refused_document(self):
        """A 400 is a data failure."""
        result = await _adapter(lambda request: httpx.Response(400, text="Bad PDF")).attempt(
            gas_document(), _context()
        )

        assert result.error_category == ErrorCategory.DATA
        assert "Bad PDF" in result.error

    @pytest.mark.asyncio
    async def test_failed_job(self):
        """A job that ends in the failed state is a transient failure."""
        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})
            return httpx.Response(200, json={"status": "failed", "error": {"message": "Corrupt file"}})

        result = await _adapter(handler).attempt(gas_document(), _context())

        assert result.error_category == ErrorCategory.TRANSIENT
        assert result.error == "Corrupt file"

    @pytest.mark.asyncio
    async def test_poll_ceiling(self):
        """A job that never finishes stops after the configured number of polls."""
        polls = []

        def handler(request):
            if request.method == "POST":
                return httpx.Response(202, headers={"Operation-Location": OPERATION_URL})
            polls.append(request)
            return httpx.Response(200, json={"status": "running"})

        result = await _adapter(handler, poll_max_attempts=4).attempt(gas_document(), _context())

        assert not result.succeeded
        assert result.error_category == ErrorCategory.TRANSIENT
        assert len(polls) == 4

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        """Missing credentials short-circuit without any request."""
        def handler(request):
            raise AssertionError("no request expected")

        adapter = _adapter(handler, azure_di_key=None)
        result = await adapter.attempt(gas_document(), _context())

        assert not adapter.is_configured()
        assert result.error_category == ErrorCategory.CONFIGURATION
        assert result.estimated_cost == 0.0

    def test_parse_empty_analysis(self):
        """An analysis without pages has zero confidence and no fields."""
        outcome = LayoutAnalysisAdapter(_settings()).parse_analysis({})

        assert outcome.succeeded
        assert outcome.confidence == 0.0
        assert outcome.structured_fields == {}
