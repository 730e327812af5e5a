"""
Vision model adapter (Tier 2).

Renders the certificate to page images (PyMuPDF for PDFs, images pass
through) and asks a vision-capable chat model for the certificate's fields
as JSON. Confidence is the model's self-reported confidence, or the mean of
its per-field confidences when it does not give one. High-confidence fields
from Tier 1 are supplied as known values and kept.
"""

import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import Settings
from ..errors import ComplyError, ConfigurationError, DataError, TransientError
from ..schemas import DocumentInput, TierOutcome
from ..schemas.certificates import record_class_for
from .base import TierAdapter, TierContext
from .confidence import ExtractionTimer, clamp, mean_field_confidence

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert UK housing compliance officer reading landlord compliance "
    "certificates (gas safety records, EICRs, fire risk assessments, asbestos surveys, EPCs)."
)

TRANSIENT_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def build_extraction_prompt(certificate_type: str, known_fields: Dict[str, Any]) -> str:
    """
    Build the extraction prompt for a certificate type.

    Args:
        certificate_type: Certificate type code
        known_fields: Values already read with high confidence by a lower tier

    Returns:
        Prompt text
    """
    record_cls = record_class_for(certificate_type)
    field_names = [name for name in record_cls.model_fields if name != "certificate_type"]
    field_list = "\n".join(f"- {name}" for name in field_names)

    known_text = ""
    if known_fields:
        known_text = (
            "\nThese values were already read with high confidence; keep them unless the "
            f"image clearly contradicts them:\n{json.dumps(known_fields, default=str, indent=2)}\n"
        )

    return f"""Extract the fields of this {certificate_type} certificate.

Fields:
{field_list}
{known_text}
Return a JSON object with this exact structure:
{{
  "fields": {{"field_name": value or null}},
  "field_confidence": {{"field_name": 0.0 to 1.0}},
  "confidence": 0.0 to 1.0 for the extraction as a whole
}}

Guidelines:
- Dates as YYYY-MM-DD
- List fields (appliances, observations, materials, defects) as arrays of objects
- Lower the confidence for handwritten, faded or partially visible values
- Use null for anything you cannot find

Only return the JSON object, no additional text."""


def parse_model_response(content: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model response."""
    match = _JSON_BLOCK.search(content or "")
    json_text = match.group(1) if match else (content or "").strip()
    try:
        data = json.loads(json_text)
    except json.JSONDecodeError as e:
        raise DataError(f"Vision model returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise DataError("Vision model response is not a JSON object")
    return data


def render_pages(document: DocumentInput, max_pages: int) -> List[str]:
    """Return base64 data URLs for up to max_pages pages."""
    if document.mime_type.startswith("image/"):
        encoded = base64.b64encode(document.content).decode("utf-8")
        return [f"data:{document.mime_type};base64,{encoded}"]

    images = []
    with fitz.open(stream=document.content, filetype="pdf") as pdf:
        for page_num in range(min(max_pages, len(pdf))):
            pix = pdf[page_num].get_pixmap(dpi=150)
            encoded = base64.b64encode(pix.tobytes("png")).decode("utf-8")
            images.append(f"data:image/png;base64,{encoded}")
    return images


class VisionModelAdapter(TierAdapter):
    """Tier 2: vision-capable chat model. Azure OpenAI overrides OpenAI when configured."""

    name = "vision_model"
    tier = 2

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self._settings = settings
        self._is_azure = settings.is_azure_openai_configured()
        if self._is_azure:
            self.model = settings.azure_openai_deployment_name or "gpt-4o"
        else:
            self.model = settings.openai_model
        self.max_pages = settings.vision_max_pages
        self.max_tokens = settings.vision_max_tokens
        self.cost_per_page = settings.tier2_cost_per_page
        self._client = client

    @property
    def provider_name(self) -> str:
        return "azure-openai" if self._is_azure else "openai"

    @property
    def client(self):
        """Lazy initialization of the chat client."""
        if self._client is None:
            if self._is_azure:
                self._client = AsyncAzureOpenAI(
                    api_key=self._settings.azure_openai_api_key,
                    azure_endpoint=self._settings.azure_openai_endpoint,
                    api_version=self._settings.azure_openai_api_version,
                )
            else:
                self._client = AsyncOpenAI(api_key=self._settings.openai_api_key)
            logger.info(f"Vision client initialized with {self.provider_name} (model: {self.model})")
        return self._client

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None

    def is_configured(self) -> bool:
        return self._client is not None or self._settings.is_vision_configured()

    def estimate_cost(self, document: DocumentInput) -> float:
        return min(max(document.page_count, 1), self.max_pages) * self.cost_per_page

    async def attempt(self, document: DocumentInput, context: TierContext) -> TierOutcome:
        cost = self.estimate_cost(document)
        if not self.is_configured():
            logger.warning(
                "No vision provider configured. Set OPENAI_API_KEY or "
                "AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_API_KEY + AZURE_OPENAI_DEPLOYMENT_NAME"
            )
            return TierOutcome.failure(ConfigurationError("Vision model is not configured"))

        timer = ExtractionTimer()
        try:
            with timer:
                images = render_pages(document, self.max_pages)
                if not images:
                    raise DataError("Document has no renderable pages")
                prompt = build_extraction_prompt(context.certificate_type, context.carried_fields)
                content = await self._complete(images, prompt)
                data = parse_model_response(content)
        except ComplyError as e:
            logger.error(f"Vision extraction failed for run {context.run_id}: {e}")
            return TierOutcome.failure(e, timer.elapsed_ms, cost)
        except openai.AuthenticationError as e:
            return TierOutcome.failure(ConfigurationError(f"Vision provider rejected credentials: {e}"), timer.elapsed_ms, cost)
        except TRANSIENT_OPENAI_ERRORS as e:
            return TierOutcome.failure(TransientError(f"Vision provider unavailable: {e}"), timer.elapsed_ms, cost)
        except (openai.OpenAIError, RuntimeError) as e:
            logger.error(f"Vision extraction error for run {context.run_id}: {e}")
            return TierOutcome.failure(DataError(str(e)), timer.elapsed_ms, cost)

        fields = {k: v for k, v in (data.get("fields") or {}).items() if v is not None}
        field_confidence = {
            k: clamp(float(v)) for k, v in (data.get("field_confidence") or {}).items()
            if k in fields and isinstance(v, (int, float))
        }
        for name, value in context.carried_fields.items():
            if name not in fields:
                fields[name] = value
                field_confidence[name] = context.prior_field_confidence.get(name, 0.9)

        reported = data.get("confidence")
        if isinstance(reported, (int, float)):
            confidence = clamp(float(reported))
        else:
            confidence = mean_field_confidence(field_confidence)

        logger.info(
            f"Vision extraction for run {context.run_id}: confidence {confidence:.2f}, "
            f"{len(fields)} fields from {len(images)} page(s)"
        )
        return TierOutcome(
            succeeded=True,
            confidence=confidence,
            raw_text=content,
            structured_fields=fields,
            field_confidence=field_confidence,
            metadata={"page_count": len(images), "provider": self.provider_name, "model": self.model},
            processing_time_ms=timer.elapsed_ms,
            estimated_cost=len(images) * self.cost_per_page,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(TRANSIENT_OPENAI_ERRORS),
        reraise=True,
    )
    async def _complete(self, images: List[str], prompt: str) -> str:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image_url in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": image_url, "detail": "high"},
            })

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            max_tokens=self.max_tokens,
            temperature=0.0,
        )
        return response.choices[0].message.content or ""
