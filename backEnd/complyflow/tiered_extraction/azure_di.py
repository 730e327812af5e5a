"""
Azure Document Intelligence adapter (Tier 1).

Submits the document to the prebuilt-layout model over the REST API, then
polls the returned Operation-Location on a bounded schedule. Document
confidence is the mean of per-page word confidence means. Key-value pairs
are mapped onto certificate fields by key text.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import Settings
from ..errors import ComplyError, ConfigurationError, DataError, TransientError
from ..schemas import DocumentInput, TierOutcome
from ..utils.polling import poll_until
from .base import TierAdapter, TierContext
from .confidence import ExtractionTimer, document_confidence

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATES = ("succeeded", "failed")

# Key text printed on certificates -> certificate field.
FIELD_ALIASES: Dict[str, List[str]] = {
    "certificate_number": [
        "certificate number", "certificate no", "cert no", "report number",
        "report reference", "serial number", "record number",
    ],
    "property_address": [
        "property address", "address of installation", "installation address",
        "premises address", "address",
    ],
    "uprn": ["uprn"],
    "issue_date": [
        "date of inspection", "inspection date", "date of issue", "issue date",
        "date of assessment", "date of survey", "survey date", "date",
    ],
    "expiry_date": ["expiry date", "date of expiry", "valid until", "valid to", "expires"],
    "next_inspection_date": [
        "next inspection date", "next inspection due", "next inspection",
        "recommended next inspection", "next review date", "review date",
    ],
    "outcome": [
        "overall assessment", "overall condition", "overall result",
        "outcome", "result",
    ],
    "engineer_name": ["engineer name", "engineer", "inspector", "assessor", "surveyor"],
    "engineer_registration": [
        "gas safe registration", "gas safe reg", "registration number",
        "registration no", "licence number",
    ],
    "contractor_name": ["trading title", "business name", "contractor", "company"],
    "risk_level": ["overall risk rating", "risk rating", "overall risk", "risk level"],
    "energy_rating": ["current energy rating", "energy rating", "epc rating"],
    "survey_type": ["type of survey", "survey type"],
}

_ALIAS_INDEX: List[Tuple[str, str]] = sorted(
    ((alias, field) for field, aliases in FIELD_ALIASES.items() for alias in aliases),
    key=lambda item: -len(item[0]),
)


def match_key_to_field(key_text: str) -> Optional[str]:
    """
    Map key text to a certificate field.

    The longest alias contained in the key text decides, so
    "Next inspection date" maps to the next inspection date rather than
    the issue date.
    """
    key_lower = key_text.lower().strip().rstrip(":").strip()
    for alias, field in _ALIAS_INDEX:
        if alias in key_lower:
            return field
    return None


class LayoutAnalysisAdapter(TierAdapter):
    """Tier 1: layout and OCR analysis via Azure Document Intelligence."""

    name = "azure_document_intelligence"
    tier = 1

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None, sleep=None):
        self.endpoint = (settings.azure_di_endpoint or "").rstrip("/")
        self.api_key = settings.azure_di_key
        self.api_version = settings.azure_di_api_version
        self.model = settings.azure_di_model
        self.poll_max_attempts = settings.poll_max_attempts
        self.poll_interval = settings.poll_interval_seconds
        self.cost_per_page = settings.tier1_cost_per_page
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def estimate_cost(self, document: DocumentInput) -> float:
        return max(document.page_count, 1) * self.cost_per_page

    def _headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {"Ocp-Apim-Subscription-Key": self.api_key or ""}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    async def attempt(self, document: DocumentInput, context: TierContext) -> TierOutcome:
        """
        Analyze a document and normalize the result.

        Args:
            document: Certificate document
            context: Run context (unused by this tier beyond logging)

        Returns:
            TierOutcome with document confidence, mapped fields, tables and
            key-value pairs
        """
        cost = self.estimate_cost(document)

        if not self.is_configured():
            logger.warning(
                "Azure Document Intelligence credentials not configured. "
                "Set AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT and AZURE_DOCUMENT_INTELLIGENCE_KEY"
            )
            return TierOutcome.failure(
                ConfigurationError("Azure Document Intelligence is not configured"),
                estimated_cost=0.0,
            )

        timer = ExtractionTimer()
        try:
            with timer:
                operation_url = await self._submit(document)
                job = await poll_until(
                    lambda: self._poll(operation_url),
                    is_done=lambda state: state.get("status") in TERMINAL_JOB_STATES,
                    max_attempts=self.poll_max_attempts,
                    interval=self.poll_interval,
                    description=f"layout analysis for run {context.run_id}",
                    sleep=self._sleep,
                )
        except ComplyError as e:
            logger.error(f"Layout analysis failed for run {context.run_id}: {e}")
            return TierOutcome.failure(e, timer.elapsed_ms, cost)
        except httpx.HTTPError as e:
            logger.error(f"Layout analysis request error for run {context.run_id}: {e}")
            return TierOutcome.failure(TransientError(f"HTTP error: {e}"), timer.elapsed_ms, cost)

        if job.get("status") == "failed":
            message = (job.get("error") or {}).get("message", "Analysis failed")
            return TierOutcome.failure(TransientError(message), timer.elapsed_ms, cost)

        outcome = self.parse_analysis(job.get("analyzeResult") or {})
        outcome.processing_time_ms = timer.elapsed_ms
        outcome.estimated_cost = max(outcome.metadata.get("page_count", 0), document.page_count, 1) * self.cost_per_page
        logger.info(
            f"Layout analysis for run {context.run_id}: confidence {outcome.confidence:.2f}, "
            f"{len(outcome.structured_fields)} fields"
        )
        return outcome

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            f"Retrying layout submit after {state.outcome.exception()}"
        ),
    )
    async def _submit(self, document: DocumentInput) -> str:
        url = (
            f"{self.endpoint}/documentintelligence/documentModels/{self.model}:analyze"
            f"?api-version={self.api_version}&outputContentFormat=markdown"
        )
        try:
            response = await self.client.post(
                url, content=document.content, headers=self._headers(document.mime_type)
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Layout submit timed out: {e}") from e

        self._raise_for_status(response)

        operation_url = response.headers.get("Operation-Location")
        if not operation_url:
            raise TransientError("No Operation-Location header in analyze response")
        return operation_url

    async def _poll(self, operation_url: str) -> Dict[str, Any]:
        response = await self.client.get(operation_url, headers=self._headers())
        if response.status_code != 200:
            # Treated as still running; the poll ceiling bounds the wait.
            logger.debug(f"Poll returned {response.status_code}, continuing")
            return {"status": "running"}
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        if status in (401, 403):
            raise ConfigurationError(f"Layout service rejected credentials ({status}): {detail}")
        if status == 429 or status >= 500:
            raise TransientError(f"Layout service error ({status}): {detail}", status_code=status)
        raise DataError(f"Layout service refused document ({status}): {detail}")

    def parse_analysis(self, analysis: Dict[str, Any]) -> TierOutcome:
        """Convert an analyzeResult payload into a TierOutcome."""
        pages = analysis.get("pages") or []
        confidence = document_confidence(
            [[w.get("confidence", 0.0) for w in page.get("words") or []] for page in pages]
        )

        tables = [
            {
                "rows": table.get("rowCount", 0),
                "columns": table.get("columnCount", 0),
                "cells": [
                    {
                        "row": cell.get("rowIndex", 0),
                        "column": cell.get("columnIndex", 0),
                        "content": cell.get("content", ""),
                    }
                    for cell in table.get("cells") or []
                ],
            }
            for table in analysis.get("tables") or []
        ]

        key_values = []
        fields: Dict[str, Any] = {}
        field_confidence: Dict[str, float] = {}
        for pair in analysis.get("keyValuePairs") or []:
            key = ((pair.get("key") or {}).get("content") or "").strip()
            value = ((pair.get("value") or {}).get("content") or "").strip()
            pair_confidence = float(pair.get("confidence") or 0.0)
            key_values.append({"key": key, "value": value, "confidence": pair_confidence})
            if not key or not value:
                continue

            field = match_key_to_field(key)
            if field and pair_confidence >= field_confidence.get(field, -1.0):
                fields[field] = value
                field_confidence[field] = pair_confidence

        return TierOutcome(
            succeeded=True,
            confidence=confidence,
            raw_text=analysis.get("content"),
            structured_fields=fields,
            field_confidence=field_confidence,
            metadata={
                "page_count": len(pages),
                "tables": tables,
                "key_value_pairs": key_values,
            },
        )
