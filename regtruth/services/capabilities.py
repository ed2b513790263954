from __future__ import annotations

import logging
from typing import Any

import httpx

from regtruth.core.config import Settings
from regtruth.services.records import Conflict, DiscoverySource, Evidence, Rule, SourcePointer

logger = logging.getLogger(__name__)

OCR_PRIMARY_ENGINE = "primary"
OCR_FALLBACK_ENGINE = "fallback"
SCANNED_CONTENT_TYPES = {"application/pdf+scanned", "image/png", "image/jpeg", "image/tiff"}


class CapabilityError(Exception):
    """Raised when a downstream capability call fails or returns an unusable answer."""

    def __init__(self, capability: str, message: str) -> None:
        super().__init__(f"{capability}: {message}")
        self.capability = capability


def needs_ocr(evidence: Evidence) -> bool:
    return evidence.content_type in SCANNED_CONTENT_TYPES or evidence.content_type.startswith("image/")


class CapabilityClient:
    """HTTP client for the opaque discovery, extraction, composition, arbitration and OCR services."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> CapabilityClient:
        return cls(
            settings.capabilities_base_url,
            settings.capabilities_api_key,
            timeout_seconds=settings.capabilities_timeout_seconds,
        )

    async def scan(self, source: DiscoverySource, *, run_id: str | None = None) -> list[dict[str, Any]]:
        payload = await self._post(
            "discovery",
            "/discovery/scan",
            {"source_id": source.id, "url": source.url, "domain": source.domain, "run_id": run_id},
        )
        documents = payload.get("documents")
        if not isinstance(documents, list):
            raise CapabilityError("discovery", "response is missing documents")
        return [item for item in documents if isinstance(item, dict) and item.get("content")]

    async def extract(self, evidence: Evidence, *, text: str | None = None) -> list[dict[str, Any]]:
        payload = await self._post(
            "extraction",
            "/extraction/extract",
            {
                "evidence_id": evidence.id,
                "url": evidence.url,
                "content_type": evidence.content_type,
                "content": text if text is not None else evidence.raw_content,
            },
        )
        pointers = payload.get("pointers")
        if not isinstance(pointers, list):
            raise CapabilityError("extraction", "response is missing pointers")
        return [
            item
            for item in pointers
            if isinstance(item, dict) and item.get("concept_slug") and item.get("extracted_value") is not None
        ]

    async def compose(self, pointers: list[SourcePointer]) -> dict[str, Any]:
        payload = await self._post(
            "composition",
            "/composition/compose",
            {
                "pointers": [
                    {
                        "id": pointer.id,
                        "evidence_id": pointer.evidence_id,
                        "concept_slug": pointer.concept_slug,
                        "extracted_value": pointer.extracted_value,
                        "value_type": pointer.value_type,
                        "exact_quote": pointer.exact_quote,
                        "confidence": pointer.confidence,
                    }
                    for pointer in pointers
                ]
            },
        )
        rule = payload.get("rule")
        if not isinstance(rule, dict):
            raise CapabilityError("composition", "response is missing rule")
        missing = [key for key in ("concept_slug", "value", "risk_tier", "confidence") if rule.get(key) is None]
        if missing:
            raise CapabilityError("composition", f"rule is missing fields: {', '.join(missing)}")
        return rule

    async def arbitrate(self, conflict: Conflict, rules: list[Rule]) -> dict[str, Any]:
        return await self._post(
            "arbitration",
            "/arbitration/arbitrate",
            {
                "conflict_id": conflict.id,
                "reason": conflict.reason,
                "rules": [
                    {
                        "id": rule.id,
                        "concept_slug": rule.concept_slug,
                        "value": rule.value,
                        "value_type": rule.value_type,
                        "risk_tier": rule.risk_tier,
                        "authority_level": rule.authority_level,
                        "applies_when": rule.applies_when,
                        "confidence": rule.confidence,
                    }
                    for rule in rules
                ],
            },
        )

    async def recognize(self, evidence: Evidence, *, engine: str) -> str:
        payload = await self._post(
            "ocr",
            "/ocr/recognize",
            {
                "evidence_id": evidence.id,
                "content_type": evidence.content_type,
                "content": evidence.raw_content,
                "engine": engine,
            },
        )
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            raise CapabilityError("ocr", f"engine {engine} returned no text")
        return text

    async def recognize_with_fallback(self, evidence: Evidence) -> tuple[str, str]:
        try:
            return await self.recognize(evidence, engine=OCR_PRIMARY_ENGINE), OCR_PRIMARY_ENGINE
        except CapabilityError as exc:
            logger.warning("Primary OCR failed for evidence_id=%s: %s; trying fallback", evidence.id, exc)
        return await self.recognize(evidence, engine=OCR_FALLBACK_ENGINE), OCR_FALLBACK_ENGINE

    async def _post(self, capability: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}{path}", json=body, headers=self.headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise CapabilityError(capability, f"HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise CapabilityError(capability, str(exc) or exc.__class__.__name__) from exc
        if not isinstance(payload, dict):
            raise CapabilityError(capability, "response is not a JSON object")
        return payload
