"""
NDR Classifier

Maps a free-text non-delivery reason to an NDRType.

The AI path asks an OpenAI chat model (through the openai SDK) and is only
used when NDR_AI_CLASSIFIER_ENABLED is set and an API key is configured.
Any error, timeout or unrecognised label falls back to keyword matching, so
classification never blocks NDR creation.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from openai import AsyncOpenAI

from courierhub.core.config import settings
from courierhub.models.ndr import NDRType

logger = logging.getLogger(__name__)

# Checked in order; first hit wins
KEYWORD_RULES = (
    (NDRType.ADDRESS_ISSUE, (
        "address", "landmark", "pincode", "wrong location", "incomplete", "not found",
        "door locked", "premises closed", "house locked",
    )),
    (NDRType.REFUSED, ("refused", "rejected", "cancel", "not interested", "did not order", "returned by customer")),
    (NDRType.PAYMENT_ISSUE, ("cod", "cash", "payment", "amount not ready", "money", "change not available")),
    (NDRType.CUSTOMER_UNAVAILABLE, (
        "not available", "unavailable", "not reachable", "unreachable", "no response",
        "not responding", "phone switched off", "out of station", "reschedule", "future delivery",
    )),
)

SYSTEM_PROMPT = (
    "You classify courier non-delivery reasons for Indian e-commerce shipments. "
    "Reply with exactly one label: address_issue, customer_unavailable, refused, "
    "payment_issue or other."
)


@dataclass
class Classification:
    ndr_type: NDRType
    source: str  # "ai" or "keyword"
    error: Optional[str] = None


def classify_by_keywords(reason: str) -> NDRType:
    text = (reason or "").lower()
    for ndr_type, keywords in KEYWORD_RULES:
        if any(keyword in text for keyword in keywords):
            return ndr_type
    return NDRType.OTHER


class NDRClassifier:
    """AI classification with keyword fallback."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def ai_enabled(self) -> bool:
        return settings.NDR_AI_CLASSIFIER_ENABLED and bool(settings.OPENAI_API_KEY)

    def _get_client(self) -> AsyncOpenAI:
        http_client = httpx.AsyncClient(transport=self._transport) if self._transport else None
        return AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_API_BASE,
            timeout=settings.NDR_CLASSIFIER_TIMEOUT_SECONDS,
            max_retries=0,
            http_client=http_client,
        )

    async def _classify_with_ai(self, reason: str) -> NDRType:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=settings.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": reason},
                ],
                max_tokens=10,
                temperature=0,
            )
        finally:
            await client.close()

        label = (response.choices[0].message.content or "").strip().lower().strip(".\"' ")
        return NDRType(label)

    async def classify(self, reason: str) -> Classification:
        if not self.ai_enabled:
            return Classification(ndr_type=classify_by_keywords(reason), source="keyword")

        try:
            return Classification(ndr_type=await self._classify_with_ai(reason), source="ai")
        except Exception as e:
            logger.warning(f"[NDR] AI classification failed, using keywords: {type(e).__name__}: {e}")
            return Classification(
                ndr_type=classify_by_keywords(reason),
                source="keyword",
                error=str(e),
            )
