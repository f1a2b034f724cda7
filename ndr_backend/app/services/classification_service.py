"""
NDR Classification Service.

Maps a carrier failure reason plus free-text remarks to a FailureCategory.
The AI provider is tried first (PII-scrubbed prompt, bounded timeout, circuit
breaker); any provider problem falls back to ordered keyword rules so the
same input always yields the same category. `classify` never raises.
"""
import asyncio
import json
import re
from typing import Optional, List, Tuple

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.exceptions import ClassifierError
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.core.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenException,
    classifier_circuit_breaker,
)
from ndr_backend.app.schemas.ndr import ClassificationResult, ClassificationSource, FailureCategory
from ndr_backend.app.services.llm_adapter import LLMAdapter, get_adapter
from ndr_backend.app.services.pii_scrubber import PIIScrubber

logger = get_logger(__name__)

MAX_FIELD_CHARS = 500

CLASSIFICATION_PROMPT = """You classify failed parcel deliveries (NDR) for a shipping platform.

Carrier failure reason: {raw_reason}
Courier remarks: {remarks}

Choose exactly one category:
- address_issue: address incomplete, wrong, unlocatable or pincode mismatch
- customer_unavailable: customer not reachable, not at home, phone off
- refused: customer refused or cancelled the delivery
- payment_issue: cash on delivery amount not ready or payment dispute
- other: anything else

Respond with JSON only: {{"category": "<category>", "explanation": "<one sentence>"}}"""

# Ordered rules, first match wins
_KEYWORD_RULES: List[Tuple[FailureCategory, re.Pattern]] = [
    (
        FailureCategory.ADDRESS_ISSUE,
        re.compile(
            r"\b(address|addr|pincode|pin code|landmark|incomplete|wrong location|"
            r"not locatable|unlocatable|house not found|area not serviceable|incorrect)\b"
        ),
    ),
    # Must precede "not available" below
    (FailureCategory.PAYMENT_ISSUE, re.compile(r"\bchange not available\b")),
    (
        FailureCategory.CUSTOMER_UNAVAILABLE,
        re.compile(
            r"\b(not available|unavailable|not reachable|unreachable|switched off|"
            r"not at home|door locked|premises closed|no response|not answering|"
            r"did not answer|out of station|consignee unavailable|not responding)\b"
        ),
    ),
    (
        FailureCategory.REFUSED,
        re.compile(r"\b(refused|refuse|rejected|declined|cancelled|canceled|does not want|not interested)\b"),
    ),
    (
        FailureCategory.PAYMENT_ISSUE,
        re.compile(r"\b(cod|cash|payment|amount|money|no cash)\b"),
    ),
]

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _normalise(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def classify_by_keywords(raw_reason: str, remarks: Optional[str]) -> ClassificationResult:
    """Deterministic keyword classification used when the provider is unusable."""
    text = _normalise(f"{raw_reason or ''} {(remarks or '')}".replace("_", " "))
    for category, pattern in _KEYWORD_RULES:
        match = pattern.search(text)
        if match:
            return ClassificationResult(
                category=category,
                explanation=f"Keyword match '{match.group(0)}'",
                source=ClassificationSource.KEYWORD_FALLBACK,
            )
    return ClassificationResult(
        category=FailureCategory.OTHER,
        explanation="No classification keywords matched",
        source=ClassificationSource.DEFAULT,
    )


def parse_provider_output(text: str) -> ClassificationResult:
    """Parse provider JSON. Raises ClassifierError when unusable."""
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    if not cleaned:
        raise ClassifierError("Empty provider response")

    # Tolerate prose around the JSON object
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ClassifierError("No JSON object in provider response")
    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ClassifierError(f"Invalid JSON from provider: {e}") from e

    raw_category = str(data.get("category", "")).strip().lower()
    try:
        category = FailureCategory(raw_category)
    except ValueError as e:
        raise ClassifierError(f"Unknown category from provider: {raw_category!r}") from e

    explanation = str(data.get("explanation") or "").strip()[:MAX_FIELD_CHARS]
    return ClassificationResult(
        category=category,
        explanation=explanation or f"Classified as {category.value}",
        source=ClassificationSource.PROVIDER,
    )


class ClassificationService:
    def __init__(
        self,
        adapter: Optional[LLMAdapter] = None,
        scrubber: Optional[PIIScrubber] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        settings = get_settings()
        self.adapter = adapter
        self.scrubber = scrubber or PIIScrubber()
        self.circuit_breaker = circuit_breaker or classifier_circuit_breaker
        self.timeout_seconds = min(timeout_seconds or settings.classifier_timeout_seconds, 3.0)
        self.max_retries = settings.classifier_max_retries if max_retries is None else max_retries

    @classmethod
    def from_settings(cls) -> "ClassificationService":
        return cls(adapter=get_adapter())

    def build_prompt(self, raw_reason: str, remarks: Optional[str]) -> str:
        reason, _ = self.scrubber.scrub((raw_reason or "")[:MAX_FIELD_CHARS])
        scrubbed_remarks, _ = self.scrubber.scrub((remarks or "")[:MAX_FIELD_CHARS])
        return CLASSIFICATION_PROMPT.format(
            raw_reason=reason,
            remarks=scrubbed_remarks or "(none)",
        )

    async def classify(self, raw_reason: str, remarks: Optional[str] = None) -> ClassificationResult:
        if self.adapter is None:
            return classify_by_keywords(raw_reason, remarks)

        prompt = self.build_prompt(raw_reason, remarks)

        async def _generate():
            return await asyncio.wait_for(
                self.adapter.generate(prompt, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.circuit_breaker.call(_generate)
                result = parse_provider_output(response.text)
                logger.info(
                    f"Classified NDR as {result.category.value} via {self.adapter.model_version}",
                    extra={"extra_data": {"prompt_hash": response.prompt_hash}},
                )
                return result
            except CircuitBreakerOpenException:
                logger.warning("Classifier circuit open; using keyword rules")
                break
            except ClassifierError as e:
                # Unusable output is not retried; the model will answer the same way
                logger.warning(f"Classifier returned unusable output: {e}")
                break
            except Exception as e:
                logger.warning(f"Classifier attempt {attempt + 1} failed: {e!r}")

        return classify_by_keywords(raw_reason, remarks)
