"""
Unit tests for NDR classification: keyword fallback rules and the provider path.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ndr_backend.app.core.resilience import CircuitBreaker
from ndr_backend.app.schemas.ndr import ClassificationSource, FailureCategory
from ndr_backend.app.services.classification_service import (
    ClassificationService,
    classify_by_keywords,
    parse_provider_output,
)
from ndr_backend.app.core.exceptions import ClassifierError
from ndr_backend.app.services.llm_adapter import LLMResponse


def _provider(*texts_or_errors):
    """Adapter double whose generate() replays the given texts / exceptions."""
    adapter = MagicMock()
    adapter.model_version = "test/provider"
    side_effects = []
    for item in texts_or_errors:
        if isinstance(item, Exception):
            side_effects.append(item)
        else:
            side_effects.append(LLMResponse(
                text=item,
                model_version="test/provider",
                prompt_hash="abc123",
                timestamp=datetime.now(timezone.utc),
                provider="test",
            ))
    adapter.generate = AsyncMock(side_effect=side_effects)
    return adapter


def _service(adapter=None, max_retries=1):
    return ClassificationService(
        adapter=adapter,
        circuit_breaker=CircuitBreaker(failure_threshold=5, recovery_timeout=60),
        timeout_seconds=1.0,
        max_retries=max_retries,
    )


@pytest.mark.parametrize("raw_reason,remarks,expected", [
    ("undelivered", "Customer not available, phone switched off", FailureCategory.CUSTOMER_UNAVAILABLE),
    ("undelivered", "Incomplete address, landmark missing", FailureCategory.ADDRESS_ISSUE),
    ("customer_refused", "Customer refused to accept the parcel", FailureCategory.REFUSED),
    ("undelivered", "COD amount not ready", FailureCategory.PAYMENT_ISSUE),
    ("undelivered", "COD change not available with customer", FailureCategory.PAYMENT_ISSUE),
    ("undelivered", "Vehicle breakdown", FailureCategory.OTHER),
])
def test_keyword_rules(raw_reason, remarks, expected):
    result = classify_by_keywords(raw_reason, remarks)
    assert result.category == expected


def test_keyword_rules_first_match_wins():
    """Address terms outrank availability terms in the same remark."""
    result = classify_by_keywords("undelivered", "Wrong address and customer not reachable")
    assert result.category == FailureCategory.ADDRESS_ISSUE


def test_keyword_classification_is_deterministic():
    results = {
        classify_by_keywords("undelivered", "  Customer NOT available,   phone switched off ").category
        for _ in range(20)
    }
    assert results == {FailureCategory.CUSTOMER_UNAVAILABLE}


def test_parse_provider_output_tolerates_code_fences():
    text = '```json\n{"category": "refused", "explanation": "Customer declined"}\n```'
    result = parse_provider_output(text)
    assert result.category == FailureCategory.REFUSED
    assert result.source == ClassificationSource.PROVIDER


def test_parse_provider_output_rejects_unknown_category():
    with pytest.raises(ClassifierError):
        parse_provider_output('{"category": "lost_in_space", "explanation": "?"}')


@pytest.mark.asyncio
async def test_no_provider_uses_keywords():
    result = await _service(adapter=None).classify("undelivered", "Customer not available, phone switched off")
    assert result.category == FailureCategory.CUSTOMER_UNAVAILABLE
    assert result.source == ClassificationSource.KEYWORD_FALLBACK


@pytest.mark.asyncio
async def test_provider_result_is_used():
    adapter = _provider('{"category": "payment_issue", "explanation": "COD not ready"}')
    result = await _service(adapter).classify("undelivered", "Customer asked to come back tomorrow")
    assert result.category == FailureCategory.PAYMENT_ISSUE
    assert result.source == ClassificationSource.PROVIDER


@pytest.mark.asyncio
async def test_provider_timeout_falls_back_after_one_retry():
    adapter = _provider(asyncio.TimeoutError(), asyncio.TimeoutError())
    result = await _service(adapter, max_retries=1).classify(
        "undelivered", "Customer not available, phone switched off"
    )
    assert adapter.generate.await_count == 2
    assert result.category == FailureCategory.CUSTOMER_UNAVAILABLE
    assert result.source == ClassificationSource.KEYWORD_FALLBACK


@pytest.mark.asyncio
async def test_unusable_provider_output_is_not_retried():
    adapter = _provider("I think it is probably an address thing")
    result = await _service(adapter, max_retries=3).classify("undelivered", "Door locked")
    assert adapter.generate.await_count == 1
    assert result.category == FailureCategory.CUSTOMER_UNAVAILABLE


@pytest.mark.asyncio
async def test_open_circuit_skips_provider():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=600)
    adapter = _provider(RuntimeError("provider down"))
    service = ClassificationService(adapter=adapter, circuit_breaker=breaker, timeout_seconds=1.0, max_retries=0)

    await service.classify("undelivered", "Customer refused")
    result = await service.classify("undelivered", "Customer refused")

    assert breaker.state == "OPEN"
    assert adapter.generate.await_count == 1
    assert result.category == FailureCategory.REFUSED


def test_prompt_is_scrubbed_and_bounded():
    service = _service(adapter=None)
    prompt = service.build_prompt("undelivered", "Call +91 98765 43210 " + "x" * 2000)
    assert "98765 43210" not in prompt
    assert "x" * 501 not in prompt
