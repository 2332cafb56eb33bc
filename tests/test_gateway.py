"""
Test Suite for Recognition
==========================
Tests for the recognition gateway (schemas, retry, normalization) and the
Gemini oracle client.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from google.genai import errors as genai_errors

from helpers import JPEG_BYTES, scripted
from sheetscan.exceptions import RecognitionError, ThrottleError
from sheetscan.gateway import (
    AUTO_SCHEMA,
    INFO_PROMPT,
    INFO_SCHEMA,
    STATS_SCHEMA,
    RetryPolicy,
    build_outcome,
    is_throttle,
    normalize_response,
    parse_payload,
)
from sheetscan.models import (
    InfoSheetFields,
    SheetVariant,
    StatsSheetFields,
    VibeSheetFields,
)
from sheetscan.oracle import GeminiOracle


# ═══════════════════════════════════════════════════════════════════════════════
# RETRY TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRetryPolicy:
    """Test exponential backoff timing."""

    def test_delays(self):
        policy = RetryPolicy()
        assert [policy.delay(n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_throttle_detection(self):
        assert is_throttle(ThrottleError("slow down"))
        assert is_throttle(RuntimeError("429 Too Many Requests"))
        assert is_throttle(RuntimeError("RESOURCE_EXHAUSTED: quota"))
        assert is_throttle(SimpleNamespace(code=429))
        assert not is_throttle(RecognitionError("bad image"))
        assert not is_throttle(ValueError("oops"))


class TestGatewayRetry:
    """Test retry behaviour around the oracle call."""

    def test_throttled_twice_then_success(self, make_gateway, sleeps, stats_payload):
        gateway, oracle = make_gateway(
            scripted(ThrottleError("429"), ThrottleError("429"), stats_payload)
        )

        outcome = asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.STATS))

        assert outcome.variant == SheetVariant.STATS
        assert sleeps == [2, 4]
        assert len(oracle.calls) == 3

    def test_throttle_exhausted(self, make_gateway, sleeps):
        gateway, oracle = make_gateway(lambda call: ThrottleError("429"))

        with pytest.raises(ThrottleError):
            asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.INFO))

        assert sleeps == [2, 4, 8]
        assert len(oracle.calls) == 4

    def test_rate_limit_message_is_retried(self, make_gateway, sleeps, stats_payload):
        gateway, _ = make_gateway(
            scripted(RuntimeError("RESOURCE_EXHAUSTED"), stats_payload)
        )
        asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.STATS))
        assert sleeps == [2]

    def test_non_throttle_error_not_retried(self, make_gateway, sleeps):
        gateway, oracle = make_gateway(lambda call: RecognitionError("invalid image"))

        with pytest.raises(RecognitionError):
            asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.INFO))

        assert sleeps == []
        assert len(oracle.calls) == 1

    def test_unexpected_error_wrapped(self, make_gateway, sleeps):
        gateway, _ = make_gateway(lambda call: ConnectionError("reset by peer"))

        with pytest.raises(RecognitionError) as exc_info:
            asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.INFO))

        assert not isinstance(exc_info.value, ThrottleError)
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert sleeps == []

    def test_timeout_is_recognition_error(self, make_gateway, sleeps):
        gateway, _ = make_gateway(lambda call: {}, delay=0.5, timeout_s=0.01)

        with pytest.raises(RecognitionError):
            asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.STATS))

        assert sleeps == []

    def test_invalid_output_not_retried(self, make_gateway, sleeps):
        gateway, oracle = make_gateway(lambda call: "this is not json")

        with pytest.raises(RecognitionError):
            asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.STATS))

        assert len(oracle.calls) == 1
        assert sleeps == []


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestGatewayRequests:
    """Test schema and prompt selection."""

    def test_variant_schema_and_mime_type(self, make_gateway, info_payload):
        gateway, oracle = make_gateway(lambda call: info_payload)

        asyncio.run(gateway.recognize(b"png-bytes", SheetVariant.INFO, mime_type="image/png"))

        call = oracle.calls[0]
        assert call.schema == INFO_SCHEMA
        assert call.prompt == INFO_PROMPT
        assert call.mime_type == "image/png"
        assert call.image == b"png-bytes"

    def test_paired_hint_uses_auto_schema(self, make_gateway, stats_payload):
        gateway, oracle = make_gateway(
            lambda call: {"sheetVariant": "stats", "statsSheet": stats_payload}
        )
        asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.PAIRED))
        assert oracle.calls[0].schema == AUTO_SCHEMA

    def test_auto_schema_lists_concrete_variants(self):
        assert AUTO_SCHEMA["properties"]["sheetVariant"]["enum"] == ["info", "vibe", "stats"]
        assert set(AUTO_SCHEMA["properties"]) == {
            "sheetVariant", "infoSheet", "vibeSheet", "statsSheet",
        }

    def test_stats_schema_has_fifteen_questions(self):
        questions = [k for k in STATS_SCHEMA["properties"] if k.startswith("q")]
        assert len(questions) == 15


# ═══════════════════════════════════════════════════════════════════════════════
# NORMALIZATION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestNormalization:
    """Test payload parsing and per-variant normalization."""

    def test_code_fence_stripped(self):
        assert parse_payload('```json\n{"q1": "9"}\n```') == {"q1": "9"}

    def test_non_object_rejected(self):
        with pytest.raises(RecognitionError):
            parse_payload("[1, 2, 3]")

    def test_empty_text_is_empty_object(self):
        assert parse_payload("") == {}

    def test_info_empty_last_name_uses_first_name(self, info_payload):
        info_payload["lastName"] = ""
        outcome = build_outcome(SheetVariant.INFO, info_payload)
        assert isinstance(outcome.fields, InfoSheetFields)
        assert outcome.fields.last_name == outcome.fields.first_name == "Ravi"

    def test_info_missing_last_name_uses_first_name(self, info_payload):
        del info_payload["lastName"]
        outcome = build_outcome(SheetVariant.INFO, info_payload)
        assert outcome.fields.last_name == "Ravi"

    def test_vibe_flattened_and_statement_defaulted(self, vibe_payload):
        vibe_payload["handwrittenStatement"] = None
        outcome = normalize_response(SheetVariant.VIBE, json.dumps(vibe_payload))
        assert isinstance(outcome.fields, VibeSheetFields)
        assert outcome.fields.q1 == 2
        assert outcome.fields.handwritten_statement == ""
        assert outcome.fields.student_id == "100039"

    @pytest.mark.parametrize("raw, expected", [
        (0.42, 0.42),
        (1.7, 1.0),
        (-0.3, 0.0),
        ("0.5", 0.5),
        ("high", 0.0),
        (None, 0.0),
    ])
    def test_confidence_clamped(self, raw, expected):
        outcome = build_outcome(SheetVariant.STATS, {"q1": "9", "confidenceScore": raw})
        assert outcome.confidence == pytest.approx(expected)

    def test_missing_confidence_defaults_to_zero(self):
        assert build_outcome(SheetVariant.STATS, {}).confidence == 0.0

    def test_schema_mismatch_is_recognition_error(self):
        with pytest.raises(RecognitionError):
            build_outcome(SheetVariant.VIBE, {"answers": {"q1": [1, 2]}})


class TestAutoDetect:
    """Test auto-detect responses."""

    def test_detected_variant_wins(self, make_gateway, stats_payload):
        gateway, _ = make_gateway(
            lambda call: {"sheetVariant": "stats", "statsSheet": stats_payload}
        )

        outcome = asyncio.run(gateway.recognize(JPEG_BYTES, SheetVariant.AUTO))

        assert outcome.variant == SheetVariant.STATS
        assert isinstance(outcome.fields, StatsSheetFields)
        assert outcome.fields.q1 == "answer 1"
        assert outcome.confidence == pytest.approx(0.8)

    def test_top_level_confidence_used(self):
        text = json.dumps({
            "sheetVariant": "vibe",
            "confidenceScore": 0.6,
            "vibeSheet": {"answers": {"q1": 5}},
        })
        outcome = normalize_response(SheetVariant.AUTO, text)
        assert outcome.variant == SheetVariant.VIBE
        assert outcome.confidence == pytest.approx(0.6)

    @pytest.mark.parametrize("tag", ["page4", "auto", None])
    def test_unknown_tag(self, tag):
        with pytest.raises(RecognitionError):
            normalize_response(SheetVariant.AUTO, json.dumps({"sheetVariant": tag}))

    def test_missing_nested_object(self):
        with pytest.raises(RecognitionError):
            normalize_response(SheetVariant.AUTO, json.dumps({"sheetVariant": "info"}))


# ═══════════════════════════════════════════════════════════════════════════════
# ORACLE CLIENT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def _api_error(code: int, status: str) -> genai_errors.APIError:
    return genai_errors.APIError(
        code, {"error": {"code": code, "message": "upstream said no", "status": status}}
    )


class TestGeminiOracle:
    """Test the google-genai client wrapper."""

    def test_missing_api_key(self):
        with pytest.raises(RuntimeError):
            GeminiOracle(api_key=None)

    def test_config(self):
        with patch("sheetscan.oracle.genai.Client"):
            oracle = GeminiOracle(api_key="key", thinking_budget=2048)
        config = oracle._build_config({"type": "OBJECT", "properties": {}})
        assert config.temperature == pytest.approx(0.1)
        assert config.response_mime_type == "application/json"
        assert config.thinking_config.thinking_budget == 2048

    def test_generate_returns_text(self):
        with patch("sheetscan.oracle.genai.Client") as client_cls:
            generate = AsyncMock(return_value=SimpleNamespace(text='{"q1": "9"}'))
            client_cls.return_value.aio.models.generate_content = generate
            oracle = GeminiOracle(api_key="key", model="gemini-test")

            text = asyncio.run(oracle.generate(
                image=JPEG_BYTES, mime_type="image/jpeg", prompt="read", schema={},
            ))

        assert text == '{"q1": "9"}'
        assert generate.await_args.kwargs["model"] == "gemini-test"

    def test_rate_limit_maps_to_throttle(self):
        with patch("sheetscan.oracle.genai.Client") as client_cls:
            client_cls.return_value.aio.models.generate_content = AsyncMock(
                side_effect=_api_error(429, "RESOURCE_EXHAUSTED")
            )
            oracle = GeminiOracle(api_key="key")

            with pytest.raises(ThrottleError):
                asyncio.run(oracle.generate(
                    image=JPEG_BYTES, mime_type="image/jpeg", prompt="read", schema={},
                ))

    def test_other_api_error_maps_to_recognition_error(self):
        with patch("sheetscan.oracle.genai.Client") as client_cls:
            client_cls.return_value.aio.models.generate_content = AsyncMock(
                side_effect=_api_error(400, "INVALID_ARGUMENT")
            )
            oracle = GeminiOracle(api_key="key")

            with pytest.raises(RecognitionError) as exc_info:
                asyncio.run(oracle.generate(
                    image=JPEG_BYTES, mime_type="image/jpeg", prompt="read", schema={},
                ))

        assert not isinstance(exc_info.value, ThrottleError)
