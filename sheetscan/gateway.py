"""
Recognition Gateway
===================
Adapter between the pipeline and the recognition oracle.

Per call:
    1. Pick the prompt + response schema for the requested variant
       (or the auto-detect schema).
    2. Call the oracle, retrying rate-limit rejections with exponential
       backoff (2s, 4s, 8s).
    3. Normalize the JSON payload into a RecognitionOutcome.

Normalization rules:
    - VibeSheet: nested ``answers`` flattened to q1..q14,
      ``handwrittenStatement`` defaults to "".
    - InfoSheet: an empty ``lastName`` is set to ``firstName``.
      Single-name students are common on these forms; this is intentional.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from .exceptions import RecognitionError, ThrottleError
from .models import RecognitionOutcome, SheetVariant, parse_fields
from .oracle import RecognitionOracle

logger = logging.getLogger(__name__)


# ─── Response Schemas ─────────────────────────────────────────────────────────


def _string(description: str) -> dict[str, Any]:
    return {"type": "STRING", "description": description}


INFO_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "firstName": _string("First Name"),
        "lastName": _string("Last Name (if single name, repeat First Name)"),
        "parentName": _string("Parent / Guardian Name"),
        "schoolName": _string("School Name"),
        "date": _string("Date in YYYY-MM-DD format"),
        "grade": _string("Grade in 'Class X' format (e.g. Class 9)"),
        "city": _string("City name"),
        "phoneNumber": _string("Phone number read from the filled bubbles in columns D1-D10"),
        "email": _string("Parent Email ID"),
        "studentId": _string("Printed Sheet ID / Student ID (e.g. 100255)"),
        "confidenceScore": {"type": "NUMBER", "description": "Confidence 0-1"},
    },
    "required": ["firstName", "lastName", "phoneNumber", "studentId", "confidenceScore"],
}

VIBE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "answers": {
            "type": "OBJECT",
            "properties": {
                f"q{i}": {"type": "INTEGER", "nullable": True} for i in range(1, 15)
            },
            "required": ["q1", "q5", "q10"],
        },
        "handwrittenStatement": _string("Q15 handwritten text answer"),
        "studentId": _string("Printed Sheet ID / Student ID (e.g. 100039)"),
        "confidenceScore": {"type": "NUMBER"},
    },
    "required": ["answers", "studentId", "confidenceScore"],
}

_STATS_QUESTIONS = (
    "Grade (e.g. 8, 9, 10)",
    "Education Board (e.g. CBSE)",
    "Subjects studied (comma separated if multiple)",
    "Recent percentage/grade",
    "Rank in class (e.g. Top 10, Avg)",
    "Extracurricular activities (comma separated)",
    "Family careers (comma separated)",
    "Handwritten text (careers good/discouraged)",
    "Vocational training (Yes/No/Maybe)",
    "Study abroad (Yes/No/Maybe)",
    "Preferred work style (e.g. Office, Remote)",
    "Handwritten text (subjects enjoyed most and why)",
    "Handwritten text (job not wanted and why)",
    "Comfortable with long study (Yes/No/Maybe)",
    "Choice if no constraints (checkboxes/handwritten)",
)

STATS_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        **{
            f"q{i}": _string(f"Q{i}: {text}")
            for i, text in enumerate(_STATS_QUESTIONS, start=1)
        },
        "studentId": _string("Printed Sheet ID / Student ID"),
        "confidenceScore": {"type": "NUMBER"},
    },
    "required": ["q1", "q2", "studentId", "confidenceScore"],
}

AUTO_KEYS: dict[SheetVariant, str] = {
    SheetVariant.INFO: "infoSheet",
    SheetVariant.VIBE: "vibeSheet",
    SheetVariant.STATS: "statsSheet",
}

AUTO_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "sheetVariant": {
            "type": "STRING",
            "enum": [v.value for v in AUTO_KEYS],
            "description": "Which page this is: info (Page 1), vibe (Page 2), stats (Page 3)",
        },
        AUTO_KEYS[SheetVariant.INFO]: {**INFO_SCHEMA, "nullable": True},
        AUTO_KEYS[SheetVariant.VIBE]: {**VIBE_SCHEMA, "nullable": True},
        AUTO_KEYS[SheetVariant.STATS]: {**STATS_SCHEMA, "nullable": True},
    },
    "required": ["sheetVariant"],
}


# ─── Prompts ──────────────────────────────────────────────────────────────────


INFO_PROMPT = """Analyze this Student Info OMR sheet image and extract the data as JSON.

1. Student name: read the block letters and split into firstName and lastName.
2. School name, date (YYYY-MM-DD), grade/class (e.g. 'Class 10') and city.
3. Parent phone number: find the bubble grid labelled "Parent WhatsApp Number",
   columns D1 to D10. Do not read the small printed digits next to the bubbles.
   For each column, count the position of the filled bubble from the top:
   1st bubble = 0, 2nd = 1, ... 10th = 9. Concatenate the ten digits.
4. Parent email ID (handwritten).
5. Parent / Guardian name, usually below the email field.
6. Student ID: the printed number at the bottom right (e.g. 100118).
"""

VIBE_PROMPT = """Analyze this VIBEMatch Assessment OMR sheet (Section 1).

1. Q1-Q14: the filled bubble value (1 to 5) in each row, null if blank.
2. Q15: transcribe the handwritten sentence at the bottom.
3. Student ID: the printed ID (e.g. 100039).
"""

STATS_PROMPT = (
    "Analyze this EduStats Assessment OMR sheet (Page 3) and extract Q1 through Q15.\n"
    + "".join(f"Q{i}: {text}.\n" for i, text in enumerate(_STATS_QUESTIONS, start=1))
    + "For checkbox questions list every checked option, comma separated.\n"
    + "Student ID: the printed ID (e.g. 100252).\n"
)

AUTO_PROMPT = f"""This image is one of three OMR sheet types:
- info: Page 1, student and parent details with a phone-number bubble grid.
- vibe: Page 2, VIBEMatch assessment with 14 rows of 1-5 bubbles and a handwritten Q15.
- stats: Page 3, EduStats assessment with 15 mixed bubble/checkbox/handwritten questions.

Set sheetVariant to the detected type and fill ONLY the matching object
(infoSheet, vibeSheet or statsSheet) using these instructions:

[info]
{INFO_PROMPT}
[vibe]
{VIBE_PROMPT}
[stats]
{STATS_PROMPT}"""

REQUESTS: dict[SheetVariant, tuple[str, dict[str, Any]]] = {
    SheetVariant.INFO: (INFO_PROMPT, INFO_SCHEMA),
    SheetVariant.VIBE: (VIBE_PROMPT, VIBE_SCHEMA),
    SheetVariant.STATS: (STATS_PROMPT, STATS_SCHEMA),
    SheetVariant.AUTO: (AUTO_PROMPT, AUTO_SCHEMA),
}


# ─── Normalization ────────────────────────────────────────────────────────────


_CODE_FENCE = re.compile(r"^```[a-zA-Z0-9]*\s*(.*?)\s*```$", re.S)


def parse_payload(text: str) -> dict[str, Any]:
    """Parse the oracle's JSON text, tolerating markdown code fences."""
    stripped = (text or "").strip()
    match = _CODE_FENCE.match(stripped)
    if match:
        stripped = match.group(1)

    try:
        payload = json.loads(stripped or "{}")
    except json.JSONDecodeError as e:
        raise RecognitionError(f"Recognition output is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise RecognitionError("Recognition output is not a JSON object")
    return payload


def _clamp_confidence(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


def _apply_single_name_fallback(data: dict[str, Any]) -> None:
    last_name = data.get("lastName")
    if last_name is None or str(last_name).strip() == "":
        data["lastName"] = data.get("firstName")


def build_outcome(variant: SheetVariant, payload: dict[str, Any]) -> RecognitionOutcome:
    """
    Normalize one variant's payload into a RecognitionOutcome.

    Raises:
        RecognitionError: If the payload does not fit the variant schema.
    """
    data = dict(payload)
    confidence = _clamp_confidence(data.pop("confidenceScore", None))

    if variant == SheetVariant.INFO:
        _apply_single_name_fallback(data)

    try:
        fields = parse_fields(variant, data)
    except ValidationError as e:
        raise RecognitionError(
            f"Recognition output does not match the {variant.label} schema: {e}"
        ) from e

    return RecognitionOutcome(variant=variant, fields=fields, confidence=confidence)


def normalize_response(hint: SheetVariant, text: str) -> RecognitionOutcome:
    """Turn raw oracle text into an outcome for the requested variant."""
    payload = parse_payload(text)
    if hint != SheetVariant.AUTO:
        return build_outcome(hint, payload)

    tag = payload.get("sheetVariant")
    try:
        variant = SheetVariant(tag)
    except ValueError as e:
        raise RecognitionError(f"Unknown detected sheet variant: {tag!r}") from e
    if not variant.is_concrete:
        raise RecognitionError(f"Unknown detected sheet variant: {tag!r}")

    nested = payload.get(AUTO_KEYS[variant])
    if not isinstance(nested, dict):
        raise RecognitionError(f"Auto-detect output has no {AUTO_KEYS[variant]} object")
    if "confidenceScore" not in nested and "confidenceScore" in payload:
        nested = {**nested, "confidenceScore": payload["confidenceScore"]}

    return build_outcome(variant, nested)


# ─── Gateway ──────────────────────────────────────────────────────────────────


def is_throttle(exc: BaseException) -> bool:
    """Whether an oracle failure is a rate-limit rejection."""
    if isinstance(exc, ThrottleError):
        return True
    if getattr(exc, "code", None) == 429 or getattr(exc, "status", None) == 429:
        return True
    message = str(exc)
    return "429" in message or "RESOURCE_EXHAUSTED" in message


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for rate-limit rejections."""

    max_retries: int = 3
    backoff_base: float = 2.0

    def delay(self, attempt: int) -> float:
        """Wait before retry number ``attempt`` (1-indexed)."""
        return self.backoff_base ** attempt


class RecognitionGateway:
    """
    Calls the oracle for one image and returns a normalized outcome.

    Only rate-limit rejections are retried; every other failure surfaces
    immediately as RecognitionError.
    """

    def __init__(
        self,
        oracle: RecognitionOracle,
        retry: Optional[RetryPolicy] = None,
        timeout_s: Optional[float] = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.oracle = oracle
        self.retry = retry or RetryPolicy()
        self.timeout_s = timeout_s
        self._sleep = sleep

    async def recognize(
        self,
        image_data: bytes,
        hint: SheetVariant,
        mime_type: str = "image/jpeg",
    ) -> RecognitionOutcome:
        """
        Recognize one page image.

        Args:
            image_data: Raw image bytes (single page).
            hint: Requested variant, or AUTO to let the oracle decide.
            mime_type: MIME type of ``image_data``.

        Raises:
            ThrottleError: If still rate limited after all retries.
            RecognitionError: On any other failure or invalid output.
        """
        hint = SheetVariant(hint)
        if hint == SheetVariant.PAIRED:
            # paired items always carry a forced variant; fall back to detection
            hint = SheetVariant.AUTO

        prompt, schema = REQUESTS[hint]
        text = await self._call_with_retry(image_data, mime_type, prompt, schema)
        outcome = normalize_response(hint, text)

        logger.debug(
            f"Recognized {outcome.variant.label} "
            f"(hint={hint.value}, confidence={outcome.confidence:.2f})"
        )
        return outcome

    async def _call_with_retry(
        self,
        image_data: bytes,
        mime_type: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> str:
        retries = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.oracle.generate(
                        image=image_data,
                        mime_type=mime_type,
                        prompt=prompt,
                        schema=schema,
                    ),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError as e:
                raise RecognitionError(
                    f"Recognition call timed out after {self.timeout_s}s"
                ) from e
            except Exception as e:
                if not is_throttle(e):
                    if isinstance(e, RecognitionError):
                        raise
                    raise RecognitionError(f"Recognition call failed: {e}") from e

                if retries >= self.retry.max_retries:
                    logger.error(f"Rate limit persists after {retries} retries")
                    if isinstance(e, ThrottleError):
                        raise
                    raise ThrottleError(str(e)) from e

                retries += 1
                wait = self.retry.delay(retries)
                logger.warning(
                    f"Rate limit hit. Retrying in {wait:.0f}s "
                    f"(attempt {retries}/{self.retry.max_retries})"
                )
                await self._sleep(wait)
