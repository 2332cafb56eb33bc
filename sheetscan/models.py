"""
Data Models
===========
Pydantic models for sheet variants, work items, recognition outcomes
and records. Every model is serializable to JSON for the HTTP API.

The per-variant field sets form a tagged union keyed by SheetVariant:
a Record or RecognitionOutcome always carries the field set matching its
variant, validated on construction.
"""

from __future__ import annotations

import base64
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ─── Enums ────────────────────────────────────────────────────────────────────


class SheetVariant(str, Enum):
    """Form layout of a scanned page, plus the two upload meta-modes."""
    INFO = "info"
    VIBE = "vibe"
    STATS = "stats"
    AUTO = "auto"
    PAIRED = "paired"

    @property
    def label(self) -> str:
        return VARIANT_LABELS[self]

    @property
    def is_concrete(self) -> bool:
        return self in CONCRETE_VARIANTS


VARIANT_LABELS: dict[SheetVariant, str] = {
    SheetVariant.INFO: "Page 1 (Info)",
    SheetVariant.VIBE: "Page 2 (VibeMatch)",
    SheetVariant.STATS: "Page 3 (EduStats)",
    SheetVariant.AUTO: "Mix (Auto-Detect)",
    SheetVariant.PAIRED: "Paired Upload",
}

CONCRETE_VARIANTS: tuple[SheetVariant, ...] = (
    SheetVariant.INFO,
    SheetVariant.VIBE,
    SheetVariant.STATS,
)


class FileType(str, Enum):
    """Origin of a work item's image."""
    IMAGE = "image"
    DOCUMENT_PAGE = "document-page"


class BatchStatus(str, Enum):
    """Outcome of one dispatch run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ScanStatus(str, Enum):
    """User-visible state of the scan controller."""
    IDLE = "IDLE"
    SCANNING = "SCANNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


# ─── Field Sets ───────────────────────────────────────────────────────────────


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


class _SheetFields(BaseModel):
    """Common configuration: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class InfoSheetFields(_SheetFields):
    """Page 1: student and parent contact details."""
    student_id: str = ""
    student_name: str = ""
    first_name: str = ""
    last_name: str = ""
    parent_name: str = ""
    school_name: str = ""
    date: str = Field(default="", description="YYYY-MM-DD")
    grade: str = ""
    city: str = ""
    phone_number: str = ""
    email: str = ""

    @model_validator(mode="before")
    @classmethod
    def derive_student_name(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if _first_present(data, "studentName", "student_name") is not None:
            return data
        first = _to_text(_first_present(data, "firstName", "first_name")).strip()
        last = _to_text(_first_present(data, "lastName", "last_name")).strip()
        full = first if not last or last == first else f"{first} {last}".strip()
        return {**data, "studentName": full}

    @field_validator(
        "student_id", "student_name", "first_name", "last_name",
        "parent_name", "school_name", "date", "grade", "city",
        "phone_number", "email",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _to_text(value)


Answer = Optional[Union[int, str]]


class VibeSheetFields(_SheetFields):
    """Page 2: fourteen 1-5 scale answers and a handwritten statement."""
    student_id: str = ""
    q1: Answer = None
    q2: Answer = None
    q3: Answer = None
    q4: Answer = None
    q5: Answer = None
    q6: Answer = None
    q7: Answer = None
    q8: Answer = None
    q9: Answer = None
    q10: Answer = None
    q11: Answer = None
    q12: Answer = None
    q13: Answer = None
    q14: Answer = None
    handwritten_statement: str = ""

    @model_validator(mode="before")
    @classmethod
    def flatten_answers(cls, data: Any) -> Any:
        """Lift the recognition service's nested ``answers`` group to q1..q14."""
        if isinstance(data, dict) and isinstance(data.get("answers"), dict):
            flat = {k: v for k, v in data.items() if k != "answers"}
            flat.update(data["answers"])
            return flat
        return data

    @field_validator("student_id", "handwritten_statement", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _to_text(value)

    def answers(self) -> list[Answer]:
        return [getattr(self, f"q{i}") for i in range(1, 15)]


class StatsSheetFields(_SheetFields):
    """Page 3: fifteen education statistics answers (bubbles and handwriting)."""
    student_id: str = ""
    q1: str = ""
    q2: str = ""
    q3: str = ""
    q4: str = ""
    q5: str = ""
    q6: str = ""
    q7: str = ""
    q8: str = ""
    q9: str = ""
    q10: str = ""
    q11: str = ""
    q12: str = ""
    q13: str = ""
    q14: str = ""
    q15: str = ""

    @field_validator(
        "student_id", "q1", "q2", "q3", "q4", "q5", "q6", "q7", "q8",
        "q9", "q10", "q11", "q12", "q13", "q14", "q15",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _to_text(value)

    def answers(self) -> list[str]:
        return [getattr(self, f"q{i}") for i in range(1, 16)]


SheetFields = Union[InfoSheetFields, VibeSheetFields, StatsSheetFields]

FIELDS_BY_VARIANT: dict[SheetVariant, type[_SheetFields]] = {
    SheetVariant.INFO: InfoSheetFields,
    SheetVariant.VIBE: VibeSheetFields,
    SheetVariant.STATS: StatsSheetFields,
}


def _first_present(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def fields_model_for(variant: SheetVariant) -> type[_SheetFields]:
    """Return the field-set model for a concrete variant."""
    variant = SheetVariant(variant)
    if not variant.is_concrete:
        raise ValueError(f"{variant.label} is not a concrete sheet variant")
    return FIELDS_BY_VARIANT[variant]


def parse_fields(variant: SheetVariant, data: Any) -> SheetFields:
    """
    Validate a fields mapping (or field-set instance) against a variant.

    Raises:
        ValueError: If the variant is a meta-mode or the instance belongs
            to a different variant.
        pydantic.ValidationError: If the mapping does not fit the schema.
    """
    model = fields_model_for(variant)
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise ValueError(
            f"{type(data).__name__} does not match variant {SheetVariant(variant).label}"
        )
    return model.model_validate(data)


def _bind_variant_fields(data: Any) -> Any:
    if isinstance(data, dict) and "variant" in data and "fields" in data:
        data = {**data, "fields": parse_fields(data["variant"], data["fields"])}
    return data


# ─── Pipeline Models ──────────────────────────────────────────────────────────


class WorkItem(BaseModel):
    """
    One unit of dispatchable recognition work.
    Created by the work item builder and consumed exactly once.
    """
    model_config = ConfigDict(frozen=True)

    image_data: bytes = Field(repr=False)
    mime_type: str = "image/jpeg"
    source_file_name: str
    file_type: FileType = FileType.IMAGE
    page_number: Optional[int] = Field(default=None, ge=1)
    group_id: Optional[str] = None
    forced_variant: Optional[SheetVariant] = None

    @field_validator("forced_variant")
    @classmethod
    def concrete_only(cls, value: Optional[SheetVariant]) -> Optional[SheetVariant]:
        if value is not None and not value.is_concrete:
            raise ValueError("forced_variant must be a concrete sheet variant")
        return value


class RecognitionOutcome(BaseModel):
    """Normalized result of one recognition call."""
    model_config = ConfigDict(frozen=True)

    variant: SheetVariant
    fields: SheetFields
    confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="before")
    @classmethod
    def bind_fields(cls, data: Any) -> Any:
        return _bind_variant_fields(data)

    @model_validator(mode="after")
    def check_variant(self) -> "RecognitionOutcome":
        if not isinstance(self.fields, fields_model_for(self.variant)):
            raise ValueError("fields do not match the outcome variant")
        return self


class SourceImage(BaseModel):
    """Reference to the page image a record was recognized from."""
    model_config = ConfigDict(frozen=True)

    file_name: str
    page_number: Optional[int] = None
    mime_type: str = "image/jpeg"
    data: bytes = Field(default=b"", exclude=True, repr=False)

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class Record(BaseModel):
    """
    A recognized sheet.

    Only ``fields`` may change after creation, and only through
    ``RecordStore.update_fields`` which stores a validated copy.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    variant: SheetVariant
    fields: SheetFields
    confidence: float = Field(ge=0.0, le=1.0)
    source_image: Optional[SourceImage] = None
    group_id: Optional[str] = None
    created_at: datetime

    @model_validator(mode="before")
    @classmethod
    def bind_fields(cls, data: Any) -> Any:
        return _bind_variant_fields(data)

    @model_validator(mode="after")
    def check_variant(self) -> "Record":
        if not isinstance(self.fields, fields_model_for(self.variant)):
            raise ValueError("fields do not match the record variant")
        return self

    def to_api(self) -> dict:
        """JSON-ready dict with camelCase field names inside ``fields``."""
        return self.model_dump(mode="json", by_alias=True)


# ─── Batch Reporting ──────────────────────────────────────────────────────────


class BatchReport(BaseModel):
    """Summary of one dispatch run."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    status: BatchStatus = BatchStatus.SUCCESS
    message: str = ""

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.succeeded / self.total * 100, 2)


class ScanState(BaseModel):
    """Controller-owned state of the current or last scan."""
    status: ScanStatus = ScanStatus.IDLE
    error_message: Optional[str] = None
    progress: Optional[tuple[int, int]] = None
    report: Optional[BatchReport] = None
