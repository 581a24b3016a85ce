"""
Typed record shapes for each entity type.

Records cross the backend boundary as plain dictionaries. Inside the engine
they are validated against a pydantic model per entity type, which types
the known fields, coerces numeric ids to strings and canonicalises
timestamp fields. Unknown fields are carried through untouched.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, model_validator

# Non-ISO layouts seen in legacy data, tried after ISO 8601.
_FALLBACK_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d/%m/%Y %H:%M")

# Numbers at or above this are epoch milliseconds, below it epoch seconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


def to_canonical_timestamp(value: Any) -> str | None:
    """
    Convert a date-like value to the canonical timestamp representation.

    The canonical form is ISO 8601 in UTC with millisecond precision and a
    ``Z`` suffix, e.g. ``2024-01-15T09:30:00.000Z``. Applying the function to
    its own output returns the same string.

    Accepted inputs:
        - None or "" (returned as None)
        - datetime (naive values are taken as UTC) and date (midnight UTC)
        - int/float epoch values (milliseconds when >= 1e11, else seconds)
        - ISO 8601 strings, date-only strings and a few day-first layouts

    Args:
        value: The value to convert.

    Returns:
        Canonical timestamp string, or None for empty input.

    Raises:
        ValueError: If the value cannot be interpreted as a point in time.
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        try:
            moment = datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Epoch value out of range: {value!r}") from e
    elif isinstance(value, str):
        moment = _parse_timestamp_string(value.strip())
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp_string(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised timestamp: {text!r}")


class EntityModel(BaseModel):
    """
    Base shape shared by every entity type.

    Subclasses declare their typed fields and list the fields holding
    points in time in ``timestamp_fields``; those are canonicalised before
    validation.
    """

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    timestamp_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    id: str
    created_at: str | None = None
    updated_at: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _canonicalise_timestamps(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalised = dict(data)
        for name in cls.timestamp_fields:
            if name in normalised:
                try:
                    normalised[name] = to_canonical_timestamp(normalised[name])
                except ValueError as e:
                    raise ValueError(f"{name}: {e}") from e
        return normalised


class EmployeeRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "date_of_joining", "confirmation_date")

    full_name: str | None = None
    email: str | None = None
    role: str | None = None
    department: str | None = None
    reporting_to: str | None = None
    manager_id: str | None = None
    date_of_joining: str | None = None
    confirmation_date: str | None = None


class CourtRecord(EntityModel):
    name: str | None = None
    jurisdiction: str | None = None
    city: str | None = None


class JudgeRecord(EntityModel):
    name: str | None = None
    designation: str | None = None
    court_id: str | None = None


class ClientRecord(EntityModel):
    display_name: str | None = None
    status: str | None = None
    email: str | None = None
    phone: str | None = None


class CaseRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "notice_date", "next_hearing_date")

    case_number: str | None = None
    title: str | None = None
    client_id: str | None = None
    court_id: str | None = None
    assigned_to: str | None = None
    status: str | None = None
    priority: str | None = None
    notice_date: str | None = None
    next_hearing_date: str | None = None


class NoticeRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "notice_date", "due_date")

    notice_number: str | None = None
    case_id: str | None = None
    client_id: str | None = None
    status: str | None = None
    notice_date: str | None = None
    due_date: str | None = None


class ReplyRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "reply_date")

    notice_id: str | None = None
    case_id: str | None = None
    reply_date: str | None = None


class HearingRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "hearing_date", "next_hearing_date")

    case_id: str | None = None
    court_id: str | None = None
    judge_id: str | None = None
    status: str | None = None
    hearing_date: str | None = None
    next_hearing_date: str | None = None


class TaskRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "due_date", "completed_date")

    title: str | None = None
    case_id: str | None = None
    hearing_id: str | None = None
    assigned_to: str | None = None
    status: str | None = None
    priority: str | None = None
    due_date: str | None = None
    completed_date: str | None = None


class DocumentRecord(EntityModel):
    timestamp_fields = (*EntityModel.timestamp_fields, "review_date")

    file_name: str | None = None
    file_path: str | None = None
    file_type: str | None = None
    case_id: str | None = None
    hearing_id: str | None = None
    task_id: str | None = None
    client_id: str | None = None
    parent_document_id: str | None = None
    review_date: str | None = None


__all__ = [
    "to_canonical_timestamp",
    "EntityModel",
    "EmployeeRecord",
    "CourtRecord",
    "JudgeRecord",
    "ClientRecord",
    "CaseRecord",
    "NoticeRecord",
    "ReplyRecord",
    "HearingRecord",
    "TaskRecord",
    "DocumentRecord",
]
