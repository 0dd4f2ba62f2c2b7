"""Coercion of loosely shaped input into canonical entities.

Every backend funnels writes through these functions, so a record read back
from storage normalizes to itself.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel
from pydantic.alias_generators import to_snake

from tracker.entities import (
    ENTRY_STATUSES,
    USER_ROLES,
    ArchivedShow,
    Entry,
    Show,
    StaffRoster,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ISSUE_FIELDS = ("primaryIssue", "subIssue", "otherDetail", "severity", "rootCause")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def to_datetime(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def now_ms() -> int:
    return to_millis(utcnow())


def new_id() -> str:
    return str(uuid.uuid4())


def as_mapping(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, BaseModel):
        return raw.model_dump(by_alias=True)
    if isinstance(raw, Mapping):
        return dict(raw)
    return {}


def camelize_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {re.sub(r"_([a-z0-9])", lambda match: match.group(1).upper(), key): value for key, value in raw.items()}


def pick(raw: Mapping[str, Any], key: str) -> Any:
    """Read a camelCase key, accepting the snake_case spelling too."""
    if key in raw:
        return raw[key]
    return raw.get(to_snake(key))


def clean_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return ""


def normalize_name_list(values: Any, *, sort: bool = False) -> list[str]:
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, Iterable) or isinstance(values, Mapping):
        return []
    seen: set[str] = set()
    names: list[str] = []
    for item in values:
        name = clean_text(item)
        key = name.casefold()
        if not name or key in seen:
            continue
        seen.add(key)
        names.append(name)
    if sort:
        names.sort(key=lambda name: (name.casefold(), name))
    return names


def _parse_datetime(text: str) -> datetime | None:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _representable(millis: int) -> bool:
    try:
        to_datetime(millis)
    except (OverflowError, ValueError):
        return False
    return True


def coerce_timestamp(value: Any, default: int | None = None, *, parse_strings: bool = True) -> int:
    if isinstance(value, bool):
        pass
    elif isinstance(value, (int, float)):
        if math.isfinite(value) and _representable(int(value)):
            return int(value)
    elif isinstance(value, datetime):
        return to_millis(value)
    elif isinstance(value, date):
        return to_millis(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            number = None
        if number is not None and math.isfinite(number):
            if _representable(int(number)):
                return int(number)
            return default if default is not None else now_ms()
        if parse_strings:
            parsed = _parse_datetime(text)
            if parsed is not None:
                return to_millis(parsed)
    return default if default is not None else now_ms()


def coerce_delay(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(0, int(number))


def normalize_status(value: Any) -> str:
    text = clean_text(value).casefold()
    for status in ENTRY_STATUSES:
        if text == status.casefold():
            return status
    return ""


def normalize_entry(raw: Any, *, parse_strings: bool = True) -> Entry:
    data = as_mapping(raw)
    status = normalize_status(pick(data, "status"))
    issue = {key: clean_text(pick(data, key)) for key in ISSUE_FIELDS}
    if status == "Completed":
        issue = dict.fromkeys(ISSUE_FIELDS, "")
    return Entry(
        id=clean_text(pick(data, "id")) or new_id(),
        ts=coerce_timestamp(pick(data, "ts"), parse_strings=parse_strings),
        unit_id=clean_text(pick(data, "unitId")),
        planned=clean_text(pick(data, "planned")),
        launched=clean_text(pick(data, "launched")),
        status=status,
        primary_issue=issue["primaryIssue"],
        sub_issue=issue["subIssue"],
        other_detail=issue["otherDetail"],
        severity=issue["severity"],
        root_cause=issue["rootCause"],
        actions=normalize_name_list(pick(data, "actions") or []),
        operator=clean_text(pick(data, "operator")),
        battery_id=clean_text(pick(data, "batteryId")),
        delay_sec=coerce_delay(pick(data, "delaySec")),
        command_rx=clean_text(pick(data, "commandRx")),
        notes=clean_text(pick(data, "notes")),
    )


def normalize_entries(values: Any, *, parse_strings: bool = True) -> list[Entry]:
    if not isinstance(values, (list, tuple)):
        return []
    seen: set[str] = set()
    entries: list[Entry] = []
    for item in values:
        if not isinstance(item, (Mapping, BaseModel)):
            continue
        entry = normalize_entry(item, parse_strings=parse_strings)
        if entry.id in seen:
            continue
        seen.add(entry.id)
        entries.append(entry)
    entries.sort(key=lambda entry: entry.ts)
    return entries


def normalize_show(raw: Any, *, parse_strings: bool = True) -> Show:
    data = as_mapping(raw)
    now = now_ms()
    archived_at = pick(data, "archivedAt")
    return Show(
        id=clean_text(pick(data, "id")) or new_id(),
        date=clean_text(pick(data, "date")),
        time=clean_text(pick(data, "time")),
        label=clean_text(pick(data, "label")),
        crew=normalize_name_list(pick(data, "crew") or [], sort=True),
        lead_pilot=clean_text(pick(data, "leadPilot")),
        monkey_lead=clean_text(pick(data, "monkeyLead")),
        notes=clean_text(pick(data, "notes")),
        entries=normalize_entries(pick(data, "entries"), parse_strings=parse_strings),
        created_at=coerce_timestamp(pick(data, "createdAt"), now, parse_strings=parse_strings),
        updated_at=coerce_timestamp(pick(data, "updatedAt"), now, parse_strings=parse_strings),
        archived_at=None if archived_at in (None, "") else coerce_timestamp(archived_at, now, parse_strings=parse_strings),
    )


def normalize_archived_show(raw: Any, archived_at: int | None = None) -> ArchivedShow:
    show = normalize_show(raw)
    stamp = archived_at if archived_at is not None else show.archived_at
    payload = show.model_dump(exclude={"archived_at"})
    return ArchivedShow(**payload, archived_at=stamp if stamp is not None else now_ms())


def normalize_roster(raw: Any) -> StaffRoster:
    data = as_mapping(raw)
    return StaffRoster(
        crew=normalize_name_list(pick(data, "crew") or [], sort=True),
        pilots=normalize_name_list(pick(data, "pilots") or [], sort=True),
        monkey_leads=normalize_name_list(pick(data, "monkeyLeads") or [], sort=True),
    )


def normalize_email(value: Any) -> str:
    return clean_text(value).lower()


def is_valid_email(email: str) -> bool:
    return "@" in email and not email.startswith("@") and not email.endswith("@")


def normalize_user_role(value: Any) -> str:
    role = clean_text(value).lower()
    return role if role in USER_ROLES else "viewer"


def normalize_person_name(value: Any) -> str:
    words = clean_text(value).split()
    return " ".join(
        "-".join(piece[:1].upper() + piece[1:].lower() for piece in word.split("-"))
        for word in words
    )


def infer_name_from_email(email: str) -> str:
    local_part = email.split("@", 1)[0]
    segments = [segment for segment in local_part.replace("_", ".").split(".") if segment]
    return normalize_person_name(" ".join(segments)) or email
