from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from tracker.entities import ArchivedShow, Entry, Show, StaffRoster, User
from tracker.errors import ConstraintViolation, UnsupportedOperation
from tracker.normalize import (
    as_mapping,
    camelize_keys,
    clean_text,
    coerce_timestamp,
    new_id,
    normalize_entry,
    normalize_show,
    now_ms,
)

MAX_SHOWS_PER_DATE = 5
SHOW_LIMIT_MESSAGE = f"Daily show limit reached. Maximum of {MAX_SHOWS_PER_DATE} shows per date."
PILOT_CONFLICT_MESSAGE = "Pilot already has an entry for this show."


def operator_key(value: str) -> str:
    return value.strip().casefold()


def assert_pilot_unique(entries: Iterable[Entry], entry: Entry) -> None:
    key = operator_key(entry.operator)
    if not key:
        return
    for existing in entries:
        if existing.id != entry.id and operator_key(existing.operator) == key:
            raise ConstraintViolation(PILOT_CONFLICT_MESSAGE)


def assert_entries_unique(entries: list[Entry]) -> None:
    for index, entry in enumerate(entries):
        assert_pilot_unique(entries[:index], entry)


def prepare_new_show(raw: Any, *, parse_strings: bool = True) -> Show:
    payload = camelize_keys(as_mapping(raw))
    now = now_ms()
    created_at = coerce_timestamp(payload.get("createdAt"), now, parse_strings=parse_strings)
    updated_at = coerce_timestamp(payload.get("updatedAt"), now, parse_strings=parse_strings)
    payload.update(
        id=clean_text(payload.get("id")) or new_id(),
        createdAt=created_at,
        updatedAt=max(updated_at, created_at),
        entries=payload.get("entries") or [],
        archivedAt=None,
    )
    return normalize_show(payload, parse_strings=parse_strings)


def merge_show_updates(existing: Show, updates: Any, *, parse_strings: bool = True) -> Show:
    merged = existing.to_document()
    merged.update(camelize_keys(as_mapping(updates)))
    merged.update(id=existing.id, updatedAt=now_ms(), archivedAt=None)
    return normalize_show(merged, parse_strings=parse_strings)


def merge_entry_updates(existing: Entry, updates: Any, *, parse_strings: bool = True) -> Entry:
    merged = existing.to_document()
    merged.update(camelize_keys(as_mapping(updates)))
    merged["id"] = existing.id
    return normalize_entry(merged, parse_strings=parse_strings)


def with_entries(show: Show, entries: list[Entry], *, parse_strings: bool = True) -> Show:
    document = show.to_document()
    document.update(entries=[entry.to_document() for entry in entries], updatedAt=now_ms())
    return normalize_show(document, parse_strings=parse_strings)


class StorageProvider(ABC):
    """Capability set shared by every storage backend.

    Lookups signal "not found" with ``None`` (or ``False`` for deletes that
    report an outcome); only invariant violations, configuration problems and
    backend failures are raised, all as :class:`tracker.errors.StorageError`.
    """

    provider_type = ""
    label = ""
    supports_archive = False
    supports_staff = False
    supports_users = False

    def __enter__(self) -> StorageProvider:
        self.init()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    @abstractmethod
    def init(self) -> None: ...

    @abstractmethod
    def dispose(self) -> None: ...

    def describe(self) -> dict[str, Any]:
        return {"label": self.label, "driver": self.provider_type}

    @abstractmethod
    def list_shows(self) -> list[Show]: ...

    @abstractmethod
    def get_show(self, show_id: str) -> Show | None: ...

    @abstractmethod
    def create_show(self, raw: Any) -> Show: ...

    @abstractmethod
    def update_show(self, show_id: str, updates: Any) -> Show | None: ...

    @abstractmethod
    def replace_show(self, show: Any) -> Show: ...

    @abstractmethod
    def delete_show(self, show_id: str) -> None: ...

    @abstractmethod
    def add_entry(self, show_id: str, raw: Any) -> Entry | None: ...

    @abstractmethod
    def update_entry(self, show_id: str, entry_id: str, updates: Any) -> Entry | None: ...

    @abstractmethod
    def delete_entry(self, show_id: str, entry_id: str) -> bool: ...

    def archive_show_now(self, show_id: str, now: datetime | None = None) -> ArchivedShow | None:
        raise self._unsupported("archiving")

    def list_archived_shows(self) -> list[ArchivedShow]:
        return []

    def get_archived_show(self, show_id: str) -> ArchivedShow | None:
        return None

    def run_archive_maintenance(self, now: datetime | None = None) -> list[str]:
        return []

    def get_staff(self) -> StaffRoster:
        raise self._unsupported("staff rosters")

    def replace_staff(self, roster: StaffRoster | Mapping[str, Any]) -> StaffRoster:
        raise self._unsupported("staff rosters")

    def get_user_by_email(self, email: str) -> User | None:
        raise self._unsupported("users")

    def get_user_by_id(self, user_id: str) -> User | None:
        raise self._unsupported("users")

    def create_user(self, raw: Any) -> User:
        raise self._unsupported("users")

    def list_users(self) -> list[User]:
        raise self._unsupported("users")

    def update_user_role(self, user_id: str, role: str) -> User | None:
        raise self._unsupported("users")

    def _unsupported(self, capability: str) -> UnsupportedOperation:
        return UnsupportedOperation(f"{self.label} storage does not support {capability}")


class DocumentStorageProvider(StorageProvider):
    """Show CRUD for backends that keep each show as one JSON document.

    Subclasses supply the four document primitives. No capacity or operator
    uniqueness checks happen here.
    """

    parse_strings = False

    @abstractmethod
    def _read_all(self) -> list[Show]: ...

    @abstractmethod
    def _read(self, show_id: str) -> Show | None: ...

    @abstractmethod
    def _write(self, show: Show) -> None: ...

    @abstractmethod
    def _remove(self, show_id: str) -> None: ...

    def list_shows(self) -> list[Show]:
        return sorted(self._read_all(), key=lambda show: (-show.updated_at, show.id))

    def get_show(self, show_id: str) -> Show | None:
        if not clean_text(show_id):
            return None
        return self._read(show_id)

    def create_show(self, raw: Any) -> Show:
        show = prepare_new_show(raw, parse_strings=self.parse_strings)
        self._write(show)
        return show

    def update_show(self, show_id: str, updates: Any) -> Show | None:
        existing = self.get_show(show_id)
        if existing is None:
            return None
        updated = merge_show_updates(existing, updates, parse_strings=self.parse_strings)
        self._write(updated)
        return updated

    def replace_show(self, show: Any) -> Show:
        normalized = normalize_show(show, parse_strings=self.parse_strings).model_copy(update={"archived_at": None})
        self._write(normalized)
        return normalized

    def delete_show(self, show_id: str) -> None:
        if clean_text(show_id):
            self._remove(show_id)

    def add_entry(self, show_id: str, raw: Any) -> Entry | None:
        show = self.get_show(show_id)
        if show is None:
            return None
        entry = normalize_entry(raw, parse_strings=self.parse_strings)
        entries = list(show.entries)
        for index, existing in enumerate(entries):
            if existing.id == entry.id:
                entries[index] = entry
                break
        else:
            entries.append(entry)
        self._write(with_entries(show, entries, parse_strings=self.parse_strings))
        return entry

    def update_entry(self, show_id: str, entry_id: str, updates: Any) -> Entry | None:
        show = self.get_show(show_id)
        if show is None:
            return None
        entries = list(show.entries)
        for index, existing in enumerate(entries):
            if existing.id == entry_id:
                entry = merge_entry_updates(existing, updates, parse_strings=self.parse_strings)
                entries[index] = entry
                self._write(with_entries(show, entries, parse_strings=self.parse_strings))
                return entry
        return None

    def delete_entry(self, show_id: str, entry_id: str) -> bool:
        show = self.get_show(show_id)
        if show is None:
            return False
        remaining = [entry for entry in show.entries if entry.id != entry_id]
        if len(remaining) == len(show.entries):
            return False
        self._write(with_entries(show, remaining, parse_strings=self.parse_strings))
        return True

