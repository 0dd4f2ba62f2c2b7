from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EntryStatus = Literal["Completed", "No-launch", "Abort", ""]
UserRole = Literal["admin", "manager", "pilot", "viewer"]

ENTRY_STATUSES: tuple[str, ...] = ("Completed", "No-launch", "Abort")
USER_ROLES: tuple[str, ...] = ("admin", "manager", "pilot", "viewer")


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Entry(Document):
    id: str
    ts: int
    unit_id: str = ""
    planned: str = ""
    launched: str = ""
    status: EntryStatus = ""
    primary_issue: str = ""
    sub_issue: str = ""
    other_detail: str = ""
    severity: str = ""
    root_cause: str = ""
    actions: list[str] = Field(default_factory=list)
    operator: str = ""
    battery_id: str = ""
    delay_sec: int | None = None
    command_rx: str = ""
    notes: str = ""


class Show(Document):
    id: str
    date: str = ""
    time: str = ""
    label: str = ""
    crew: list[str] = Field(default_factory=list)
    lead_pilot: str = ""
    monkey_lead: str = ""
    notes: str = ""
    entries: list[Entry] = Field(default_factory=list)
    created_at: int
    updated_at: int
    archived_at: int | None = None

    def to_document(self) -> dict[str, Any]:
        document = super().to_document()
        if document.get("archivedAt") is None:
            document.pop("archivedAt", None)
        return document


class ArchivedShow(Show):
    archived_at: int


class StaffRoster(Document):
    crew: list[str] = Field(default_factory=list)
    pilots: list[str] = Field(default_factory=list)
    monkey_leads: list[str] = Field(default_factory=list)


class User(Document):
    id: str
    email: str
    name: str = ""
    role: UserRole = "viewer"
    password_hash: str = Field(default="", repr=False)
    created_at: int
    updated_at: int

    def public(self) -> dict[str, Any]:
        document = self.to_document()
        document.pop("passwordHash", None)
        return document
