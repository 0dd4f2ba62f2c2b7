from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracker.errors import BackendFailure
from tracker.models import ArchivedShowRecord, EntryRecord, ShowRecord
from tracker.normalize import now_ms, to_millis

DAY_MS = 24 * 60 * 60 * 1000


def table_count(provider, model) -> int:
    with provider._transaction() as db:
        return db.scalar(select(func.count()).select_from(model))


def show_with_entries(provider, **fields):
    return provider.create_show(
        {
            "date": "2024-06-01",
            "label": "Lakefront",
            "entries": [
                {"id": "e1", "ts": 100, "operator": "Alex", "status": "Completed"},
                {"id": "e2", "ts": 200, "operator": "Sam", "status": "Abort", "primaryIssue": "GPS"},
            ],
            **fields,
        }
    )


def test_archive_moves_snapshot_and_removes_active_rows(relational):
    show = show_with_entries(relational)
    archived = relational.archive_show_now(show.id)

    assert archived.id == show.id
    assert archived.entries == show.entries
    assert archived.archived_at >= show.updated_at
    assert relational.get_show(show.id) is None
    assert relational.list_shows() == []
    assert table_count(relational, ShowRecord) == 0
    assert table_count(relational, EntryRecord) == 0
    assert table_count(relational, ArchivedShowRecord) == 1

    stored = relational.get_archived_show(show.id)
    assert stored == archived
    assert stored.to_document()["archivedAt"] == archived.archived_at


def test_archiving_twice_returns_the_existing_record(relational):
    show = show_with_entries(relational)
    first = relational.archive_show_now(show.id, now=datetime(2024, 8, 1, tzinfo=timezone.utc))
    second = relational.archive_show_now(show.id, now=datetime(2024, 9, 1, tzinfo=timezone.utc))
    assert second == first
    assert table_count(relational, ArchivedShowRecord) == 1


def test_archive_unknown_show_returns_none(relational):
    assert relational.archive_show_now("missing") is None
    assert relational.get_archived_show("missing") is None
    assert relational.get_archived_show("") is None


def test_archived_shows_list_newest_first(relational):
    first = relational.create_show({"id": "first"})
    second = relational.create_show({"id": "second"})
    relational.archive_show_now(first.id, now=datetime(2024, 7, 1, tzinfo=timezone.utc))
    relational.archive_show_now(second.id, now=datetime(2024, 7, 2, tzinfo=timezone.utc))
    assert [show.id for show in relational.list_archived_shows()] == ["second", "first"]


def test_archiving_frees_capacity_for_the_date(relational):
    shows = [relational.create_show({"date": "2024-06-01"}) for _ in range(5)]
    relational.archive_show_now(shows[0].id)
    assert relational.create_show({"date": "2024-06-01"}).date == "2024-06-01"


def test_sweep_archives_shows_past_retention(relational):
    old = show_with_entries(relational, createdAt=now_ms() - 65 * DAY_MS)
    recent = relational.create_show({"createdAt": now_ms() - 10 * DAY_MS})

    assert relational.run_archive_maintenance() == [old.id]
    assert relational.get_show(old.id) is None
    assert relational.get_archived_show(old.id).entries == old.entries
    assert relational.get_show(recent.id) is not None

    assert relational.run_archive_maintenance() == []
    assert len(relational.list_archived_shows()) == 1


def test_sweep_cutoff_is_inclusive(relational):
    now = datetime(2024, 9, 1, 12, tzinfo=timezone.utc)
    boundary = relational.create_show({"createdAt": to_millis(now - timedelta(days=60))})
    inside = relational.create_show({"createdAt": to_millis(now - timedelta(days=60)) + 1})
    assert relational.run_archive_maintenance(now=now) == [boundary.id]
    assert relational.get_show(inside.id) is not None
    assert relational.get_archived_show(boundary.id).archived_at == to_millis(now)


def test_init_runs_the_sweep_when_enabled(make_relational):
    provider = make_relational()
    old = provider.create_show({"createdAt": now_ms() - 90 * DAY_MS})
    provider.dispose()

    sweeping = make_relational(archive_on_init=True)
    assert sweeping.get_show(old.id) is None
    assert sweeping.get_archived_show(old.id) is not None


def test_upsert_of_an_archived_id_makes_it_active_again(relational):
    show = show_with_entries(relational)
    archived = relational.archive_show_now(show.id)

    revived = relational.replace_show(archived.to_document())
    assert revived.archived_at is None
    assert relational.get_show(show.id).entries == show.entries
    assert relational.get_archived_show(show.id) is not None


def fail_deletes_from(monkeypatch, table_name: str) -> None:
    original = Session.execute

    def execute(self, statement, *args, **kwargs):
        if getattr(statement, "is_delete", False) and statement.table.name == table_name:
            raise SQLAlchemyError("disk I/O error")
        return original(self, statement, *args, **kwargs)

    monkeypatch.setattr(Session, "execute", execute)


def test_failed_archive_leaves_the_show_active(relational, monkeypatch):
    show = show_with_entries(relational)
    fail_deletes_from(monkeypatch, "shows")

    with pytest.raises(BackendFailure):
        relational.archive_show_now(show.id)

    assert relational.get_show(show.id) == show
    assert relational.get_archived_show(show.id) is None
    assert table_count(relational, ArchivedShowRecord) == 0
    assert table_count(relational, EntryRecord) == 2
