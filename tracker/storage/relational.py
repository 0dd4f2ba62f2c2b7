from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from tracker.config import AdminSeed, RelationalConfig, StaffSeed
from tracker.db import POOL_OPTIONS, Base, build_engine, build_session_factory
from tracker.entities import USER_ROLES, ArchivedShow, Entry, Show, StaffRoster, User
from tracker.errors import BackendFailure, ConstraintViolation, DuplicateRecord, ProviderNotInitialized, StorageError
from tracker.models import ArchivedShowRecord, EntryRecord, ShowRecord, StaffRecord, UserRecord
from tracker.normalize import (
    as_mapping,
    camelize_keys,
    clean_text,
    infer_name_from_email,
    is_valid_email,
    new_id,
    normalize_archived_show,
    normalize_email,
    normalize_entry,
    normalize_name_list,
    normalize_roster,
    normalize_show,
    normalize_user_role,
    now_ms,
    to_datetime,
    to_millis,
    utcnow,
)
from tracker.security import hash_password
from tracker.storage.base import (
    MAX_SHOWS_PER_DATE,
    SHOW_LIMIT_MESSAGE,
    StorageProvider,
    assert_entries_unique,
    assert_pilot_unique,
    merge_entry_updates,
    merge_show_updates,
    prepare_new_show,
)

logger = logging.getLogger(__name__)

ARCHIVE_RETENTION = timedelta(days=60)
ROSTER_ROLES = {"crew": "crew", "pilots": "pilot", "monkeyLeads": "monkeyLead"}

_write_lock = threading.RLock()


def _entry_from_record(record: EntryRecord) -> Entry:
    return Entry(
        id=record.id,
        ts=record.ts,
        unit_id=record.unit_id,
        planned=record.planned,
        launched=record.launched,
        status=record.status,
        primary_issue=record.primary_issue,
        sub_issue=record.sub_issue,
        other_detail=record.other_detail,
        severity=record.severity,
        root_cause=record.root_cause,
        actions=list(record.actions or []),
        operator=record.operator,
        battery_id=record.battery_id,
        delay_sec=record.delay_sec,
        command_rx=record.command_rx,
        notes=record.notes,
    )


def _show_from_record(record: ShowRecord) -> Show:
    return Show(
        id=record.id,
        date=record.date,
        time=record.time,
        label=record.label,
        crew=list(record.crew or []),
        lead_pilot=record.lead_pilot,
        monkey_lead=record.monkey_lead,
        notes=record.notes,
        entries=[_entry_from_record(entry) for entry in record.entries],
        created_at=to_millis(record.created_at),
        updated_at=to_millis(record.updated_at),
        archived_at=None if record.archived_at is None else to_millis(record.archived_at),
    )


def _archived_from_record(record: ArchivedShowRecord) -> ArchivedShow:
    return normalize_archived_show(record.data, to_millis(record.archived_at))


def _user_from_record(record: UserRecord) -> User:
    return User(
        id=record.id,
        email=record.email,
        name=record.name,
        role=record.role,
        password_hash=record.password_hash,
        created_at=to_millis(record.created_at),
        updated_at=to_millis(record.updated_at),
    )


def _apply_entry(record: EntryRecord, entry: Entry) -> None:
    record.ts = entry.ts
    record.unit_id = entry.unit_id
    record.planned = entry.planned
    record.launched = entry.launched
    record.status = entry.status
    record.primary_issue = entry.primary_issue
    record.sub_issue = entry.sub_issue
    record.other_detail = entry.other_detail
    record.severity = entry.severity
    record.root_cause = entry.root_cause
    record.actions = list(entry.actions)
    record.operator = entry.operator
    record.battery_id = entry.battery_id
    record.delay_sec = entry.delay_sec
    record.command_rx = entry.command_rx
    record.notes = entry.notes
    record.updated_at = utcnow()


def _active_show_query(show_id: str):
    return (
        select(ShowRecord)
        .options(selectinload(ShowRecord.entries))
        .where(ShowRecord.id == show_id, ShowRecord.archived_at.is_(None))
    )


class RelationalStorageProvider(StorageProvider):
    """SQLAlchemy-backed storage with the full capability set.

    Shows and entries live in normalized tables; the archive keeps one JSON
    snapshot per show. Capacity and operator checks are check-then-act unless
    ``serialize_writes`` is enabled, in which case every check-then-act write
    holds a process-wide lock.
    """

    provider_type = "relational"
    label = "Relational database"
    supports_archive = True
    supports_staff = True
    supports_users = True

    def __init__(
        self,
        config: RelationalConfig | None = None,
        *,
        default_admin: AdminSeed | None = None,
        default_staff: StaffSeed | None = None,
    ) -> None:
        self.config = config or RelationalConfig()
        self.default_admin = default_admin or AdminSeed()
        self.default_staff = default_staff or StaffSeed()
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    # lifecycle

    def init(self) -> None:
        if self._engine is not None:
            self.dispose()
        url = self.config.database_url()
        try:
            pool = {name: getattr(self.config, name) for name in POOL_OPTIONS}
            self._engine = build_engine(url, echo=self.config.echo, **pool)
            self._session_factory = build_session_factory(self._engine)
            created = self._ensure_schema()
            seeded = self._seed_defaults() if self.config.seed_defaults else []
            archived = self.run_archive_maintenance() if self.config.archive_on_init else []
        except StorageError:
            self.dispose()
            raise
        except SQLAlchemyError as exc:
            self.dispose()
            raise BackendFailure(f"Failed to initialize relational storage: {exc}") from exc
        logger.info(
            "Relational storage ready (%s): created tables %s, seeded %s, archived %d show(s)",
            make_url(url).render_as_string(hide_password=True),
            created or "none",
            seeded or "nothing",
            len(archived),
        )

    def dispose(self) -> None:
        engine, self._engine = self._engine, None
        self._session_factory = None
        if engine is not None:
            engine.dispose()

    def describe(self) -> dict[str, Any]:
        url = make_url(self.config.database_url())
        return {
            "label": self.label,
            "driver": url.drivername,
            "host": url.host,
            "port": url.port,
            "database": url.database,
        }

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        if self._session_factory is None:
            raise ProviderNotInitialized()
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise BackendFailure(f"Relational storage failure: {exc}") from exc
        finally:
            session.close()

    def _guard(self):
        return _write_lock if self.config.serialize_writes else nullcontext()

    def _ensure_schema(self) -> list[str]:
        before = set(inspect(self._engine).get_table_names())
        Base.metadata.create_all(bind=self._engine)
        after = set(inspect(self._engine).get_table_names())
        return sorted(after - before)

    def _seed_defaults(self) -> list[str]:
        seeded: list[str] = []
        defaults = normalize_roster(self.default_staff.model_dump()).model_dump(by_alias=True)
        with self._transaction() as db:
            for key, role in ROSTER_ROLES.items():
                count = db.scalar(select(func.count()).select_from(StaffRecord).where(StaffRecord.role == role))
                if count:
                    continue
                names = defaults[key]
                db.add_all(StaffRecord(id=new_id(), name=name, role=role) for name in names)
                seeded.append(f"staff:{role}")
            has_users = db.scalar(select(func.count()).select_from(UserRecord)) > 0
        if not has_users:
            admin = self.default_admin
            self.create_user({"email": admin.email, "name": admin.name, "password": admin.password, "role": "admin"})
            seeded.append("admin")
            if admin.password == AdminSeed().password:
                logger.warning("Seeded admin %s with the default password; change it", normalize_email(admin.email))
        return seeded

    # shows

    def enforce_show_limit(self, show_date: str, exclude_id: str | None = None) -> None:
        with self._transaction() as db:
            self._enforce_show_limit(db, show_date, exclude_id)

    def _enforce_show_limit(self, db: Session, show_date: str, exclude_id: str | None = None) -> None:
        key = clean_text(show_date)
        if not key:
            return
        query = select(func.count()).select_from(ShowRecord).where(
            ShowRecord.date == key,
            ShowRecord.archived_at.is_(None),
        )
        if exclude_id:
            query = query.where(ShowRecord.id != exclude_id)
        if db.scalar(query) >= MAX_SHOWS_PER_DATE:
            raise ConstraintViolation(SHOW_LIMIT_MESSAGE)

    def _write_show(self, db: Session, show: Show) -> None:
        record = db.get(ShowRecord, show.id)
        if record is None:
            record = ShowRecord(id=show.id)
            db.add(record)
        record.date = show.date
        record.time = show.time
        record.label = show.label
        record.crew = list(show.crew)
        record.lead_pilot = show.lead_pilot
        record.monkey_lead = show.monkey_lead
        record.notes = show.notes
        record.created_at = to_datetime(show.created_at)
        record.updated_at = to_datetime(show.updated_at)
        record.archived_at = None
        db.execute(delete(EntryRecord).where(EntryRecord.show_id == show.id))
        for position, entry in enumerate(show.entries):
            entry_record = EntryRecord(show_id=show.id, id=entry.id, position=position)
            _apply_entry(entry_record, entry)
            db.add(entry_record)

    def _save_show(self, show: Show) -> Show:
        show = show.model_copy(update={"archived_at": None})
        assert_entries_unique(show.entries)
        with self._guard(), self._transaction() as db:
            self._enforce_show_limit(db, show.date, exclude_id=show.id)
            self._write_show(db, show)
        return show

    def list_shows(self) -> list[Show]:
        query = (
            select(ShowRecord)
            .options(selectinload(ShowRecord.entries))
            .where(ShowRecord.archived_at.is_(None))
            .order_by(ShowRecord.updated_at.desc(), ShowRecord.id)
        )
        with self._transaction() as db:
            return [_show_from_record(record) for record in db.scalars(query)]

    def get_show(self, show_id: str) -> Show | None:
        if not clean_text(show_id):
            return None
        with self._transaction() as db:
            record = db.scalar(_active_show_query(show_id))
            return None if record is None else _show_from_record(record)

    def create_show(self, raw: Any) -> Show:
        return self._save_show(prepare_new_show(raw))

    def update_show(self, show_id: str, updates: Any) -> Show | None:
        with self._guard():
            existing = self.get_show(show_id)
            if existing is None:
                return None
            return self._save_show(merge_show_updates(existing, updates))

    def replace_show(self, show: Any) -> Show:
        return self._save_show(normalize_show(show))

    def delete_show(self, show_id: str) -> None:
        if not clean_text(show_id):
            return
        with self._transaction() as db:
            db.execute(delete(EntryRecord).where(EntryRecord.show_id == show_id))
            db.execute(delete(ShowRecord).where(ShowRecord.id == show_id))

    # entries

    def add_entry(self, show_id: str, raw: Any) -> Entry | None:
        entry = normalize_entry(raw)
        with self._guard(), self._transaction() as db:
            record = db.scalar(_active_show_query(show_id))
            if record is None:
                return None
            assert_pilot_unique((_entry_from_record(item) for item in record.entries), entry)
            target = next((item for item in record.entries if item.id == entry.id), None)
            if target is None:
                position = max((item.position for item in record.entries), default=-1) + 1
                target = EntryRecord(id=entry.id, position=position)
                record.entries.append(target)
            _apply_entry(target, entry)
            record.updated_at = utcnow()
        return entry

    def update_entry(self, show_id: str, entry_id: str, updates: Any) -> Entry | None:
        with self._guard(), self._transaction() as db:
            record = db.scalar(_active_show_query(show_id))
            if record is None:
                return None
            target = next((item for item in record.entries if item.id == entry_id), None)
            if target is None:
                return None
            entry = merge_entry_updates(_entry_from_record(target), updates)
            assert_pilot_unique((_entry_from_record(item) for item in record.entries), entry)
            _apply_entry(target, entry)
            record.updated_at = utcnow()
        return entry

    def delete_entry(self, show_id: str, entry_id: str) -> bool:
        with self._transaction() as db:
            result = db.execute(
                delete(EntryRecord).where(EntryRecord.show_id == show_id, EntryRecord.id == entry_id)
            )
            if not result.rowcount:
                return False
            db.execute(update(ShowRecord).where(ShowRecord.id == show_id).values(updated_at=utcnow()))
        return True

    # archive

    def archive_show_now(self, show_id: str, now: datetime | None = None) -> ArchivedShow | None:
        archived_at = to_datetime(to_millis(now or utcnow()))
        with self._guard(), self._transaction() as db:
            record = db.scalar(_active_show_query(show_id))
            if record is None:
                existing = db.get(ArchivedShowRecord, show_id)
                return None if existing is None else _archived_from_record(existing)
            snapshot = _show_from_record(record)
            archived = normalize_archived_show(snapshot.to_document(), to_millis(archived_at))
            db.merge(
                ArchivedShowRecord(
                    id=snapshot.id,
                    data=archived.to_document(),
                    show_date=snapshot.date or None,
                    created_at=record.created_at,
                    archived_at=archived_at,
                )
            )
            db.flush()
            db.execute(delete(EntryRecord).where(EntryRecord.show_id == show_id))
            db.execute(delete(ShowRecord).where(ShowRecord.id == show_id))
        return archived

    def list_archived_shows(self) -> list[ArchivedShow]:
        query = select(ArchivedShowRecord).order_by(ArchivedShowRecord.archived_at.desc(), ArchivedShowRecord.id)
        with self._transaction() as db:
            return [_archived_from_record(record) for record in db.scalars(query)]

    def get_archived_show(self, show_id: str) -> ArchivedShow | None:
        if not clean_text(show_id):
            return None
        with self._transaction() as db:
            record = db.get(ArchivedShowRecord, show_id)
            return None if record is None else _archived_from_record(record)

    def run_archive_maintenance(self, now: datetime | None = None) -> list[str]:
        reference = to_datetime(to_millis(now or utcnow()))
        cutoff = reference - ARCHIVE_RETENTION
        with self._transaction() as db:
            candidates = list(
                db.scalars(
                    select(ShowRecord.id)
                    .where(ShowRecord.archived_at.is_(None), ShowRecord.created_at <= cutoff)
                    .order_by(ShowRecord.created_at, ShowRecord.id)
                )
            )
        archived = [show_id for show_id in candidates if self.archive_show_now(show_id, reference) is not None]
        if archived:
            logger.info("Archived %d show(s) created on or before %s", len(archived), cutoff.isoformat())
        return archived

    # staff

    def get_staff(self) -> StaffRoster:
        grouped: dict[str, list[str]] = {key: [] for key in ROSTER_ROLES}
        roster_key = {role: key for key, role in ROSTER_ROLES.items()}
        with self._transaction() as db:
            for role, name in db.execute(select(StaffRecord.role, StaffRecord.name)):
                grouped[roster_key[role]].append(name)
        return normalize_roster(grouped)

    def replace_staff(self, roster: StaffRoster | Mapping[str, Any]) -> StaffRoster:
        data = camelize_keys(as_mapping(roster))
        with self._guard(), self._transaction() as db:
            for key, role in ROSTER_ROLES.items():
                if key not in data:
                    continue
                names = normalize_name_list(data[key] or [], sort=True)
                db.execute(delete(StaffRecord).where(StaffRecord.role == role))
                db.add_all(StaffRecord(id=new_id(), name=name, role=role) for name in names)
        return self.get_staff()

    # users

    def get_user_by_email(self, email: str) -> User | None:
        key = normalize_email(email)
        if not key:
            return None
        with self._transaction() as db:
            record = db.scalar(select(UserRecord).where(func.lower(UserRecord.email) == key))
            return None if record is None else _user_from_record(record)

    def get_user_by_id(self, user_id: str) -> User | None:
        if not clean_text(user_id):
            return None
        with self._transaction() as db:
            record = db.get(UserRecord, user_id)
            return None if record is None else _user_from_record(record)

    def create_user(self, raw: Any) -> User:
        data = camelize_keys(as_mapping(raw))
        email = normalize_email(data.get("email"))
        if not is_valid_email(email):
            raise ConstraintViolation("A valid email is required")
        password_hash = clean_text(data.get("passwordHash"))
        if not password_hash:
            password = data.get("password")
            if not isinstance(password, str) or not password:
                raise ConstraintViolation("Password is required")
            password_hash = hash_password(password)
        now = to_datetime(now_ms())
        with self._guard(), self._transaction() as db:
            taken = db.scalar(select(UserRecord.id).where(func.lower(UserRecord.email) == email))
            if taken is not None:
                raise DuplicateRecord("Email already registered")
            record = UserRecord(
                id=clean_text(data.get("id")) or new_id(),
                email=email,
                name=clean_text(data.get("name")) or infer_name_from_email(email),
                role=normalize_user_role(data.get("role")),
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            db.add(record)
        return _user_from_record(record)

    def list_users(self) -> list[User]:
        query = select(UserRecord).order_by(func.lower(UserRecord.name), func.lower(UserRecord.email))
        with self._transaction() as db:
            return [_user_from_record(record) for record in db.scalars(query)]

    def update_user_role(self, user_id: str, role: str) -> User | None:
        normalized = clean_text(role).lower()
        if normalized not in USER_ROLES:
            raise ConstraintViolation(f"Unknown role: {role}")
        with self._transaction() as db:
            record = db.get(UserRecord, user_id)
            if record is None:
                return None
            record.role = normalized
            record.updated_at = utcnow()
            return _user_from_record(record)
