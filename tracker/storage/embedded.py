from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from sqlalchemy import BigInteger, Column, MetaData, String, Table, Text, create_engine, delete, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tracker.config import EmbeddedFileConfig
from tracker.entities import Show
from tracker.errors import BackendFailure, ProviderNotInitialized
from tracker.normalize import normalize_show
from tracker.storage.base import DocumentStorageProvider

logger = logging.getLogger(__name__)

metadata = MetaData()

shows_table = Table(
    "shows",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("data", Text, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)


class EmbeddedFileStorageProvider(DocumentStorageProvider):
    """Whole-show JSON documents in a single local SQLite file."""

    provider_type = "embedded-file"
    label = "Embedded file"

    def __init__(self, config: EmbeddedFileConfig | None = None) -> None:
        self.config = config or EmbeddedFileConfig()
        self._engine: Engine | None = None

    @property
    def path(self) -> Path:
        return Path(self.config.filename).expanduser()

    def init(self) -> None:
        if self._engine is not None:
            self.dispose()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._engine = create_engine(f"sqlite:///{self.path}", connect_args={"check_same_thread": False})
            metadata.create_all(bind=self._engine)
        except SQLAlchemyError as exc:
            self.dispose()
            raise BackendFailure(f"Failed to open embedded storage at {self.path}: {exc}") from exc
        logger.info("Embedded storage ready at %s", self.path)

    def dispose(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()

    def describe(self) -> dict[str, Any]:
        return {"label": self.label, "driver": "sqlite", "filename": str(self.path)}

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise ProviderNotInitialized()
        return self._engine

    def _decode(self, row_id: str, data: str) -> Show | None:
        try:
            document = json.loads(data)
        except ValueError:
            document = None
        if not isinstance(document, dict):
            logger.warning("Skipping unreadable show document %s", row_id)
            return None
        return normalize_show({**document, "id": document.get("id") or row_id}, parse_strings=False)

    def _read_all(self) -> list[Show]:
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                rows = conn.execute(select(shows_table.c.id, shows_table.c.data)).all()
        except SQLAlchemyError as exc:
            raise BackendFailure(f"Embedded storage read failed: {exc}") from exc
        shows = (self._decode(row.id, row.data) for row in rows)
        return [show for show in shows if show is not None]

    def _read(self, show_id: str) -> Show | None:
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                data = conn.scalar(select(shows_table.c.data).where(shows_table.c.id == show_id))
        except SQLAlchemyError as exc:
            raise BackendFailure(f"Embedded storage read failed: {exc}") from exc
        return None if data is None else self._decode(show_id, data)

    def _write(self, show: Show) -> None:
        engine = self._require_engine()
        values = {"id": show.id, "data": json.dumps(show.to_document()), "updated_at": show.updated_at}
        statement = insert(shows_table).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[shows_table.c.id],
            set_={"data": statement.excluded.data, "updated_at": statement.excluded.updated_at},
        )
        try:
            with engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as exc:
            raise BackendFailure(f"Embedded storage write failed: {exc}") from exc

    def _remove(self, show_id: str) -> None:
        engine = self._require_engine()
        try:
            with engine.begin() as conn:
                conn.execute(delete(shows_table).where(shows_table.c.id == show_id))
        except SQLAlchemyError as exc:
            raise BackendFailure(f"Embedded storage write failed: {exc}") from exc
