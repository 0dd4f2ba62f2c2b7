from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from tracker.config import RemoteTableConfig
from tracker.entities import Show
from tracker.errors import BackendFailure, ConfigurationError, ProviderNotInitialized
from tracker.normalize import clean_text, normalize_show
from tracker.storage.base import DocumentStorageProvider

logger = logging.getLogger(__name__)


class RemoteTableStorageProvider(DocumentStorageProvider):
    """Shows stored as rows of a Coda-style remote table.

    Each row carries the show id in one column and the JSON document in
    another. A ``show id -> row id`` cache is rebuilt from a full listing
    after every write, so reads after a write see the remote state.
    """

    provider_type = "remote-table"
    label = "Remote table"

    def __init__(self, config: RemoteTableConfig | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config or RemoteTableConfig()
        self._transport = transport
        self._client: httpx.Client | None = None
        self._row_ids: dict[str, str] = {}

    def init(self) -> None:
        if self._client is not None:
            self.dispose()
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers=headers,
            timeout=self.config.timeout,
            transport=self._transport,
        )
        self._row_ids.clear()
        missing = self.config.missing_fields()
        if missing:
            logger.warning("Remote table storage is missing configuration: %s", ", ".join(missing))

    def dispose(self) -> None:
        client, self._client = self._client, None
        self._row_ids.clear()
        if client is not None:
            client.close()

    def describe(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "driver": "coda",
            "base_url": self.config.base_url,
            "doc_id": self.config.doc_id,
            "table_id": self.config.table_id,
            "configured": not self.config.missing_fields(),
        }

    # http plumbing

    @property
    def _rows_path(self) -> str:
        return f"/docs/{self.config.doc_id}/tables/{self.config.table_id}/rows"

    def _row_path(self, row_id: str) -> str:
        return f"{self._rows_path}/{quote(row_id, safe='')}"

    def _assert_configured(self) -> None:
        missing = self.config.missing_fields()
        if missing:
            raise ConfigurationError(
                "Remote table storage is not fully configured. Missing: " + ", ".join(missing)
            )

    def _request(self, method: str, path: str, *, allow_missing: bool = False, **kwargs: Any) -> Any:
        if self._client is None:
            raise ProviderNotInitialized()
        try:
            response = self._client.request(method, path, **kwargs)
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            raise BackendFailure(
                f"Remote table {method} {path} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendFailure(f"Remote table {method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise BackendFailure(f"Remote table {method} {path} returned invalid JSON") from exc

    def _fetch_rows(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"useColumnNames": "true"}
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", self._rows_path, params=params)
            rows.extend(item for item in payload.get("items") or [] if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        self._row_ids.clear()
        for row in rows:
            show_id = clean_text(self._value(row, self.config.show_id_column))
            if show_id and row.get("id"):
                self._row_ids[show_id] = str(row["id"])
        return rows

    def _value(self, row: dict[str, Any], column: str) -> Any:
        values = row.get("values")
        return values.get(column) if isinstance(values, dict) else None

    def _row_to_show(self, row: dict[str, Any]) -> Show | None:
        raw = self._value(row, self.config.payload_column)
        try:
            document = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            document = None
        if not isinstance(document, dict):
            logger.warning("Skipping remote row %s with an unreadable payload", row.get("id"))
            return None
        if not clean_text(document.get("id")):
            document = {**document, "id": clean_text(self._value(row, self.config.show_id_column)) or row.get("id")}
        show = normalize_show(document, parse_strings=False)
        if row.get("id"):
            self._row_ids[show.id] = str(row["id"])
        return show

    def _cells(self, show: Show) -> list[dict[str, Any]]:
        return [
            {"column": self.config.show_id_column, "value": show.id},
            {"column": self.config.payload_column, "value": json.dumps(show.to_document())},
        ]

    # document primitives

    def _read_all(self) -> list[Show]:
        self._assert_configured()
        shows = (self._row_to_show(row) for row in self._fetch_rows())
        return [show for show in shows if show is not None]

    def _read(self, show_id: str) -> Show | None:
        self._assert_configured()
        row_id = self._row_ids.get(show_id)
        if row_id:
            row = self._request("GET", self._row_path(row_id), allow_missing=True, params={"useColumnNames": "true"})
            if row is not None:
                return self._row_to_show(row)
        for row in self._fetch_rows():
            if clean_text(self._value(row, self.config.show_id_column)) == show_id:
                return self._row_to_show(row)
        return None

    def _write(self, show: Show) -> None:
        self._assert_configured()
        row_id = self._row_ids.get(show.id)
        if row_id:
            self._request("PUT", self._row_path(row_id), json={"row": {"cells": self._cells(show)}})
        else:
            self._request(
                "POST",
                self._rows_path,
                json={"rows": [{"cells": self._cells(show)}], "keyColumns": [self.config.show_id_column]},
            )
        self._fetch_rows()

    def _remove(self, show_id: str) -> None:
        self._assert_configured()
        if show_id not in self._row_ids:
            self._fetch_rows()
        row_id = self._row_ids.get(show_id)
        if not row_id:
            return
        self._request("DELETE", self._row_path(row_id), allow_missing=True)
        self._fetch_rows()

    def list_shows(self) -> list[Show]:
        self._assert_configured()
        return super().list_shows()

    def get_show(self, show_id: str) -> Show | None:
        self._assert_configured()
        return super().get_show(show_id)
