"""Snapshot storage backends.

Each collection (``marketplaces``, ``plugins``) is stored as one JSON array
and is only ever read whole and replaced whole. A replace either fully
succeeds or leaves the previous snapshot untouched.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from marketplace_indexer.config import Settings, get_settings
from marketplace_indexer.errors import StorageReadFailure, StorageWriteFailure

logger = logging.getLogger(__name__)

MARKETPLACES = "marketplaces"
PLUGINS = "plugins"
COLLECTIONS = (MARKETPLACES, PLUGINS)


class SnapshotStore(ABC):
    """Whole-collection load/replace gateway."""

    @abstractmethod
    def load(self, name: str) -> List[Dict[str, Any]]:
        """Load a collection snapshot. A collection never written loads as ``[]``.

        Raises:
            StorageReadFailure: the snapshot exists but cannot be read
        """

    @abstractmethod
    def replace(self, name: str, records: List[Dict[str, Any]]) -> None:
        """Atomically replace a collection snapshot.

        Raises:
            StorageWriteFailure: nothing was changed
        """

    def describe(self) -> str:
        return type(self).__name__


def _check_snapshot(name: str, data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise StorageReadFailure(f"Collection '{name}' is not a JSON array of objects")
    return data


class MemoryStore(SnapshotStore):
    """In-process store (tests, tooling)."""

    def __init__(self, initial: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._data: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(initial or {})
        self.writes: List[str] = []

    def load(self, name: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._data.get(name, []))

    def replace(self, name: str, records: List[Dict[str, Any]]) -> None:
        self._data[name] = copy.deepcopy(records)
        self.writes.append(name)


class JsonFileStore(SnapshotStore):
    """Local JSON files, ``<data_dir>/<name>.json``."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def path_for(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def describe(self) -> str:
        return f"JsonFileStore({self.data_dir})"

    def load(self, name: str) -> List[Dict[str, Any]]:
        path = self.path_for(name)
        if not path.exists():
            logger.info("No %s snapshot at %s, starting empty", name, path)
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageReadFailure(f"Failed to read {path}: {e}") from e
        return _check_snapshot(name, data)

    def replace(self, name: str, records: List[Dict[str, Any]]) -> None:
        path = self.path_for(name)
        tmp_path: Optional[str] = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            # Temp file in the same directory so os.replace stays on one filesystem
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{name}.", suffix=".tmp", dir=self.data_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StorageWriteFailure(f"Failed to write {path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        logger.info("Wrote %d %s to %s", len(records), name, path)


class HttpBlobStore(SnapshotStore):
    """Blob store reachable over HTTP: ``GET``/``PUT <base_url>/<name>.json``.

    A PUT replaces the whole object server-side, so a failed upload leaves the
    previous object in place.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        if client is not None:
            self._client.headers.update(headers)

    def url_for(self, name: str) -> str:
        return f"{self.base_url}/{name}.json"

    def describe(self) -> str:
        return f"HttpBlobStore({self.base_url})"

    def load(self, name: str) -> List[Dict[str, Any]]:
        url = self.url_for(name)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise StorageReadFailure(f"Failed to read {url}: {e}") from e
        if response.status_code == 404:
            logger.info("No %s snapshot at %s, starting empty", name, url)
            return []
        if response.status_code >= 400:
            raise StorageReadFailure(f"Failed to read {url}: HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise StorageReadFailure(f"Invalid JSON at {url}: {e}") from e
        return _check_snapshot(name, data)

    def replace(self, name: str, records: List[Dict[str, Any]]) -> None:
        url = self.url_for(name)
        body = json.dumps(records, indent=2, ensure_ascii=False)
        try:
            response = self._client.put(url, content=body.encode("utf-8"))
        except httpx.HTTPError as e:
            raise StorageWriteFailure(f"Failed to write {url}: {e}") from e
        if response.status_code >= 400:
            raise StorageWriteFailure(f"Failed to write {url}: HTTP {response.status_code}")
        logger.info("Uploaded %d %s to %s", len(records), name, url)


def get_store(settings: Optional[Settings] = None) -> SnapshotStore:
    """Build the configured storage backend."""
    settings = settings or get_settings()
    settings.validate_storage()
    if settings.storage_backend == "blob":
        return HttpBlobStore(
            settings.blob_base_url,
            token=settings.blob_token,
            timeout=settings.request_timeout,
        )
    return JsonFileStore(settings.data_dir)
