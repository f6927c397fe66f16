"""
Durable storage for per-client knowledge snapshots.

A snapshot is one JSON document per client. The file store writes to a
temporary file in the target directory and renames it over the old snapshot,
so a reader never sees a half-written file.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote, unquote

from logging_setup import get_logger, Component


logger = get_logger(Component.STORE)

_SUFFIX = ".json"


class BlobStore(Protocol):
    """Blocking snapshot storage; callers run it off the event loop."""

    def read_client_snapshot(self, client_id: str) -> Optional[Dict[str, Any]]:
        ...

    def write_client_snapshot(self, client_id: str, snapshot: Dict[str, Any]) -> None:
        ...

    def delete_client_snapshot(self, client_id: str) -> None:
        ...

    def list_clients(self) -> List[str]:
        ...


class FileBlobStore:
    """One ``<quoted client id>.json`` file per client under ``root``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, client_id: str) -> Path:
        return self.root / f"{quote(client_id, safe='')}{_SUFFIX}"

    def read_client_snapshot(self, client_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(client_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Snapshot {path} must contain a mapping at top-level")
        return data

    def write_client_snapshot(self, client_id: str, snapshot: Dict[str, Any]) -> None:
        path = self._path(client_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=_SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        logger.debug("Snapshot written", client_id=client_id, path=str(path))

    def delete_client_snapshot(self, client_id: str) -> None:
        try:
            self._path(client_id).unlink()
        except FileNotFoundError:
            pass

    def list_clients(self) -> List[str]:
        return sorted(
            unquote(p.name[:-len(_SUFFIX)])
            for p in self.root.glob(f"*{_SUFFIX}")
            if not p.name.startswith(".tmp-")
        )


class InMemoryBlobStore:
    """Process-local store, used when no knowledge directory is configured."""

    def __init__(self):
        self._snapshots: Dict[str, str] = {}

    def read_client_snapshot(self, client_id: str) -> Optional[Dict[str, Any]]:
        raw = self._snapshots.get(client_id)
        return json.loads(raw) if raw is not None else None

    def write_client_snapshot(self, client_id: str, snapshot: Dict[str, Any]) -> None:
        # Serialized so later mutation of ``snapshot`` cannot leak in.
        self._snapshots[client_id] = json.dumps(snapshot)

    def delete_client_snapshot(self, client_id: str) -> None:
        self._snapshots.pop(client_id, None)

    def list_clients(self) -> List[str]:
        return sorted(self._snapshots)
