"""Observed state store.

The store maps logical resource name to its Observed State Record and is
passed by reference into the engine; nothing holds "current
infrastructure" as ambient global state.

Persisted layout::

    {
      "version": 2,
      "resources": {
        "<logical name>": {
          "kind": "...", "physical_id": "...", "attributes": {...},
          "outputs": {...}, "status": "...", "dependencies": [...],
          "force_destroy": false, "deposed": [...], "updated_at": "..."
        }
      }
    }

Every write is scoped to one record, applied under a lock (so a reader of
that record sees either the old or the new value) and flushed to disk
immediately with write-to-temp-then-rename.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 2


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateVersionError(StateError):
    """Raised when the state file version cannot be migrated."""

    pass


class RecordStatus:
    """Provider-reported status values recorded in state."""

    AVAILABLE = "available"
    UPDATING = "updating"
    DELETED = "deleted"


@dataclass
class ObservedStateRecord:
    """Last-known state of one resource."""

    name: str
    kind: str
    physical_id: str
    # Declared attributes as last applied, references left unresolved
    attributes: dict[str, Any] = field(default_factory=dict)
    # Attributes as reported by the provider after the last call
    outputs: dict[str, Any] = field(default_factory=dict)
    status: str = RecordStatus.AVAILABLE
    dependencies: list[str] = field(default_factory=list)
    force_destroy: bool = False
    # Physical ids of replaced instances still awaiting deletion
    deposed: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("name")
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> ObservedStateRecord:
        try:
            return cls(
                name=name,
                kind=data["kind"],
                physical_id=data["physical_id"],
                attributes=dict(data.get("attributes", {})),
                outputs=dict(data.get("outputs", {})),
                status=data.get("status", RecordStatus.AVAILABLE),
                dependencies=list(data.get("dependencies", [])),
                force_destroy=bool(data.get("force_destroy", False)),
                deposed=list(data.get("deposed", [])),
                updated_at=data.get("updated_at", datetime.now(UTC).isoformat()),
            )
        except KeyError as e:
            raise StateError(f"State record '{name}' is missing field {e}") from e


# =============================================================================
# Migrations
# =============================================================================


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """v1 stored ``id`` and a single ``attributes`` map without dependencies."""
    resources: dict[str, Any] = {}
    for name, raw in data.get("resources", {}).items():
        resources[name] = {
            "kind": raw["kind"],
            "physical_id": raw["id"],
            "attributes": raw.get("attributes", {}),
            "outputs": raw.get("attributes", {}),
            "status": raw.get("status", RecordStatus.AVAILABLE),
            "dependencies": [],
            "force_destroy": False,
            "deposed": [],
        }
    return {"version": 2, "resources": resources}


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def migrate(data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Bring persisted state up to STATE_FORMAT_VERSION.

    Returns:
        Tuple of (migrated data, whether any migration ran).

    Raises:
        StateVersionError: If the version is missing, newer than supported,
            or has no migration path.
    """
    version = data.get("version")
    if not isinstance(version, int):
        raise StateVersionError("State file has no integer 'version' field")
    if version > STATE_FORMAT_VERSION:
        raise StateVersionError(
            f"State file version {version} is newer than supported version "
            f"{STATE_FORMAT_VERSION}; upgrade converge"
        )

    migrated = False
    while version < STATE_FORMAT_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise StateVersionError(f"No migration from state version {version}")
        try:
            data = step(data)
        except KeyError as e:
            raise StateVersionError(
                f"State version {version} is malformed, missing field {e}"
            ) from e
        logger.info(
            "Migrated state format",
            extra={"from_version": version, "to_version": data["version"]},
        )
        version = data["version"]
        migrated = True
    return data, migrated


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """Record-scoped, persisted map of logical name to observed state.

    With ``path=None`` the store is memory-only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._records: dict[str, ObservedStateRecord] = {}
        self.migrated = False
        if path is not None and path.exists():
            self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> None:
        assert self._path is not None
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self._path}: {e}") from e
        if not isinstance(raw, dict):
            raise StateError(f"State file must contain a JSON object: {self._path}")

        data, self.migrated = migrate(raw)
        self._records = {
            name: ObservedStateRecord.from_dict(name, record)
            for name, record in data.get("resources", {}).items()
        }
        logger.debug(
            "Loaded state",
            extra={"path": str(self._path), "resource_count": len(self._records)},
        )

    def _flush(self) -> None:
        if self._path is None:
            return
        data = {
            "version": STATE_FORMAT_VERSION,
            "resources": {
                name: record.to_dict() for name, record in sorted(self._records.items())
            },
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e

    def save(self) -> None:
        """Persist all records (used after a migration)."""
        with self._lock:
            self._flush()

    def get(self, name: str) -> ObservedStateRecord | None:
        """Get a copy of one record."""
        with self._lock:
            record = self._records.get(name)
            return copy.deepcopy(record) if record is not None else None

    def put(self, record: ObservedStateRecord) -> None:
        """Write one record and persist."""
        with self._lock:
            stored = copy.deepcopy(record)
            stored.updated_at = datetime.now(UTC).isoformat()
            self._records[record.name] = stored
            self._flush()

    def update_outputs(self, name: str, outputs: dict[str, Any]) -> None:
        """Merge provider-reported attributes into one record."""
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise StateError(f"No state record for '{name}'")
            record.outputs = {**record.outputs, **copy.deepcopy(outputs)}
            record.updated_at = datetime.now(UTC).isoformat()
            self._flush()

    def remove(self, name: str) -> None:
        """Drop one record (after a confirmed destroy) and persist."""
        with self._lock:
            if self._records.pop(name, None) is not None:
                self._flush()

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def snapshot(self) -> dict[str, ObservedStateRecord]:
        """Consistent copy of every record."""
        with self._lock:
            return copy.deepcopy(self._records)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
