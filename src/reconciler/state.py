"""State store for manifest-based reconciliation.

Records, per resource id, the attributes last applied, the identifier the
provider assigned, the outputs it returned and a monotonic version used
for optimistic concurrency. Records are written only by the executor,
after the provider confirmed the operation.

FileStateStore persists one JSON file per resource under
.states/{stack}/resources/ so that unrelated resources never contend.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote, unquote

from reconciler.errors import DriftError

logger = logging.getLogger(__name__)

STATUS_APPLIED = 'applied'
STATUS_MISSING = 'missing'


@dataclass
class StateRecord:
    """Per-resource persisted state.

    Attributes:
        id: Resource id (matches ResourceNode.id)
        kind: Resource kind, so removed resources can still be deleted
        last_attributes: Resolved desired attributes last applied
        provider_id: Opaque handle returned by the provider
        outputs: Observed attributes returned by the provider
        dependencies: Ids this resource depended on when last applied
        version: Monotonic version, incremented on every write
        status: 'applied', or 'missing' in a refreshed snapshot
        updated_at: Timestamp of the last write
    """
    id: str
    kind: str
    last_attributes: dict = field(default_factory=dict)
    provider_id: Optional[str] = None
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    version: int = 0
    status: str = STATUS_APPLIED
    updated_at: Optional[float] = None

    @property
    def is_missing(self) -> bool:
        return self.status == STATUS_MISSING

    def output(self, key: str) -> Any:
        """Look up an output, falling back to the applied attributes.

        Raises:
            KeyError: If neither holds the key
        """
        if key in self.outputs:
            return self.outputs[key]
        return self.last_attributes[key]

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind,
            'version': self.version,
            'status': self.status,
            'last_attributes': self.last_attributes,
            'outputs': self.outputs,
            'dependencies': self.dependencies,
        }
        if self.provider_id is not None:
            d['provider_id'] = self.provider_id
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        return cls(
            id=data['id'],
            kind=data['kind'],
            last_attributes=data.get('last_attributes', {}),
            provider_id=data.get('provider_id'),
            outputs=data.get('outputs', {}),
            dependencies=data.get('dependencies', []),
            version=data.get('version', 0),
            status=data.get('status', STATUS_APPLIED),
            updated_at=data.get('updated_at'),
        )


class StateStore(Protocol):
    """Contract shared by state store implementations."""

    def get(self, node_id: str) -> Optional[StateRecord]:
        """Return the record for node_id, or None if not found."""

    def put(self, node_id: str, record: StateRecord, expected_version: int) -> StateRecord:
        """Write record if the stored version equals expected_version (0 = absent)."""

    def delete(self, node_id: str, expected_version: int) -> None:
        """Remove the record if the stored version equals expected_version."""

    def ids(self) -> list[str]:
        """Ids of all stored records."""

    def snapshot(self) -> dict[str, StateRecord]:
        """Copy of every record, keyed by id."""


class _VersionedStore:
    """Per-id compare-and-swap on top of _read/_write/_remove primitives.

    Only writes to the same id are serialized; there is no store-wide lock
    around reads or writes.
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, node_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = self._locks[node_id] = threading.Lock()
            return lock

    def _read(self, node_id: str) -> Optional[StateRecord]:
        raise NotImplementedError

    def _write(self, record: StateRecord) -> None:
        raise NotImplementedError

    def _remove(self, node_id: str) -> None:
        raise NotImplementedError

    def ids(self) -> list[str]:
        raise NotImplementedError

    def get(self, node_id: str) -> Optional[StateRecord]:
        return self._read(node_id)

    def _check_version(self, node_id: str, current: Optional[StateRecord], expected_version: int) -> int:
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise DriftError(node_id, expected_version, current.version if current else None)
        return current_version

    def put(self, node_id: str, record: StateRecord, expected_version: int) -> StateRecord:
        """Write a record with optimistic concurrency.

        Returns:
            The stored record (with its new version)

        Raises:
            DriftError: If the stored version differs from expected_version
        """
        with self._lock_for(node_id):
            current_version = self._check_version(node_id, self._read(node_id), expected_version)
            stored = replace(
                record,
                id=node_id,
                version=current_version + 1,
                status=STATUS_APPLIED,
                updated_at=time.time(),
            )
            self._write(stored)
        logger.debug(f"State for '{node_id}' written at version {stored.version}")
        return stored

    def delete(self, node_id: str, expected_version: int) -> None:
        """Remove a record with optimistic concurrency.

        Raises:
            DriftError: If the stored version differs from expected_version
        """
        with self._lock_for(node_id):
            current = self._read(node_id)
            self._check_version(node_id, current, expected_version)
            if current is not None:
                self._remove(node_id)
        logger.debug(f"State for '{node_id}' removed")

    def snapshot(self) -> dict[str, StateRecord]:
        records = {}
        for node_id in self.ids():
            record = self._read(node_id)
            if record is not None:
                records[node_id] = record
        return records


class MemoryStateStore(_VersionedStore):
    """Dict-backed store (tests, dry runs)."""

    def __init__(self, records: Optional[dict[str, StateRecord]] = None):
        super().__init__()
        self._records: dict[str, StateRecord] = {}
        for node_id, record in (records or {}).items():
            self._records[node_id] = copy.deepcopy(record)

    def _read(self, node_id: str) -> Optional[StateRecord]:
        record = self._records.get(node_id)
        return copy.deepcopy(record) if record is not None else None

    def _write(self, record: StateRecord) -> None:
        self._records[record.id] = copy.deepcopy(record)

    def _remove(self, node_id: str) -> None:
        self._records.pop(node_id, None)

    def ids(self) -> list[str]:
        return list(self._records)


class FileStateStore(_VersionedStore):
    """One JSON file per resource under {state_dir}/resources/."""

    def __init__(self, state_dir: Path):
        super().__init__()
        self.state_dir = Path(state_dir)
        self.resources_dir = self.state_dir / 'resources'

    def _path(self, node_id: str) -> Path:
        return self.resources_dir / f"{quote(node_id, safe='')}.json"

    def _read(self, node_id: str) -> Optional[StateRecord]:
        path = self._path(node_id)
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        return StateRecord.from_dict(data)

    def _write(self, record: StateRecord) -> None:
        """Write atomically: temp file in the same directory, then rename."""
        self.resources_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(record.id)
        fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=self.resources_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _remove(self, node_id: str) -> None:
        self._path(node_id).unlink(missing_ok=True)

    def ids(self) -> list[str]:
        if not self.resources_dir.exists():
            return []
        return sorted(
            unquote(p.stem) for p in self.resources_dir.glob('*.json')
            if not p.name.startswith('.tmp-')
        )
