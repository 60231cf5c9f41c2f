"""
State stores: the durable record of the last successfully applied graph.

Each node is committed independently. A crash between two commits leaves
every earlier commit intact, and a node is never reported as applied unless
its commit completed.
"""

from __future__ import annotations

import fcntl
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote, unquote

import structlog
from pydantic import BaseModel, Field, ValidationError

from moraine.core.errors import StateStoreError

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeState(BaseModel):
    """Persisted record of one applied node."""

    content_hash: str = Field(..., description="Hash of kind + resolved inputs at apply time")
    outputs: dict[str, Any] = Field(default_factory=dict, description="Provider outputs")
    kind: str = Field(..., description="Resource kind, needed to delete the node later")
    dependencies: list[str] = Field(
        default_factory=list, description="Ids this node depended on when applied"
    )
    applied_at: datetime = Field(default_factory=_now)


class StateSnapshot(BaseModel):
    """
    Point-in-time view of a state store.

    ``failures`` holds the last error for nodes whose most recent apply
    failed. Those nodes are not part of ``entries`` unless an earlier apply
    of them succeeded.
    """

    entries: dict[str, NodeState] = Field(default_factory=dict)
    failures: dict[str, str] = Field(default_factory=dict)

    def get(self, node_id: str) -> NodeState | None:
        return self.entries.get(node_id)

    def outputs(self, node_id: str) -> dict[str, Any] | None:
        entry = self.entries.get(node_id)
        return entry.outputs if entry is not None else None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)


class StateStore(ABC):
    """
    Abstract state store.

    Commits for the same node id are serialized; commits for distinct ids
    may run in parallel from worker threads.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def _key_lock(self, node_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._key_locks[node_id]
        with lock:
            yield

    @abstractmethod
    def load(self) -> StateSnapshot:
        """Return a snapshot of every committed node and recorded failure."""
        pass

    @abstractmethod
    def commit(
        self,
        node_id: str,
        outputs: dict[str, Any],
        content_hash: str,
        kind: str = "",
        dependencies: list[str] | None = None,
    ) -> NodeState:
        """Atomically record a successfully applied node."""
        pass

    @abstractmethod
    def remove(self, node_id: str) -> None:
        """Forget a node after a confirmed delete."""
        pass

    @abstractmethod
    def record_failure(self, node_id: str, error: str) -> None:
        """Remember that the last apply of a node failed."""
        pass

    def get(self, node_id: str) -> NodeState | None:
        return self.load().get(node_id)


class MemoryStateStore(StateStore):
    """In-process state store, used for tests and dry runs."""

    def __init__(self, snapshot: StateSnapshot | None = None):
        super().__init__()
        snapshot = snapshot or StateSnapshot()
        self._entries: dict[str, NodeState] = dict(snapshot.entries)
        self._failures: dict[str, str] = dict(snapshot.failures)

    def load(self) -> StateSnapshot:
        with self._guard:
            return StateSnapshot(
                entries={k: v.model_copy(deep=True) for k, v in self._entries.items()},
                failures=dict(self._failures),
            )

    def commit(self, node_id, outputs, content_hash, kind="", dependencies=None) -> NodeState:
        state = NodeState(
            content_hash=content_hash,
            outputs=dict(outputs),
            kind=kind,
            dependencies=list(dependencies or []),
        )
        with self._key_lock(node_id):
            with self._guard:
                self._entries[node_id] = state
                self._failures.pop(node_id, None)
        return state

    def remove(self, node_id: str) -> None:
        with self._key_lock(node_id):
            with self._guard:
                self._entries.pop(node_id, None)
                self._failures.pop(node_id, None)

    def record_failure(self, node_id: str, error: str) -> None:
        with self._key_lock(node_id):
            with self._guard:
                self._failures[node_id] = error


# ---------------------------------------------------------------------------
# Filesystem store
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(lock_path: Path, discard: bool = False) -> Iterator[None]:
    """
    Hold an exclusive lock on a per-node ``.lock`` file.

    Data files can then be replaced with ``os.replace`` without disturbing
    the lock handle. With ``discard`` the lock file is unlinked before it is
    released; a waiter that then acquires the unlinked inode retries on a
    fresh file.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    while True:
        lock_handle = lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                current = os.stat(lock_path).st_ino
            except FileNotFoundError:
                current = None
        except BaseException:
            lock_handle.close()
            raise
        if current == os.fstat(lock_handle.fileno()).st_ino:
            break
        lock_handle.close()

    try:
        yield
        if discard:
            _unlink(lock_path)
    finally:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
        lock_handle.close()


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class FileStateStore(StateStore):
    """
    Filesystem state store.

    Layout::

        <root>/nodes/<node id>.json      NodeState documents
        <root>/failures/<node id>.json   last failure per node
        <root>/locks/<node id>.lock      cross-process lock, removed with the node

    Node ids are percent-encoded into file names, a leading dot included.
    Temp files start with a dot and are never read back as state.
    """

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root)
        self.nodes_dir = self.root / "nodes"
        self.failures_dir = self.root / "failures"
        self.locks_dir = self.root / "locks"
        self.nodes_dir.mkdir(parents=True, exist_ok=True)
        self.failures_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _encode(node_id: str) -> str:
        encoded = quote(node_id, safe="")
        if encoded.startswith("."):
            encoded = "%2E" + encoded[1:]
        return encoded

    @classmethod
    def _filename(cls, node_id: str) -> str:
        return cls._encode(node_id) + ".json"

    def _lock_path(self, node_id: str) -> Path:
        return self.locks_dir / (self._encode(node_id) + _LOCK_SUFFIX)

    @staticmethod
    def _node_id(path: Path) -> str:
        return unquote(path.name[: -len(".json")])

    def _documents(self, directory: Path) -> Iterator[tuple[str, str]]:
        for path in sorted(directory.glob("*.json")):
            if path.name.startswith("."):
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise StateStoreError(f"Cannot read state file {path}: {exc}") from exc
            yield self._node_id(path), text

    def load(self) -> StateSnapshot:
        entries: dict[str, NodeState] = {}
        for node_id, text in self._documents(self.nodes_dir):
            try:
                entries[node_id] = NodeState.model_validate_json(text)
            except ValidationError as exc:
                raise StateStoreError(f"Corrupt state for '{node_id}': {exc}") from exc

        failures: dict[str, str] = {}
        for node_id, text in self._documents(self.failures_dir):
            try:
                failures[node_id] = _FailureRecord.model_validate_json(text).error
            except ValidationError as exc:
                raise StateStoreError(f"Corrupt failure record for '{node_id}': {exc}") from exc

        return StateSnapshot(entries=entries, failures=failures)

    def commit(self, node_id, outputs, content_hash, kind="", dependencies=None) -> NodeState:
        state = NodeState(
            content_hash=content_hash,
            outputs=dict(outputs),
            kind=kind,
            dependencies=list(dependencies or []),
        )
        path = self.nodes_dir / self._filename(node_id)
        with self._key_lock(node_id), _locked_file(self._lock_path(node_id)):
            _atomic_write_text(path, state.model_dump_json(indent=2))
            _unlink(self.failures_dir / self._filename(node_id))
        logger.debug("state_committed", node_id=node_id, content_hash=content_hash[:12])
        return state

    def remove(self, node_id: str) -> None:
        path = self.nodes_dir / self._filename(node_id)
        with self._key_lock(node_id), _locked_file(self._lock_path(node_id), discard=True):
            _unlink(path)
            _unlink(self.failures_dir / self._filename(node_id))
        logger.debug("state_removed", node_id=node_id)

    def record_failure(self, node_id: str, error: str) -> None:
        path = self.failures_dir / self._filename(node_id)
        record = _FailureRecord(error=error)
        with self._key_lock(node_id), _locked_file(self._lock_path(node_id)):
            _atomic_write_text(path, record.model_dump_json(indent=2))


class _FailureRecord(BaseModel):
    error: str
    failed_at: datetime = Field(default_factory=_now)
