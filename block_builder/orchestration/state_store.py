"""Workflow state persistence.

Three interchangeable backends keep one record per key:

* :class:`InMemoryStateStore` for tests and embedding
* :class:`FileStateStore` writing one JSON document per key
* :class:`SQLiteStateStore` keeping records in a single database file

Records are :class:`~block_builder.models.workflow.Checkpoint` documents, so
every backend round-trips a state losslessly and can carry a label. Stores
are synchronous and thread safe; the engine calls them through
``asyncio.to_thread``.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError

from ..exceptions import StateStoreError
from ..models.workflow import Checkpoint, WorkflowState, WorkflowStep, utc_now

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

CHECKPOINT_MARKER = "--checkpoint-"
_RESERVED_THREAD_TEXT = CHECKPOINT_MARKER.rstrip("-")
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]*$")

DIFF_FIELDS = (
    "current_step",
    "design_context",
    "visual_reference",
    "user_provided_reference",
    "metadata",
    "analysis",
    "generated_artifacts",
    "validation",
    "catalog_registered",
    "user_notes",
    "errors",
    "awaiting_user_input",
)


@dataclass(frozen=True)
class StoredStateInfo:
    """Listing entry for a stored record."""

    key: str
    saved_at: datetime
    current_step: WorkflowStep
    label: Optional[str] = None


def validate_key(key: str) -> str:
    """Keys double as file names, so restrict them to a portable alphabet.

    Raises:
        StateStoreError: If the key is empty or contains unsafe characters
    """
    if not key or not _KEY_PATTERN.match(key):
        raise StateStoreError(
            f"Invalid state key {key!r}: use letters, digits, '.', '_', '@' or '-'", key=key
        )
    return key


def checkpoint_prefix(thread_id: str) -> str:
    return f"{thread_id}{CHECKPOINT_MARKER}"


def is_checkpoint_key(key: str) -> bool:
    return CHECKPOINT_MARKER in key


def validate_thread_id(thread_id: str) -> str:
    """Thread ids must be valid keys outside the labeled checkpoint namespace.

    Raises:
        StateStoreError: If the id is not a valid key or contains the checkpoint marker
    """
    validate_key(thread_id)
    # "a--checkpoint" would see its snapshots matched by the prefix of thread "a"
    if _RESERVED_THREAD_TEXT in thread_id:
        raise StateStoreError(
            f"Invalid thread id {thread_id!r}: '{_RESERVED_THREAD_TEXT}' is reserved for labeled checkpoints",
            key=thread_id,
        )
    return thread_id


def _sanitize_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", label).strip("-") or "snapshot"


class StateStore(ABC):
    """Abstract base class for workflow state persistence."""

    @abstractmethod
    def save_record(self, record: Checkpoint) -> str:
        """Persist ``record`` under ``record.key``, replacing any previous value.

        Returns:
            Backend specific location of the record
        """
        pass

    @abstractmethod
    def load_record(self, key: str) -> Optional[Checkpoint]:
        """Load the record stored under ``key`` or None."""
        pass

    @abstractmethod
    def list(self) -> List[StoredStateInfo]:
        """List every stored record, newest first."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False if nothing was stored under it."""
        pass

    def save(self, state: WorkflowState, key: str, label: Optional[str] = None) -> str:
        """Persist a state under ``key``.

        Raises:
            StateStoreError: If the backend cannot write the record
        """
        validate_key(key)
        location = self.save_record(Checkpoint(key=key, label=label, state=state))
        logger.debug(f"Saved state '{key}' at step {state.current_step.value}")
        return location

    def load(self, key: str) -> Optional[WorkflowState]:
        """Load the state stored under ``key``.

        Raises:
            StateStoreError: If the record exists but cannot be read
        """
        record = self.load_record(validate_key(key))
        return record.state if record is not None else None

    def create_checkpoint(self, state: WorkflowState, thread_id: str, label: Optional[str] = None) -> str:
        """Write an additional labeled snapshot of ``state`` for ``thread_id``.

        Returns:
            The key of the new checkpoint
        """
        validate_thread_id(thread_id)
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        key = f"{checkpoint_prefix(thread_id)}{_sanitize_label(label or 'snapshot')}-{stamp}-{uuid.uuid4().hex[:6]}"
        validate_key(key)
        self.save_record(Checkpoint(key=key, label=label, state=state))
        logger.debug(f"Created checkpoint '{key}'")
        return key

    def list_checkpoints(self, thread_id: str) -> List[Checkpoint]:
        """Labeled checkpoints of one thread, newest first."""
        prefix = checkpoint_prefix(thread_id)
        checkpoints = []
        for info in self.list():
            if info.key.startswith(prefix):
                record = self.load_record(info.key)
                if record is not None:
                    checkpoints.append(record)
        return checkpoints

    def list_threads(self) -> List[StoredStateInfo]:
        """Live thread records (labeled checkpoints excluded), newest first."""
        return [info for info in self.list() if not is_checkpoint_key(info.key)]

    def find_latest(self, name: str) -> Optional[WorkflowState]:
        """Most recently saved state whose input names block ``name``."""
        for info in self.list():
            record = self.load_record(info.key)
            if record is not None and record.state.input.name == name:
                return record.state
        return None

    def cleanup_old_states(
        self, keep: int = 10, prefix: Optional[str] = None, checkpoints_only: bool = False
    ) -> int:
        """Delete all but the ``keep`` newest records (optionally among keys with ``prefix``).

        With ``checkpoints_only`` live thread records are never candidates.

        Returns:
            Number of records deleted
        """
        if keep < 0:
            raise ValueError("keep must be non-negative")
        candidates = [
            info
            for info in self.list()
            if (prefix is None or info.key.startswith(prefix))
            and (is_checkpoint_key(info.key) or not checkpoints_only)
        ]
        deleted = 0
        for info in candidates[keep:]:
            if self.delete(info.key):
                deleted += 1
        if deleted:
            logger.info(f"Cleaned up {deleted} old workflow states")
        return deleted


class InMemoryStateStore(StateStore):
    """In-memory state store for development/testing."""

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self._order: Dict[str, int] = {}
        self._counter = 0
        self._lock = Lock()

    def save_record(self, record: Checkpoint) -> str:
        # Serialized so callers never share mutable state with the store
        payload = record.model_dump_json()
        with self._lock:
            self._counter += 1
            self._records[record.key] = payload
            self._order[record.key] = self._counter
        return f"memory://{record.key}"

    def load_record(self, key: str) -> Optional[Checkpoint]:
        with self._lock:
            payload = self._records.get(key)
        if payload is None:
            return None
        return Checkpoint.model_validate_json(payload)

    def list(self) -> List[StoredStateInfo]:
        with self._lock:
            keys = sorted(self._records, key=lambda k: self._order[k], reverse=True)
            payloads = [(k, self._records[k]) for k in keys]
        return [_info_from_record(Checkpoint.model_validate_json(p)) for _, p in payloads]

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._records:
                del self._records[key]
                del self._order[key]
                logger.debug(f"Deleted state '{key}'")
                return True
            return False


class FileStateStore(StateStore):
    """One JSON document per key in a directory, replaced atomically on save."""

    SUFFIX = ".json"

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self._lock = Lock()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {self.state_dir}: {e}") from e

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{key}{self.SUFFIX}"

    def save_record(self, record: Checkpoint) -> str:
        path = self._path(record.key)
        payload = record.model_dump_json(indent=2)
        with self._lock:
            tmp_name = None
            try:
                fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=".", suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except OSError as e:
                if tmp_name and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                logger.error(f"Failed to save workflow state '{record.key}': {e}")
                raise StateStoreError(f"Failed to save state '{record.key}': {e}", key=record.key) from e
        return str(path)

    def load_record(self, key: str) -> Optional[Checkpoint]:
        path = self._path(key)
        try:
            payload = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Failed to read state '{key}': {e}", key=key) from e
        try:
            return Checkpoint.model_validate_json(payload)
        except ValidationError as e:
            logger.error(f"Corrupt workflow state file {path}: {e}")
            raise StateStoreError(f"State '{key}' is corrupt: {e}", key=key) from e

    def list(self) -> List[StoredStateInfo]:
        infos = []
        for path in self.state_dir.glob(f"*{self.SUFFIX}"):
            key = path.name[: -len(self.SUFFIX)]
            if not _KEY_PATTERN.match(key):
                continue
            try:
                record = self.load_record(key)
            except StateStoreError as e:
                logger.warning(f"Skipping unreadable state file {path}: {e}")
                continue
            if record is not None:
                infos.append(_info_from_record(record))
        infos.sort(key=lambda info: info.saved_at, reverse=True)
        return infos

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StateStoreError(f"Failed to delete state '{key}': {e}", key=key) from e
        logger.debug(f"Deleted state '{key}'")
        return True


class SQLiteStateStore(StateStore):
    """Persistent state store using SQLite."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_database()
        except (OSError, sqlite3.Error) as e:
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_states (
                    state_key TEXT PRIMARY KEY,
                    label TEXT,
                    current_step TEXT NOT NULL,
                    saved_at TEXT NOT NULL,
                    state_data TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_workflow_states_saved
                ON workflow_states(saved_at)
            """
            )
            conn.commit()
            logger.info(f"Initialized workflow database at {self.db_path}")

    def save_record(self, record: Checkpoint) -> str:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO workflow_states
                    (state_key, label, current_step, saved_at, state_data)
                    VALUES (?, ?, ?, ?, ?)
                """,
                    (
                        record.key,
                        record.label,
                        record.state.current_step.value,
                        record.saved_at.isoformat(),
                        record.state.to_json(),
                    ),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to save workflow state '{record.key}': {e}")
            raise StateStoreError(f"Failed to save state '{record.key}': {e}", key=record.key) from e
        return f"{self.db_path}#{record.key}"

    def load_record(self, key: str) -> Optional[Checkpoint]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    "SELECT label, saved_at, state_data FROM workflow_states WHERE state_key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to load state '{key}': {e}", key=key) from e
        if row is None:
            return None
        label, saved_at, state_data = row
        try:
            return Checkpoint(
                key=key,
                label=label,
                saved_at=datetime.fromisoformat(saved_at),
                state=WorkflowState.from_json(state_data),
            )
        except (ValidationError, ValueError) as e:
            raise StateStoreError(f"State '{key}' is corrupt: {e}", key=key) from e

    def list(self) -> List[StoredStateInfo]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "SELECT state_key, saved_at, current_step, label FROM workflow_states "
                    "ORDER BY saved_at DESC, rowid DESC"
                ).fetchall()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to list states: {e}") from e
        return [
            StoredStateInfo(
                key=key,
                saved_at=datetime.fromisoformat(saved_at),
                current_step=WorkflowStep(step),
                label=label,
            )
            for key, saved_at, step, label in rows
        ]

    def delete(self, key: str) -> bool:
        try:
            with self._lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM workflow_states WHERE state_key = ?", (key,))
                conn.commit()
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to delete state '{key}': {e}", key=key) from e
        if deleted:
            logger.debug(f"Deleted state '{key}'")
        return deleted


def _info_from_record(record: Checkpoint) -> StoredStateInfo:
    return StoredStateInfo(
        key=record.key,
        saved_at=record.saved_at,
        current_step=record.state.current_step,
        label=record.label,
    )


def diff_states(old: WorkflowState, new: WorkflowState) -> Dict[str, Dict[str, Any]]:
    """Compare the tracked fields of two states.

    Returns:
        ``{field: {"old": value, "new": value}}`` for every field that differs,
        with values in their JSON form
    """
    old_data = old.model_dump(mode="json", include=set(DIFF_FIELDS))
    new_data = new.model_dump(mode="json", include=set(DIFF_FIELDS))
    diff: Dict[str, Dict[str, Any]] = {}
    for field_name in DIFF_FIELDS:
        before, after = old_data.get(field_name), new_data.get(field_name)
        if json.dumps(before, sort_keys=True) != json.dumps(after, sort_keys=True):
            diff[field_name] = {"old": before, "new": after}
    return diff


def get_state_store(config: "Config") -> StateStore:
    """Create the backend selected by ``config.state_backend``."""
    if config.state_backend == "memory":
        return InMemoryStateStore()
    if config.state_backend == "file":
        return FileStateStore(config.state_dir)
    if config.state_backend == "sqlite":
        return SQLiteStateStore(config.state_db_path)
    raise ValueError(f"Unknown state backend: {config.state_backend}")
