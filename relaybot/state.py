"""
Small-file state persistence.

Files (one writer role each):
- cursor.json      last consumed update id (poll loop)
- health.json      dispatcher HealthSnapshot (poll loop process)
- messages.json    capped message history (poll loop process)
- supervisor-health.json   supervisor snapshot (supervisor)

Every write goes to a temp file that is renamed over the target, so a
concurrent reader sees either the old or the new content, never a torn file.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_CHARS = 5000


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON via temp file + rename. Raises PersistenceError."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = path.with_suffix(path.suffix + ".tmp")
        tmp_file.write_text(json.dumps(data, indent=2))
        tmp_file.replace(path)
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"Could not write {path}: {e}")


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, returning `default` if missing or unreadable."""
    try:
        if not path.exists():
            return default
        return json.loads(path.read_text())
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return default


class CursorStore:
    """Persisted position of the last consumed transport update.

    The cursor never moves backwards: a save with a smaller id is ignored.
    """

    def __init__(self, path: Path):
        self.path = path
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def load(self) -> int:
        state = read_json(self.path, {}) or {}
        try:
            self._cursor = max(self._cursor, int(state.get("last_update_id", 0)))
        except (TypeError, ValueError, AttributeError):
            logger.warning(f"Ignoring malformed cursor file {self.path}")
        return self._cursor

    def advance(self, update_id: int) -> bool:
        """Move the in-memory cursor forward and persist it.

        Returns False if the cursor did not move or the write failed; in the
        latter case the in-memory value still advances.
        """
        if update_id <= self._cursor:
            return False
        self._cursor = update_id
        try:
            atomic_write_json(self.path, {
                "last_update_id": update_id,
                "saved_at": datetime.now().isoformat(),
            })
            return True
        except PersistenceError as e:
            logger.warning(f"Cursor not persisted: {e}")
            return False


@dataclass
class HealthSnapshot:
    """Dispatcher health and counters.

    Owned by one process. Other processes only see it through health.json.
    `version` increases on every write.
    """

    status: str = "starting"
    pid: int = field(default_factory=os.getpid)
    start_time: float = field(default_factory=time.time)
    messages_processed: int = 0
    errors: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    queue_length: int = 0
    is_processing: bool = False
    active_agents: int = 0
    working_dir: str = ""
    last_activity: float = field(default_factory=time.time)
    last_heartbeat: float = 0.0
    version: int = 0

    def to_dict(self, now: Optional[float] = None) -> dict:
        now = now if now is not None else time.time()
        data = asdict(self)
        data["uptime"] = int(now - self.start_time)
        data["cost_formatted"] = f"${self.total_cost:.4f}"
        return data


def heartbeat_age(data: Optional[dict], now: Optional[float] = None) -> Optional[float]:
    """Seconds since the snapshot's last heartbeat, or None if it has none."""
    if not data:
        return None
    try:
        last = float(data.get("last_heartbeat") or 0)
    except (TypeError, ValueError):
        return None
    if last <= 0:
        return None
    now = now if now is not None else time.time()
    return max(0.0, now - last)


def is_alive(data: Optional[dict], threshold: float, now: Optional[float] = None) -> bool:
    """A snapshot counts as running only if its heartbeat is fresh.

    The `status` field is ignored on purpose: a crashed process leaves its
    last status behind.
    """
    age = heartbeat_age(data, now)
    return age is not None and age < threshold


class HealthFile:
    """Writes a snapshot-producing object to disk, stamping heartbeat and version."""

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock

    def write(self, snapshot: HealthSnapshot) -> bool:
        now = self.clock()
        snapshot.last_heartbeat = now
        snapshot.version += 1
        try:
            atomic_write_json(self.path, snapshot.to_dict(now))
            return True
        except PersistenceError as e:
            logger.warning(f"Health not persisted: {e}")
            return False

    def read(self) -> Optional[dict]:
        return read_json(self.path)


@dataclass
class HistoryEntry:
    """One completed request, as shown on the operator panel."""

    requester: str
    chat_id: str
    prompt: str
    response: str
    duration: float
    outcome: str  # completed, error
    mode: str = "default"
    id: int = field(default_factory=lambda: int(time.time() * 1000))
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        self.response = self.response[:RESPONSE_PREVIEW_CHARS]


class MessageHistory:
    """Append-only message log capped to the most recent `limit` entries."""

    def __init__(self, path: Path, limit: int = 100):
        self.path = path
        self.limit = limit

    def load(self) -> list[dict]:
        entries = read_json(self.path, [])
        return entries if isinstance(entries, list) else []

    def append(self, entry: HistoryEntry) -> bool:
        entries = self.load()
        entries.append(asdict(entry))
        try:
            atomic_write_json(self.path, entries[-self.limit:])
            return True
        except PersistenceError as e:
            logger.error(f"Failed to save message: {e}")
            return False
