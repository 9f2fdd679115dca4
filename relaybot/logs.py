"""
Logging setup, the JSONL event journal, and log tail helpers.

Two outputs per process:
- a plain-text activity log (standard logging, stderr + file)
- a daily JSONL event journal with one structured entry per event
"""

import json
import logging
import sys
import threading
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

EVENTS_DIR = Path.home() / ".relaybot" / "events"

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

# Run ID for this process
_run_id: str = str(uuid.uuid4())[:8]
_event_lock = threading.Lock()


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, tag: str = "") -> None:
    """Configure the root logger: stderr plus an append-only activity log file."""
    fmt = LOG_FORMAT if not tag else f"[%(asctime)s] [{tag}] [%(levelname)s] %(name)s: %(message)s"
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(root.handlers):
        if getattr(handler, "_relaybot", False):
            root.removeHandler(handler)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter(fmt))
    stream._relaybot = True
    root.addHandler(stream)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            print(f"[LOG ERROR] Cannot open {log_file}: {e}", file=sys.stderr)
        else:
            file_handler.setFormatter(logging.Formatter(fmt))
            file_handler._relaybot = True
            root.addHandler(file_handler)

    # httpx logs every request at INFO, which drowns the long-poll loop
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ErrorCountingHandler(logging.Handler):
    """Calls `on_error` for every ERROR-or-worse record."""

    def __init__(self, on_error: Callable[[], None]):
        super().__init__(level=logging.ERROR)
        self.on_error = on_error

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.on_error()
        except Exception:
            self.handleError(record)


def get_events_file() -> Path:
    """Get today's event journal path."""
    return EVENTS_DIR / f"{datetime.now().strftime('%Y-%m-%d')}.jsonl"


def log_event(
    event: str,
    chat_id: Optional[str] = None,
    result: str = "ok",
    error: Optional[str] = None,
    extra: Optional[dict] = None,
) -> None:
    """Append an event to the JSONL journal."""
    entry = {
        "ts": datetime.now().isoformat(),
        "run_id": _run_id,
        "event": event,
        "chat_id": chat_id,
        "result": result,
        "error": error,
    }
    if extra:
        entry.update(extra)

    with _event_lock:
        try:
            EVENTS_DIR.mkdir(parents=True, exist_ok=True)
            with open(get_events_file(), "a") as f:
                f.write(json.dumps(entry) + "\n")
        except Exception as e:
            print(f"[LOG ERROR] {e}", file=sys.stderr)


def tail_lines(path: Path, count: int = 20) -> list[str]:
    """Last `count` non-empty lines of a text file ([] if missing)."""
    if not path.exists():
        return []
    with open(path, encoding="utf-8", errors="replace") as f:
        return list(deque((line.rstrip("\n") for line in f if line.strip()), maxlen=count))
