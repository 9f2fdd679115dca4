"""
Supervisor: runs the relay as a child process and restarts it when it crashes.

States: starting, running, restarting, stopping, stopped, error.

- A child exit with code 0 stops the supervisor (exit 0).
- Exit code 75 (`RESTART_EXIT_CODE`) is an operator restart: respawn at once,
  not counted against the restart limit.
- Any other nonzero exit or a signal death schedules a restart after `restart_delay`.
- If `max_restarts` restarts already happened inside the sliding
  `restart_window`, the supervisor refuses, records reason "restart_loop"
  and exits 1.
- SIGTERM/SIGINT/SIGHUP: terminate the child, wait `grace_period`, then kill.

The supervisor keeps its own health file (never the child's).
"""

import logging
import os
import signal
import subprocess
import sys
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .config import SupervisorConfig
from .exceptions import PersistenceError
from .logs import log_event
from .state import atomic_write_json

logger = logging.getLogger(__name__)

STARTING = "starting"
RUNNING = "running"
RESTARTING = "restarting"
STOPPING = "stopping"
STOPPED = "stopped"
ERROR = "error"

POLL_INTERVAL = 0.2

# Operator restart: the relay exits with RESTART_EXIT_CODE on RESTART_SIGNAL
# and the supervisor respawns it at once (EX_TEMPFAIL)
RESTART_SIGNAL = signal.SIGUSR1
RESTART_EXIT_CODE = 75


def child_command(config_path: Optional[Path] = None, verbose: bool = False) -> List[str]:
    """Command line that starts the relay in this interpreter."""
    cmd = [sys.executable, "-m", "relaybot"]
    if config_path is not None:
        cmd += ["--config", str(config_path)]
    if verbose:
        cmd.append("--verbose")
    cmd.append("run")
    return cmd


class RestartTracker:
    """Restart timestamps pruned to a sliding window."""

    def __init__(self, max_restarts: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.max_restarts = max_restarts
        self.window = window
        self.clock = clock
        self.timestamps: deque = deque()

    def prune(self) -> int:
        now = self.clock()
        while self.timestamps and now - self.timestamps[0] >= self.window:
            self.timestamps.popleft()
        return len(self.timestamps)

    def allow(self) -> bool:
        """True if one more restart stays under the limit."""
        return self.prune() < self.max_restarts

    def record(self) -> None:
        self.timestamps.append(self.clock())

    @property
    def count(self) -> int:
        return len(self.timestamps)


class Supervisor:
    """Spawn, watch and restart one child process.

    Example:
        supervisor = Supervisor(config.supervisor, child_command(), health_path)
        supervisor.install_signal_handlers()
        sys.exit(supervisor.run())
    """

    def __init__(
        self,
        config: SupervisorConfig,
        command: List[str],
        health_path: Path,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.command = command
        self.health_path = health_path
        self.clock = clock

        self.restarts = RestartTracker(config.max_restarts, config.restart_window, clock)
        self.state = STARTING
        self.reason: Optional[str] = None
        self.child: Optional[subprocess.Popen] = None
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[str] = None
        self.spawn_count = 0
        self._shutdown = False

    # --- Health ---

    def health(self) -> dict:
        now = time.time()
        return {
            "status": self.state,
            "pid": os.getpid(),
            "child_pid": self.child.pid if self.child is not None and self.child.poll() is None else None,
            "last_update": datetime.now().isoformat(),
            "restart_count": self.restarts.count,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "signal": self.exit_signal,
            "last_heartbeat": now,
        }

    def write_health(self) -> None:
        try:
            atomic_write_json(self.health_path, self.health())
        except PersistenceError as e:
            logger.warning(f"Supervisor health not persisted: {e}")

    def _transition(self, state: str, reason: Optional[str] = None) -> None:
        if state != self.state:
            logger.info(f"Supervisor {self.state} -> {state}" + (f" ({reason})" if reason else ""))
        self.state = state
        if reason is not None:
            self.reason = reason
        self.write_health()

    # --- Signals ---

    def install_signal_handlers(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            signal.signal(sig, self.request_shutdown)

    def request_shutdown(self, signum=None, frame=None) -> None:
        """Signal-safe: only sets a flag the run loop checks."""
        self._shutdown = True

    # --- Child control ---

    def spawn(self) -> subprocess.Popen:
        self.spawn_count += 1
        self.child = subprocess.Popen(self.command, stdin=subprocess.DEVNULL)
        logger.info(f"Child started with PID {self.child.pid}")
        return self.child

    def _wait_child(self) -> Optional[int]:
        """Block until the child exits (its return code) or shutdown is requested (None).

        Writes a heartbeat every `heartbeat_interval` seconds meanwhile.
        """
        next_beat = self.clock() + self.config.heartbeat_interval
        while not self._shutdown:
            try:
                return self.child.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pass
            if self.clock() >= next_beat:
                self.write_health()
                next_beat = self.clock() + self.config.heartbeat_interval
        return None

    def stop_child(self) -> None:
        """SIGTERM the child, then SIGKILL after the grace period."""
        if self.child is None or self.child.poll() is not None:
            return
        logger.info(f"Sending SIGTERM to child {self.child.pid}")
        self.child.terminate()
        try:
            self.child.wait(timeout=self.config.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Child {self.child.pid} ignored SIGTERM for {self.config.grace_period}s, killing")
            self.child.kill()
            self.child.wait()

    def _pause(self, seconds: float) -> None:
        deadline = self.clock() + seconds
        while not self._shutdown:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            time.sleep(min(POLL_INTERVAL, remaining))

    def _record_exit(self, returncode: int) -> None:
        self.exit_code = returncode
        self.exit_signal = None
        if returncode < 0:
            try:
                self.exit_signal = signal.Signals(-returncode).name
            except ValueError:
                self.exit_signal = str(-returncode)

    def _shutdown_exit(self) -> int:
        self._transition(STOPPING, reason="signal")
        self.stop_child()
        self._transition(STOPPED)
        log_event("supervisor_stopped", extra={"reason": "signal"})
        return 0

    # --- Main loop ---

    def run(self) -> int:
        """Supervise until shutdown, a clean child exit, or a restart loop. Returns the exit code."""
        self._transition(STARTING)
        logger.info(
            f"Supervising: {' '.join(self.command)} "
            f"(max {self.config.max_restarts} restarts in {self.config.restart_window:.0f}s)"
        )
        log_event("supervisor_started", extra={"max_restarts": self.config.max_restarts})

        while True:
            if self._shutdown:
                return self._shutdown_exit()

            try:
                self.spawn()
            except OSError as e:
                logger.error(f"Failed to start child: {e}")
                self.exit_code = None
                self.exit_signal = None
                self._transition(ERROR, reason=f"spawn_failed: {e}")
            else:
                self._transition(RUNNING, reason="running")
                returncode = self._wait_child()
                if returncode is None:
                    return self._shutdown_exit()

                self._record_exit(returncode)
                # A group-wide Ctrl-C can end the child before the flag is seen
                if self._shutdown:
                    return self._shutdown_exit()
                if returncode == 0:
                    logger.info("Child exited normally")
                    self._transition(STOPPED, reason="normal_exit")
                    log_event("supervisor_stopped", extra={"reason": "normal_exit"})
                    return 0
                if returncode == RESTART_EXIT_CODE:
                    logger.info("Child exited for an operator restart")
                    self._transition(RESTARTING, reason="operator_restart")
                    log_event("child_restart", extra={"reason": "operator_restart"})
                    continue
                logger.warning(f"Child crashed with code {returncode}, signal {self.exit_signal}")

            if not self.restarts.allow():
                logger.error(
                    f"Restart loop detected: {self.config.max_restarts} restarts in "
                    f"{self.config.restart_window:.0f}s. Stopping supervisor."
                )
                self._transition(STOPPED, reason="restart_loop")
                log_event("supervisor_stopped", result="error", error="restart_loop",
                          extra={"restart_count": self.restarts.count})
                return 1

            self.restarts.record()
            self._transition(RESTARTING, reason="crash")
            log_event("child_restart", result="error",
                      extra={"exit_code": self.exit_code, "signal": self.exit_signal,
                             "restart_count": self.restarts.count})
            logger.info(f"Restarting in {self.config.restart_delay:.0f}s...")
            self._pause(self.config.restart_delay)
