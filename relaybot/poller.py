"""
Poll loop: fetch updates, advance the cursor, hand each one to the dispatcher.

The loop is a small state machine:

    fetching   --batch-->  forwarding  --batch drained-->  fetching
    fetching   --error-->  backoff     --delay-->          fetching

Each state has exactly one suspension point, and `step()` runs one of
them, so tests can drive the loop one transition at a time with a fake
sleep instead of real delays.
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Optional

from .config import Config
from .dispatcher import Dispatcher
from .exceptions import TransportError
from .executor import ClaudeCliExecutor, TaskExecutor
from .logs import ErrorCountingHandler, log_event
from .state import CursorStore, HealthFile, HealthSnapshot, MessageHistory
from .supervisor import RESTART_EXIT_CODE, RESTART_SIGNAL
from .transport import TelegramTransport, Transport, Update

logger = logging.getLogger(__name__)

FETCHING = "fetching"
FORWARDING = "forwarding"
BACKOFF = "backoff"

Sleep = Callable[[float], Awaitable[None]]


class PollLoop:
    """Long-poll consumer feeding the dispatcher one update at a time."""

    def __init__(
        self,
        transport: Transport,
        dispatcher: Dispatcher,
        cursor: CursorStore,
        poll_timeout: int = 30,
        backoff_seconds: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.transport = transport
        self.dispatcher = dispatcher
        self.cursor = cursor
        self.poll_timeout = poll_timeout
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

        self.state = FETCHING
        self.cycles = 0
        self._batch: list[Update] = []
        self._stopping = False

    async def step(self) -> None:
        """Run the current state's suspension point and transition."""
        if self.state == FETCHING:
            try:
                self._batch = await self.transport.fetch_updates(self.cursor.cursor, self.poll_timeout)
            except TransportError as e:
                logger.warning(f"Fetch failed, retrying in {self.backoff_seconds}s: {e}")
                log_event("fetch_failed", result="error", error=str(e))
                self.state = BACKOFF
                return
            except Exception as e:
                logger.exception(f"Unexpected fetch error: {e}")
                self.state = BACKOFF
                return
            self.state = FORWARDING if self._batch else FETCHING

        elif self.state == FORWARDING:
            update = self._batch.pop(0)
            # Cursor first: a crash during handling must not replay this update
            self.cursor.advance(update.id)
            await self.dispatcher.submit(update)
            if not self._batch:
                self.state = FETCHING

        elif self.state == BACKOFF:
            await self.sleep(self.backoff_seconds)
            self.state = FETCHING

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Resume from the persisted cursor and loop until stopped."""
        self.cursor.load()
        logger.info(f"Polling from update {self.cursor.cursor}")
        while not self._stopping:
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            await self.step()
            self.cycles += 1

    def stop(self) -> None:
        self._stopping = True


async def heartbeat(dispatcher: Dispatcher, interval: float, sleep: Sleep = asyncio.sleep) -> None:
    """Rewrite the health file every `interval` seconds."""
    while True:
        dispatcher.write_health()
        await sleep(interval)


async def run_relay(
    config: Config,
    transport: Optional[Transport] = None,
    executor: Optional[TaskExecutor] = None,
) -> int:
    """Run the relay until a termination signal. Returns the exit code.

    SIGTERM/SIGINT return 0; RESTART_SIGNAL returns RESTART_EXIT_CODE.

    Configuration must already be validated: a missing credential is the
    caller's fatal error, never this loop's.
    """
    if transport is None:
        transport = TelegramTransport(
            config.transport.bot_token,
            api_base=config.transport.api_base,
            message_limit=config.transport.message_limit,
            chunk_delay=config.transport.chunk_delay,
        )
        try:
            me = await transport.get_me()
            logger.info(f"Connected as @{me.get('username', '?')}")
        except TransportError as e:
            logger.warning(f"Could not verify bot identity: {e}")

    if executor is None:
        executor = ClaudeCliExecutor(config.executor.command)
        if not executor.validate_environment():
            logger.warning(f"{config.executor.command} not found in PATH; tasks will fail")

    snapshot = HealthSnapshot()
    dispatcher = Dispatcher(
        config,
        transport,
        executor,
        snapshot=snapshot,
        health_file=HealthFile(config.paths.health_file),
        history=MessageHistory(config.paths.history_file, limit=config.history_limit),
    )
    poll_loop = PollLoop(
        transport,
        dispatcher,
        CursorStore(config.paths.cursor_file),
        poll_timeout=config.transport.poll_timeout,
        backoff_seconds=config.transport.backoff_seconds,
    )

    error_handler = ErrorCountingHandler(dispatcher.count_error)
    logging.getLogger().addHandler(error_handler)

    main = asyncio.ensure_future(poll_loop.run())
    beat = asyncio.ensure_future(heartbeat(dispatcher, config.health_interval))

    restart_requested = False

    def request_restart() -> None:
        nonlocal restart_requested
        restart_requested = True
        main.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, main.cancel)
    loop.add_signal_handler(RESTART_SIGNAL, request_restart)

    log_event("relay_started", extra={"pid": snapshot.pid})
    logger.info(f"Relay started (pid {snapshot.pid}), working dir {dispatcher.working_dir}")
    try:
        await main
    except asyncio.CancelledError:
        logger.info("Restart requested" if restart_requested else "Shutdown requested")
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT, RESTART_SIGNAL):
            loop.remove_signal_handler(sig)
        beat.cancel()
        try:
            await beat
        except asyncio.CancelledError:
            pass
        snapshot.status = "stopped"
        dispatcher.write_health()
        logging.getLogger().removeHandler(error_handler)
        await transport.close()
        log_event("relay_stopped", extra={"restart": restart_requested})

    return RESTART_EXIT_CODE if restart_requested else 0
