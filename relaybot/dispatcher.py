"""
Dispatcher: the single execution slot, the pending queue, and command handling.

One top-level task (a single prompt or one fan-out batch) runs at a time.
Anything that arrives while the slot is busy waits in a FIFO queue that
lives only in memory. `submit()` never waits for a task to finish: it
either queues the message or starts a background worker and returns.
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from . import commands
from .commands import Command, help_text, parse_command
from .config import Config
from .exceptions import ExecutorError
from .executor import ExecutionOptions, ExecutionResult, TaskExecutor
from .formatter import escape_html, format_response
from .logs import log_event, tail_lines
from .modes import Mode
from .state import HealthFile, HealthSnapshot, HistoryEntry, MessageHistory
from .transport import Transport, Update

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 20


@dataclass
class PendingTask:
    """A task waiting for the execution slot."""

    chat_id: str
    query: str
    requester: str
    mode: Mode = Mode.DEFAULT
    agents: int = 0  # 0 = single task, otherwise fan-out size as requested
    enqueued_at: float = field(default_factory=time.time)


def estimate_tokens(text: str) -> int:
    """Rough token count when the backend reports none (~4 chars per token)."""
    return math.ceil(len(text) / 4)


class Dispatcher:
    """Routes authorized messages to quick replies or the execution slot.

    The queue and busy flag are only touched from the event loop that calls
    `submit`, so no locking is needed.
    """

    def __init__(
        self,
        config: Config,
        transport: Transport,
        executor: TaskExecutor,
        snapshot: Optional[HealthSnapshot] = None,
        health_file: Optional[HealthFile] = None,
        history: Optional[MessageHistory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.transport = transport
        self.executor = executor
        self.health_file = health_file
        self.history = history
        self.clock = clock

        self.working_dir: Path = config.executor.working_dir
        self.queue: deque = deque()
        self.busy = False
        self._worker: Optional[asyncio.Task] = None

        self.snapshot = snapshot or HealthSnapshot()
        self.snapshot.status = "idle"
        self.snapshot.working_dir = str(self.working_dir)

    # --- Public API ---

    async def submit(self, update: Update) -> None:
        """Handle one inbound message. Never raises, never waits on a task."""
        if not update.has_message:
            return

        if not self.is_authorized(update):
            logger.warning(f"Unauthorized message from {update.sender_name} (chat {update.chat_id})")
            log_event("unauthorized", chat_id=update.chat_id, result="rejected")
            await self.transport.send_text(
                update.chat_id, f"Unauthorized. Your chat ID: {update.chat_id}", parse_mode=None
            )
            return

        logger.info(f"Message from {update.sender_name}: {update.text[:50]}")
        try:
            await self._handle(update, parse_command(update.text))
        except Exception as e:
            logger.exception(f"Failed to handle message from chat {update.chat_id}: {e}")
            await self.transport.send_text(update.chat_id, f"Error: {e}", parse_mode=None)

    def is_authorized(self, update: Update) -> bool:
        allowed = self.config.transport.allowed_ids
        return update.sender_id in allowed or update.chat_id in allowed

    async def wait_idle(self) -> None:
        """Wait until the slot is idle and the queue is empty."""
        while self._worker is not None and not self._worker.done():
            await self._worker

    def count_error(self) -> None:
        self.snapshot.errors += 1

    def write_health(self) -> None:
        self.snapshot.queue_length = len(self.queue)
        self.snapshot.is_processing = self.busy
        if self.health_file is not None:
            self.health_file.write(self.snapshot)

    # --- Command handling ---

    async def _handle(self, update: Update, cmd: Command) -> None:
        chat_id = update.chat_id

        if cmd.is_task:
            task = PendingTask(
                chat_id=chat_id,
                query=cmd.query,
                requester=update.sender_name,
                mode=cmd.mode,
                agents=cmd.agents if cmd.kind == commands.AGENTS else 0,
            )
            await self._enqueue_or_start(task)
        elif cmd.kind == commands.START:
            await self.transport.deliver(chat_id, help_text(self.config.executor.max_agents))
        elif cmd.kind == commands.STATUS:
            await self.transport.deliver(chat_id, self.status_text())
        elif cmd.kind == commands.COST:
            await self.transport.deliver(chat_id, self.cost_text())
        elif cmd.kind == commands.STOP:
            if self.busy:
                reply = "Current task cannot be interrupted. Wait for it to finish."
            else:
                reply = "Nothing running."
            await self.transport.send_text(chat_id, reply, parse_mode=None)
        elif cmd.kind == commands.LOGS:
            await self.transport.deliver(chat_id, self.logs_text())
        elif cmd.kind == commands.CD:
            await self.transport.deliver(chat_id, self.change_dir(cmd.path))
        elif cmd.kind == commands.USAGE:
            await self.transport.send_text(chat_id, cmd.message, parse_mode=None)

    async def _enqueue_or_start(self, task: PendingTask) -> None:
        if self.busy:
            self.queue.append(task)
            position = len(self.queue)
            logger.info(f"Queued task #{position} from {task.requester}")
            log_event("task_queued", chat_id=task.chat_id, extra={"position": position})
            self.write_health()
            await self.transport.send_text(task.chat_id, f"Queued (#{position})", parse_mode=None)
            return

        # Claim the slot before the first await so a concurrent submit queues
        self.busy = True
        self.snapshot.status = "processing"
        self._worker = asyncio.create_task(self._drain(task))

    async def _drain(self, first: PendingTask) -> None:
        task: Optional[PendingTask] = first
        while task is not None:
            try:
                await self._execute(task)
            except Exception as e:
                logger.exception(f"Task from chat {task.chat_id} crashed: {e}")
                await self.transport.send_text(task.chat_id, f"Error: {e}", parse_mode=None)
            task = self.queue.popleft() if self.queue else None

        self.busy = False
        self.snapshot.status = "idle"
        self.snapshot.active_agents = 0
        self.snapshot.last_activity = time.time()
        self.write_health()

    # --- Execution ---

    def _options(self) -> ExecutionOptions:
        return ExecutionOptions(
            working_dir=self.working_dir,
            allowed_tools=list(self.config.executor.allowed_tools),
            permission_mode=self.config.executor.permission_mode,
        )

    def check_mode_dir(self, mode: Mode) -> Optional[str]:
        """Error text if `mode` may not run in the current directory, else None."""
        allowed = self.config.allowed_dirs_for(mode)
        if not allowed:
            return None
        cwd = self.working_dir.resolve()
        for d in allowed:
            d = d.resolve()
            if cwd == d or d in cwd.parents:
                return None
        dirs = ", ".join(str(d) for d in allowed)
        return f"Error: {mode.label} is restricted to: {dirs}"

    def _set_processing(self, agents: int) -> None:
        self.snapshot.status = "processing"
        self.snapshot.active_agents = agents
        self.snapshot.last_activity = time.time()
        self.write_health()

    async def _typing_loop(self, chat_id: str) -> None:
        while True:
            try:
                await self.transport.send_typing(chat_id)
            except Exception as e:
                # Never let the indicator take the task result down with it
                logger.warning(f"Typing indicator failed for chat {chat_id}: {e}")
            await asyncio.sleep(self.config.executor.typing_interval)

    async def _with_typing(self, chat_id: str, coro):
        typing = asyncio.create_task(self._typing_loop(chat_id))
        try:
            return await coro
        finally:
            typing.cancel()
            try:
                await typing
            except asyncio.CancelledError:
                pass

    async def _execute(self, task: PendingTask) -> None:
        denied = self.check_mode_dir(task.mode)
        if denied:
            logger.warning(f"{task.mode.value} task rejected in {self.working_dir}")
            await self.transport.send_text(task.chat_id, denied, parse_mode=None)
            return

        if task.agents:
            await self._run_fanout(task)
        else:
            await self._run_single(task)

    async def _run_single(self, task: PendingTask) -> None:
        if task.mode is Mode.DEFAULT:
            ack = f"Processing: {escape_html(task.query[:40])}..."
        else:
            ack = f"<b>{task.mode.label}:</b> {escape_html(task.query[:50])}..."
        await self.transport.send_text(task.chat_id, ack)

        prompt = task.mode.compose(task.query)
        timeout = self.config.executor.timeout_seconds
        self._set_processing(1)
        start = self.clock()
        try:
            result = await self._with_typing(
                task.chat_id, self.executor.run(prompt, self._options(), timeout=timeout)
            )
        except ExecutorError as e:
            duration = self.clock() - start
            logger.error(f"Task failed after {duration:.1f}s: {e}")
            log_event("task_failed", chat_id=task.chat_id, result="error", error=str(e),
                      extra={"mode": task.mode.value, "duration": round(duration, 1)})
            await self.transport.send_text(task.chat_id, f"Error: {e}", parse_mode=None)
            self._record(task, str(e), duration, "error")
            return

        duration = self.clock() - start
        await self.transport.deliver(task.chat_id, format_response(result.text))
        await self.transport.send_text(task.chat_id, f"<i>Completed in {duration:.1f}s</i>")

        self._account(prompt, result)
        self.snapshot.messages_processed += 1
        self._record(task, result.text, duration, "completed")
        log_event("task_completed", chat_id=task.chat_id,
                  extra={"mode": task.mode.value, "duration": round(duration, 1)})

    async def _run_fanout(self, task: PendingTask) -> None:
        max_agents = self.config.executor.max_agents
        count = min(task.agents, max_agents)
        notice = f"Launching {count} parallel agents..."
        if count < task.agents:
            notice += f" (capped at {max_agents})"
        await self.transport.send_text(task.chat_id, notice, parse_mode=None)

        prompts = [task.mode.compose_agent(task.query, i, count) for i in range(1, count + 1)]
        options = self._options()
        timeout = self.config.executor.timeout_seconds
        self._set_processing(count)
        start = self.clock()

        # Every branch settles on its own; one failure does not cancel the rest
        outcomes = await self._with_typing(
            task.chat_id,
            asyncio.gather(
                *(self.executor.run(p, options, timeout=timeout) for p in prompts),
                return_exceptions=True,
            ),
        )
        duration = self.clock() - start

        lines = [f"<b>Parallel Agents Results ({count} agents)</b>", ""]
        failures = 0
        for index, (prompt, outcome) in enumerate(zip(prompts, outcomes), 1):
            if isinstance(outcome, BaseException):
                failures += 1
                logger.error(f"Agent {index}/{count} failed: {outcome}")
                lines.append(f"<b>Agent {index}:</b> Error - {escape_html(str(outcome))}")
            else:
                self._account(prompt, outcome)
                lines.append(f"<b>Agent {index}:</b>\n{format_response(outcome.text)}")
            lines.append("")

        await self.transport.deliver(task.chat_id, "\n".join(lines))
        await self.transport.send_text(task.chat_id, f"<i>Completed in {duration:.1f}s</i>")

        self.snapshot.messages_processed += count
        outcome_label = "error" if failures == count else "completed"
        self._record(task, "\n".join(lines), duration, outcome_label)
        log_event("fanout_completed", chat_id=task.chat_id,
                  result="ok" if not failures else "partial",
                  extra={"agents": count, "failures": failures, "duration": round(duration, 1)})

    # --- Bookkeeping ---

    def _account(self, prompt: str, result: ExecutionResult) -> None:
        cfg = self.config.executor
        input_tokens = result.input_tokens if result.input_tokens is not None else estimate_tokens(prompt)
        output_tokens = result.output_tokens if result.output_tokens is not None else estimate_tokens(result.text)
        if result.cost_usd is not None:
            cost = result.cost_usd
        else:
            cost = input_tokens / 1e6 * cfg.input_price + output_tokens / 1e6 * cfg.output_price

        self.snapshot.total_input_tokens += input_tokens
        self.snapshot.total_output_tokens += output_tokens
        self.snapshot.total_cost += cost

    def _record(self, task: PendingTask, response: str, duration: float, outcome: str) -> None:
        if self.history is None:
            return
        self.history.append(HistoryEntry(
            requester=task.requester,
            chat_id=task.chat_id,
            prompt=task.query if not task.agents else f"/agents {task.agents} {task.query}",
            response=response,
            duration=round(duration, 1),
            outcome=outcome,
            mode=task.mode.value,
        ))

    # --- Quick replies ---

    def status_text(self) -> str:
        s = self.snapshot
        state = f"Processing ({s.active_agents or 1} agents)" if self.busy else "Ready"
        uptime_minutes = int((time.time() - s.start_time) / 60)
        return (
            "<b>Status</b>\n\n"
            f"State: {state}\n"
            f"Dir: <code>{escape_html(str(self.working_dir))}</code>\n"
            f"Queue: {len(self.queue)}\n"
            f"Messages: {s.messages_processed}\n"
            f"Uptime: {uptime_minutes} min\n"
            f"Session cost: ${s.total_cost:.4f}"
        )

    def cost_text(self) -> str:
        s = self.snapshot
        cfg = self.config.executor
        input_cost = s.total_input_tokens / 1e6 * cfg.input_price
        output_cost = s.total_output_tokens / 1e6 * cfg.output_price
        return (
            "<b>Session Cost</b>\n\n"
            f"Input: {s.total_input_tokens / 1000:.1f}K tokens (${input_cost:.4f})\n"
            f"Output: {s.total_output_tokens / 1000:.1f}K tokens (${output_cost:.4f})\n"
            f"<b>Total: ${s.total_cost:.4f}</b>\n\n"
            f"<i>Pricing: ${cfg.input_price:.2f}/MTok in, ${cfg.output_price:.2f}/MTok out</i>"
        )

    def logs_text(self) -> str:
        lines = tail_lines(self.config.paths.log_file, LOG_TAIL_LINES)
        if not lines:
            return "No logs available."
        return f"<pre>{escape_html(chr(10).join(lines))}</pre>"

    def change_dir(self, raw_path: str) -> str:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            path = self.working_dir / path
        if not path.is_dir():
            return f"Not found: {escape_html(raw_path)}"
        self.working_dir = path.resolve()
        self.snapshot.working_dir = str(self.working_dir)
        logger.info(f"Working directory changed to {self.working_dir}")
        log_event("cd", extra={"path": str(self.working_dir)})
        self.write_health()
        return f"Changed to: <code>{escape_html(str(self.working_dir))}</code>"
