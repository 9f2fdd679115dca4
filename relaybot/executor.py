"""
Task executor adapters.

Defines the interface for the AI backend that actually runs a prompt,
so the dispatcher never talks to a specific CLI or SDK directly.

An executor streams events: zero or more status events, then exactly one
result event. `run()` drains that stream under a timeout.
"""

import asyncio
import json
import logging
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from .exceptions import ExecutorError, ExecutorTimeoutError

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024  # stream-json lines can carry a whole result


@dataclass
class ExecutionOptions:
    """Per-invocation settings handed to the backend."""

    working_dir: Path
    allowed_tools: List[str] = field(default_factory=list)
    permission_mode: str = "bypassPermissions"


@dataclass
class ExecutionEvent:
    """One item of an executor's event stream.

    Attributes:
        kind: "status" for progress, "result" for the terminal event
        text: Result text (result events) or a short status label
        input_tokens: Reported input tokens, if the backend tracks them
        output_tokens: Reported output tokens, if the backend tracks them
        cost_usd: Reported cost, if the backend tracks it
        raw: The backend's original payload
    """

    kind: str
    text: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cost_usd: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_result(self) -> bool:
        return self.kind == "result"


@dataclass
class ExecutionResult:
    """Outcome of a fully drained execution."""

    text: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cost_usd: Optional[float] = None
    duration_seconds: float = 0.0
    status_events: int = 0

    def __str__(self) -> str:
        return f"ExecutionResult({self.duration_seconds:.1f}s, {len(self.text)} chars)"


EventCallback = Callable[[ExecutionEvent], Awaitable[None]]


class TaskExecutor(ABC):
    """Abstract base class for task executors.

    Implement `execute` as an async generator. Example:

        class MyExecutor(TaskExecutor):
            async def execute(self, prompt, options):
                yield ExecutionEvent(kind="status", text="thinking")
                yield ExecutionEvent(kind="result", text=await my_backend(prompt))
    """

    @abstractmethod
    def execute(self, prompt: str, options: ExecutionOptions) -> AsyncIterator[ExecutionEvent]:
        """Stream events for one prompt. Raises ExecutorError on backend failure."""

    async def run(
        self,
        prompt: str,
        options: ExecutionOptions,
        timeout: Optional[float] = None,
        on_event: Optional[EventCallback] = None,
    ) -> ExecutionResult:
        """Drain `execute` and return the final result.

        Raises:
            ExecutorTimeoutError: If the stream does not finish within `timeout`
            ExecutorError: If the backend fails or never yields a result
        """
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(self._drain(prompt, options, on_event), timeout=timeout)
        except asyncio.TimeoutError:
            raise ExecutorTimeoutError(f"Task timed out after {timeout:g}s")
        except ExecutorError:
            raise
        except Exception as e:
            logger.exception(f"Executor crashed: {e}")
            raise ExecutorError(f"Execution failed: {e}")
        result.duration_seconds = time.monotonic() - start
        return result

    async def _drain(
        self,
        prompt: str,
        options: ExecutionOptions,
        on_event: Optional[EventCallback],
    ) -> ExecutionResult:
        final: Optional[ExecutionEvent] = None
        statuses = 0
        stream = self.execute(prompt, options)
        try:
            async for event in stream:
                if on_event is not None:
                    await on_event(event)
                if event.is_result:
                    final = event
                else:
                    statuses += 1
        finally:
            await stream.aclose()

        if final is None:
            raise ExecutorError("Backend finished without a result")
        return ExecutionResult(
            text=final.text,
            input_tokens=final.input_tokens,
            output_tokens=final.output_tokens,
            cost_usd=final.cost_usd,
            status_events=statuses,
        )

    def validate_environment(self) -> bool:
        """Check the backend's prerequisites (CLI installed, keys present)."""
        return True


class ClaudeCliExecutor(TaskExecutor):
    """Executor backed by the `claude` CLI in headless stream-json mode.

    Prerequisites:
    - Claude CLI installed (`claude` in PATH, or `command` configured)
    - Valid authentication configured
    """

    def __init__(self, command: str = "claude"):
        self.command = command
        self._resolved: Optional[str] = None

    def _get_path(self) -> str:
        if self._resolved is None:
            self._resolved = shutil.which(self.command)
            if not self._resolved:
                raise ExecutorError(
                    f"{self.command} CLI not found in PATH. "
                    "Install with: npm install -g @anthropic-ai/claude-code"
                )
        return self._resolved

    def build_command(self, prompt: str, options: ExecutionOptions) -> list[str]:
        cmd = [
            self._get_path(),
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", options.permission_mode,
        ]
        if options.allowed_tools:
            cmd += ["--allowedTools", ",".join(options.allowed_tools)]
        return cmd

    @staticmethod
    def parse_line(line: str) -> Optional[ExecutionEvent]:
        """Map one stream-json line to an event (None for blank/garbage lines)."""
        line = line.strip()
        if not line:
            return None
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON output line: {line[:80]}")
            return None
        if not isinstance(payload, dict):
            return None

        if payload.get("type") != "result":
            return ExecutionEvent(kind="status", text=str(payload.get("type", "")), raw=payload)

        if payload.get("is_error") or payload.get("subtype", "success") != "success":
            detail = payload.get("result") or payload.get("subtype") or "unknown error"
            raise ExecutorError(f"Backend reported an error: {detail}")

        usage = payload.get("usage") or {}
        return ExecutionEvent(
            kind="result",
            text=payload.get("result") or "",
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            cost_usd=payload.get("total_cost_usd"),
            raw=payload,
        )

    async def execute(self, prompt: str, options: ExecutionOptions) -> AsyncIterator[ExecutionEvent]:
        cmd = self.build_command(prompt, options)
        logger.debug(f"Executing in {options.working_dir}: {prompt[:100]}...")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(options.working_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise ExecutorError(f"Could not start {cmd[0]}")
        except OSError as e:
            raise ExecutorError(f"Could not start backend: {e}")

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        got_result = False
        try:
            async for raw_line in proc.stdout:
                event = self.parse_line(raw_line.decode("utf-8", errors="replace"))
                if event is None:
                    continue
                got_result = got_result or event.is_result
                yield event

            returncode = await proc.wait()
            if returncode != 0 and not got_result:
                stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
                raise ExecutorError(f"Backend exited with code {returncode}: {stderr[-500:] or 'no output'}")
        finally:
            if proc.returncode is None:
                logger.warning(f"Killing backend process {proc.pid}")
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    def validate_environment(self) -> bool:
        try:
            self._get_path()
            return True
        except ExecutorError:
            return False


class MockExecutor(TaskExecutor):
    """Mock executor for testing.

    Returns configurable responses without running a backend and records
    how many invocations overlap, so single-flight can be asserted.
    """

    def __init__(
        self,
        response: Union[str, Callable[[str], str]] = "Mock response",
        delay: float = 0.0,
        fail_when: Optional[Callable[[str], bool]] = None,
        error_message: str = "Mock error",
        status_events: int = 1,
        usage: Optional[tuple] = None,
    ):
        """Initialize mock executor.

        Args:
            response: Result text, or a function of the prompt
            delay: Seconds each invocation takes
            fail_when: Predicate on the prompt; True raises ExecutorError
            error_message: Message for injected failures
            status_events: Status events emitted before the result
            usage: Optional (input_tokens, output_tokens, cost_usd) to report
        """
        self.response = response
        self.delay = delay
        self.fail_when = fail_when
        self.error_message = error_message
        self.status_events = status_events
        self.usage = usage

        # Track calls for assertions
        self.calls: list = []
        self.active = 0
        self.peak_active = 0

    async def execute(self, prompt: str, options: ExecutionOptions) -> AsyncIterator[ExecutionEvent]:
        self.calls.append({"prompt": prompt, "working_dir": str(options.working_dir)})
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            for i in range(self.status_events):
                yield ExecutionEvent(kind="status", text=f"step {i + 1}")
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if self.fail_when is not None and self.fail_when(prompt):
                raise ExecutorError(self.error_message)

            text = self.response(prompt) if callable(self.response) else self.response
            input_tokens, output_tokens, cost = self.usage or (None, None, None)
            yield ExecutionEvent(
                kind="result",
                text=text,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=cost,
            )
        finally:
            self.active -= 1

    @property
    def call_count(self) -> int:
        """Number of times execute was called."""
        return len(self.calls)

    @property
    def prompts(self) -> list[str]:
        return [c["prompt"] for c in self.calls]
