"""Tests for the dispatcher: single-flight slot, FIFO queue, fan-out, replies."""

import asyncio
import json

import pytest

from relaybot.dispatcher import Dispatcher, estimate_tokens
from relaybot.executor import MockExecutor
from relaybot.modes import Mode
from relaybot.state import MessageHistory

from fakes import FakeTransport, make_update


def query_of(prompt: str) -> str:
    """The user query embedded in a composed prompt."""
    return prompt.rsplit("User request: ", 1)[1]


def submit_all(dispatcher, *texts):
    """Submit texts back to back, then wait for the slot to drain."""
    async def scenario():
        for i, text in enumerate(texts, 1):
            await dispatcher.submit(make_update(i, text))
        await dispatcher.wait_idle()
    asyncio.run(scenario())


class TestAuthorization:
    """Allowlist enforcement."""

    def test_unauthorized_gets_own_chat_id(self, dispatcher, transport, executor):
        """Unknown callers get a terse reply naming their chat id."""
        asyncio.run(dispatcher.submit(make_update(1, "hello", chat_id="99", sender_id="99")))
        assert transport.texts == ["Unauthorized. Your chat ID: 99"]
        assert executor.call_count == 0

    def test_allowlisted_sender_in_other_chat(self, dispatcher, transport, executor):
        """A listed sender is accepted even from an unlisted group chat."""
        async def scenario():
            await dispatcher.submit(make_update(1, "hello", chat_id="-100", sender_id="42"))
            await dispatcher.wait_idle()
        asyncio.run(scenario())
        assert executor.call_count == 1

    def test_update_without_text_is_ignored(self, dispatcher, transport):
        asyncio.run(dispatcher.submit(make_update(1, "")))
        assert transport.sent == []


class TestSingleFlight:
    """One top-level task at a time, queued in arrival order."""

    def test_messages_while_busy_run_in_arrival_order(self, dispatcher, transport, executor):
        texts = [f"task number {i}" for i in range(8)]
        submit_all(dispatcher, *texts)

        assert [query_of(p) for p in executor.prompts] == texts

    def test_queue_position_replies(self, dispatcher, transport):
        submit_all(dispatcher, "first", "second", "third", "fourth")
        assert transport.find("Queued (#") == ["Queued (#1)", "Queued (#2)", "Queued (#3)"]

    def test_never_two_tasks_at_once(self, dispatcher, executor):
        submit_all(dispatcher, *[f"job {i}" for i in range(6)])
        assert executor.call_count == 6
        assert executor.peak_active == 1

    def test_submit_does_not_wait_for_execution(self, config, transport):
        """submit returns once the task has started; the slot stays busy."""
        executor = MockExecutor(delay=0.2)
        dispatcher = Dispatcher(config, transport, executor)

        async def scenario():
            await dispatcher.submit(make_update(1, "slow job"))
            busy_after_submit = dispatcher.busy
            await dispatcher.wait_idle()
            return busy_after_submit

        assert asyncio.run(scenario()) is True
        assert dispatcher.busy is False
        assert dispatcher.snapshot.status == "idle"

    def test_slot_released_after_failure(self, config, transport):
        """A failing task replies with an error and the queue keeps draining."""
        executor = MockExecutor(fail_when=lambda p: "broken" in p, error_message="backend down")
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "broken request", "good request")

        assert "Error: backend down" in transport.texts
        assert [query_of(p) for p in executor.prompts] == ["broken request", "good request"]
        assert dispatcher.snapshot.messages_processed == 1
        assert dispatcher.busy is False

    def test_timeout_releases_slot(self, config, transport):
        config.executor.timeout_seconds = 0.05
        executor = MockExecutor(delay=5)
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "hang forever")

        errors = transport.find("Error:")
        assert len(errors) == 1
        assert "timed out" in errors[0]
        assert dispatcher.busy is False


class TestTaskReplies:
    """Acknowledgement, result, and completion lines."""

    def test_default_mode_flow(self, dispatcher, transport):
        submit_all(dispatcher, "summarize the news")
        texts = transport.texts
        assert texts[0] == "Processing: summarize the news..."
        assert texts[1] == "Mock response"
        assert texts[2].startswith("<i>Completed in ")

    def test_domain_mode_ack_and_prompt(self, dispatcher, transport, executor):
        submit_all(dispatcher, "/finance price an option")
        assert transport.texts[0] == "<b>Financial Analysis:</b> price an option..."
        assert executor.prompts[0].startswith(Mode.FINANCE.system_prompt)
        assert query_of(executor.prompts[0]) == "price an option"

    def test_result_is_formatted(self, config, transport):
        executor = MockExecutor(response="**bold** & `code`")
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "format me")
        assert "<b>bold</b> &amp; <code>code</code>" in transport.texts

    def test_usage_reply_for_empty_mode_query(self, dispatcher, transport, executor):
        submit_all(dispatcher, "/health")
        assert transport.texts[0].startswith("Usage: /health [query]")
        assert executor.call_count == 0

    def test_restricted_mode_directory(self, config, transport, tmp_path):
        allowed = tmp_path / "legal-docs"
        allowed.mkdir()
        config.mode_dirs = {Mode.LEGAL: [allowed]}
        executor = MockExecutor()
        dispatcher = Dispatcher(config, transport, executor)

        submit_all(dispatcher, "/legal review the contract")
        assert executor.call_count == 0
        assert "restricted" in transport.texts[0]

    def test_restricted_mode_allows_subdirectory(self, config, transport, tmp_path):
        allowed = tmp_path / "legal-docs"
        (allowed / "case1").mkdir(parents=True)
        config.mode_dirs = {Mode.LEGAL: [allowed]}
        config.executor.working_dir = allowed / "case1"
        executor = MockExecutor()
        dispatcher = Dispatcher(config, transport, executor)

        submit_all(dispatcher, "/legal review the contract")
        assert executor.call_count == 1


class TestFanOut:
    """Parallel agent batches."""

    def test_three_agents_in_order(self, dispatcher, transport, executor):
        submit_all(dispatcher, "/agents 3 compare three cloud providers")

        assert executor.call_count == 3
        assert transport.texts[0] == "Launching 3 parallel agents..."
        combined = transport.find("Parallel Agents Results")[0]
        assert combined.startswith("<b>Parallel Agents Results (3 agents)</b>")
        positions = [combined.index(f"<b>Agent {i}:</b>") for i in (1, 2, 3)]
        assert positions == sorted(positions)

    def test_prompt_variants(self, dispatcher, executor):
        submit_all(dispatcher, "/agents 2 research startups")
        assert "Agent 1 task: research startups (Focus area 1 of 2)" in executor.prompts[0]
        assert "Agent 2 task: research startups (Focus area 2 of 2)" in executor.prompts[1]

    def test_one_failure_does_not_sink_the_batch(self, config, transport):
        executor = MockExecutor(
            response="insight",
            delay=0.01,
            fail_when=lambda p: "Agent 3 task" in p,
            error_message="backend exploded",
        )
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "/agents 5 analyze the market")

        combined = transport.find("Parallel Agents Results")[0]
        assert combined.count("<b>Agent ") == 5
        assert combined.count("Error - ") == 1
        assert "<b>Agent 3:</b> Error - backend exploded" in combined
        assert combined.count("insight") == 4
        assert dispatcher.snapshot.messages_processed == 5
        assert dispatcher.busy is False

    def test_agents_run_concurrently(self, config, transport):
        executor = MockExecutor(delay=0.05)
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "/agents 4 scan the sources")
        assert executor.peak_active == 4

    def test_count_is_clamped(self, config, transport):
        config.executor.max_agents = 3
        executor = MockExecutor()
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "/agents 7 too many")

        assert executor.call_count == 3
        assert transport.texts[0] == "Launching 3 parallel agents... (capped at 3)"

    def test_fanout_while_busy_is_queued(self, dispatcher, transport, executor):
        submit_all(dispatcher, "single first", "/agents 2 batch second")
        assert "Queued (#1)" in transport.texts
        assert query_of(executor.prompts[0]) == "single first"
        assert executor.call_count == 3


class TestAccounting:
    """Token and cost totals."""

    def test_reported_usage_is_used(self, config, transport):
        executor = MockExecutor(usage=(1000, 2000, None))
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "count me")

        s = dispatcher.snapshot
        assert s.total_input_tokens == 1000
        assert s.total_output_tokens == 2000
        assert s.total_cost == pytest.approx(1000 / 1e6 * 15 + 2000 / 1e6 * 75)

    def test_reported_cost_wins(self, config, transport):
        executor = MockExecutor(usage=(10, 10, 0.5))
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "count me")
        assert dispatcher.snapshot.total_cost == pytest.approx(0.5)

    def test_estimates_without_usage(self, config, transport):
        executor = MockExecutor(response="x" * 8)
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "estimate me")

        s = dispatcher.snapshot
        assert s.total_output_tokens == 2
        assert s.total_input_tokens == estimate_tokens(executor.prompts[0])

    def test_estimate_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcde") == 2


class TestQuickCommands:
    """Commands answered without the execution slot."""

    def test_status_idle(self, dispatcher, transport):
        submit_all(dispatcher, "/status")
        assert "State: Ready" in transport.texts[0]
        assert "Queue: 0" in transport.texts[0]

    def test_cost(self, dispatcher, transport):
        submit_all(dispatcher, "/cost")
        assert "<b>Session Cost</b>" in transport.texts[0]
        assert "$15.00/MTok in, $75.00/MTok out" in transport.texts[0]

    def test_stop_when_idle(self, dispatcher, transport):
        submit_all(dispatcher, "/stop")
        assert transport.texts == ["Nothing running."]

    def test_stop_while_busy(self, dispatcher, transport):
        submit_all(dispatcher, "long job", "/stop")
        assert "Current task cannot be interrupted. Wait for it to finish." in transport.texts

    def test_status_while_busy_reports_processing(self, dispatcher, transport):
        submit_all(dispatcher, "long job", "/status")
        status = transport.find("<b>Status</b>")[0]
        assert "Processing (1 agents)" in status

    def test_start_lists_help(self, dispatcher, transport):
        submit_all(dispatcher, "/start")
        assert "/agents N" in transport.texts[0]

    def test_logs_without_file(self, dispatcher, transport):
        submit_all(dispatcher, "/logs")
        assert transport.texts == ["No logs available."]

    def test_logs_tail_is_escaped(self, dispatcher, transport, config):
        config.paths.log_file.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"line {i}" for i in range(30)] + ["<tag> & more"]
        config.paths.log_file.write_text("\n".join(lines) + "\n")

        submit_all(dispatcher, "/logs")
        reply = transport.texts[0]
        assert reply.startswith("<pre>") and reply.endswith("</pre>")
        assert "&lt;tag&gt; &amp; more" in reply
        assert "line 10\n" not in reply
        assert "line 11\n" in reply

    def test_cd_to_missing_path(self, dispatcher, transport):
        submit_all(dispatcher, "/cd /definitely/not/here")
        assert transport.texts == ["Not found: /definitely/not/here"]

    def test_cd_changes_working_dir_for_next_task(self, dispatcher, transport, executor, tmp_path):
        target = tmp_path / "other"
        target.mkdir()
        submit_all(dispatcher, f"/cd {target}", "run here")

        assert transport.texts[0].startswith("Changed to: <code>")
        assert executor.calls[0]["working_dir"] == str(target.resolve())
        assert dispatcher.snapshot.working_dir == str(target.resolve())


class TestPersistence:
    """Health and history files written by the dispatcher."""

    def test_health_file_after_task(self, dispatcher, config):
        submit_all(dispatcher, "persist me")
        data = json.loads(config.paths.health_file.read_text())
        assert data["status"] == "idle"
        assert data["messages_processed"] == 1
        assert data["is_processing"] is False
        assert data["queue_length"] == 0
        assert data["version"] >= 2

    def test_history_entries(self, config, transport):
        from relaybot.state import MessageHistory

        executor = MockExecutor(fail_when=lambda p: "bad" in p)
        history = MessageHistory(config.paths.history_file)
        dispatcher = Dispatcher(config, transport, executor, history=history)
        submit_all(dispatcher, "good one", "bad one")

        entries = history.load()
        assert [e["prompt"] for e in entries] == ["good one", "bad one"]
        assert [e["outcome"] for e in entries] == ["completed", "error"]
        assert entries[0]["requester"] == "tester"

    def test_health_write_failure_is_not_fatal(self, config, transport, executor, tmp_path):
        from relaybot.state import HealthFile

        blocker = tmp_path / "blocker"
        blocker.write_text("a file where a directory should be")
        dispatcher = Dispatcher(config, transport, executor, health_file=HealthFile(blocker / "health.json"))
        submit_all(dispatcher, "still works")
        assert dispatcher.snapshot.messages_processed == 1

    def test_error_counter(self, dispatcher):
        dispatcher.count_error()
        dispatcher.count_error()
        assert dispatcher.snapshot.errors == 2


class TestDelivery:
    """Outbound failures never break dispatch."""

    def test_send_failures_are_swallowed(self, config, executor):
        transport = FakeTransport(fail_all=True)
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "nobody hears this")
        assert dispatcher.snapshot.messages_processed == 1
        assert dispatcher.busy is False


class TestTypingIndicator:
    """The "still working" signal sent while a task runs."""

    def test_typing_sent_during_execution(self, config, transport):
        executor = MockExecutor(response="done", delay=0.05)
        dispatcher = Dispatcher(config, transport, executor)
        submit_all(dispatcher, "slow task")

        assert transport.typing
        assert set(transport.typing) == {"42"}
        assert "done" in transport.texts

    def test_typing_stops_after_completion(self, config, transport):
        executor = MockExecutor(delay=0.05)
        dispatcher = Dispatcher(config, transport, executor)

        async def scenario():
            await dispatcher.submit(make_update(1, "slow task"))
            await dispatcher.wait_idle()
            sent = len(transport.typing)
            await asyncio.sleep(0.05)
            return sent

        sent = asyncio.run(scenario())
        assert len(transport.typing) == sent

    def test_typing_failure_keeps_the_result(self, config):
        class BrokenTyping(FakeTransport):
            async def send_typing(self, chat_id):
                raise RuntimeError("typing exploded")

        transport = BrokenTyping()
        executor = MockExecutor(response="the answer", delay=0.02)
        history = MessageHistory(config.paths.history_file)
        dispatcher = Dispatcher(config, transport, executor, history=history)
        submit_all(dispatcher, "hello")

        assert "the answer" in transport.texts
        assert transport.find("Error:") == []
        assert dispatcher.snapshot.messages_processed == 1
        assert [e["outcome"] for e in history.load()] == ["completed"]
