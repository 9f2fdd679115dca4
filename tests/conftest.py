"""Shared fixtures for relay tests."""

import pytest
from unittest.mock import patch

from relaybot.config import Config, ExecutorConfig, PathsConfig, SupervisorConfig, TransportConfig
from relaybot.dispatcher import Dispatcher
from relaybot.executor import MockExecutor
from relaybot.state import HealthFile, HealthSnapshot, MessageHistory

from fakes import FakeTransport


@pytest.fixture(autouse=True)
def events_dir(tmp_path):
    """Keep the JSONL event journal out of the home directory."""
    events = tmp_path / "events"
    with patch("relaybot.logs.EVENTS_DIR", events):
        yield events


@pytest.fixture
def config(tmp_path):
    """Config with fast timings and state under tmp_path."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    return Config(
        transport=TransportConfig(bot_token="123:abc", allowed_ids=["42"], chunk_delay=0),
        executor=ExecutorConfig(working_dir=workdir, typing_interval=0.01, max_agents=10),
        supervisor=SupervisorConfig(restart_delay=0, grace_period=2.0, heartbeat_interval=0.5),
        paths=PathsConfig(state_dir=tmp_path / "state"),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def executor():
    return MockExecutor(response="Mock response", delay=0.01)


@pytest.fixture
def dispatcher(config, transport, executor):
    """Dispatcher wired to fakes, with real health and history files."""
    return Dispatcher(
        config,
        transport,
        executor,
        snapshot=HealthSnapshot(),
        health_file=HealthFile(config.paths.health_file),
        history=MessageHistory(config.paths.history_file, limit=config.history_limit),
    )
