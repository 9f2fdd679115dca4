"""
Configuration management for relaybot.

Supports:
- Programmatic configuration via dataclasses
- YAML file loading
- Environment variable overrides (.env files are loaded first)
- Sensible defaults for all settings
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .modes import Mode

DEFAULT_STATE_DIR = Path.home() / ".relaybot"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"

DEFAULT_ALLOWED_TOOLS = [
    "Read", "Edit", "Bash", "Write", "Glob", "Grep", "WebFetch", "WebSearch",
]


def _to_path(value) -> Path:
    return Path(os.path.expanduser(str(value)))


@dataclass
class TransportConfig:
    """Chat platform settings."""

    bot_token: Optional[str] = None
    allowed_ids: List[str] = field(default_factory=list)
    api_base: str = "https://api.telegram.org"
    poll_timeout: int = 30  # long-poll wait per fetch, seconds
    backoff_seconds: float = 5.0  # delay after a failed fetch
    message_limit: int = 4000  # max characters per outbound message
    chunk_delay: float = 0.5  # pause between chunks of one reply

    def __post_init__(self):
        self.allowed_ids = [str(i).strip() for i in self.allowed_ids if str(i).strip()]
        if self.poll_timeout < 0:
            raise ConfigurationError("poll_timeout cannot be negative")
        if self.backoff_seconds < 0:
            raise ConfigurationError("backoff_seconds cannot be negative")
        if self.message_limit < 100:
            raise ConfigurationError("message_limit must be at least 100")


@dataclass
class ExecutorConfig:
    """Task execution settings."""

    command: str = "claude"
    working_dir: Path = field(default_factory=Path.home)
    allowed_tools: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    permission_mode: str = "bypassPermissions"
    timeout_seconds: int = 600
    max_agents: int = 10
    typing_interval: float = 4.0
    # Pricing per million tokens
    input_price: float = 15.00
    output_price: float = 75.00

    def __post_init__(self):
        if isinstance(self.working_dir, str):
            self.working_dir = _to_path(self.working_dir)
        if self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be positive")
        if self.max_agents < 1:
            raise ConfigurationError("max_agents must be at least 1")
        if self.typing_interval <= 0:
            raise ConfigurationError("typing_interval must be positive")


@dataclass
class SupervisorConfig:
    """Restart policy for the supervisor process."""

    max_restarts: int = 5
    restart_window: float = 60.0  # seconds
    restart_delay: float = 5.0
    grace_period: float = 10.0  # wait after SIGTERM before SIGKILL
    heartbeat_interval: float = 30.0

    def __post_init__(self):
        if self.max_restarts < 1:
            raise ConfigurationError("max_restarts must be at least 1")
        if self.restart_window <= 0:
            raise ConfigurationError("restart_window must be positive")
        if self.restart_delay < 0:
            raise ConfigurationError("restart_delay cannot be negative")
        if self.grace_period <= 0:
            raise ConfigurationError("grace_period must be positive")


@dataclass
class PanelConfig:
    """Operator panel settings."""

    host: str = "127.0.0.1"
    port: int = 3000
    token: Optional[str] = None

    def __post_init__(self):
        if not 0 <= int(self.port) <= 65535:
            raise ConfigurationError(f"panel port out of range: {self.port}")


@dataclass
class PathsConfig:
    """Where state files live. One writer role per file."""

    state_dir: Path = DEFAULT_STATE_DIR

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = _to_path(self.state_dir)

    @property
    def cursor_file(self) -> Path:
        return self.state_dir / "cursor.json"

    @property
    def health_file(self) -> Path:
        return self.state_dir / "health.json"

    @property
    def supervisor_health_file(self) -> Path:
        return self.state_dir / "supervisor-health.json"

    @property
    def history_file(self) -> Path:
        return self.state_dir / "messages.json"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "relaybot.log"

    @property
    def supervisor_log_file(self) -> Path:
        return self.state_dir / "supervisor.log"

    @property
    def events_dir(self) -> Path:
        return self.state_dir / "events"


@dataclass
class Config:
    """Master configuration.

    Example usage:
        # Defaults
        config = Config.default()

        # From file, then environment
        config = load_config(Path("config.yaml"))

        # Programmatic
        config = Config(
            transport=TransportConfig(bot_token="123:abc", allowed_ids=["42"]),
            executor=ExecutorConfig(max_agents=3),
        )
    """

    transport: TransportConfig = field(default_factory=TransportConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    panel: PanelConfig = field(default_factory=PanelConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    # Mode -> directories a task in that mode may run in (empty = unrestricted)
    mode_dirs: Dict[Mode, List[Path]] = field(default_factory=dict)
    health_interval: float = 5.0
    liveness_threshold: float = 15.0
    history_limit: int = 100

    def __post_init__(self):
        if self.health_interval <= 0:
            raise ConfigurationError("health_interval must be positive")
        if self.history_limit < 1:
            raise ConfigurationError("history_limit must be at least 1")

    @classmethod
    def default(cls) -> "Config":
        """Create configuration with all defaults."""
        return cls()

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {path}")
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        mode_dirs = {}
        for name, mode_cfg in (data.get("modes") or {}).items():
            mode = Mode.from_name(str(name))
            if mode is None:
                raise ConfigurationError(f"Unknown mode in config: {name}")
            dirs = (mode_cfg or {}).get("allowed_dirs") or []
            mode_dirs[mode] = [_to_path(d) for d in dirs]

        try:
            return cls(
                transport=TransportConfig(**data.get("transport", {})),
                executor=ExecutorConfig(**data.get("executor", {})),
                supervisor=SupervisorConfig(**data.get("supervisor", {})),
                panel=PanelConfig(**data.get("panel", {})),
                paths=PathsConfig(**data.get("paths", {})),
                mode_dirs=mode_dirs,
                **{
                    key: data[key]
                    for key in ("health_interval", "liveness_threshold", "history_limit")
                    if key in data
                },
            )
        except TypeError as e:
            # Unknown keys in a section
            raise ConfigurationError(f"Invalid config: {e}")

    def apply_env(self) -> "Config":
        """Apply environment variable overrides in place.

        Supported environment variables:
        - TELEGRAM_BOT_TOKEN: Transport credential
        - TELEGRAM_ALLOWED_CHAT_IDS: Comma-separated allowlist
        - RELAYBOT_WORKING_DIR: Default working directory
        - RELAYBOT_POLL_TIMEOUT: Long-poll timeout in seconds
        - RELAYBOT_TASK_TIMEOUT: Executor timeout in seconds
        - RELAYBOT_MAX_AGENTS: Fan-out ceiling
        - RELAYBOT_PANEL_PORT / RELAYBOT_PANEL_TOKEN: Operator panel
        - RELAYBOT_STATE_DIR: Directory for state files
        """
        try:
            if token := os.environ.get("TELEGRAM_BOT_TOKEN"):
                self.transport.bot_token = token
            if allowed := os.environ.get("TELEGRAM_ALLOWED_CHAT_IDS"):
                self.transport.allowed_ids = [a.strip() for a in allowed.split(",") if a.strip()]
            if working_dir := os.environ.get("RELAYBOT_WORKING_DIR"):
                self.executor.working_dir = _to_path(working_dir)
            if poll_timeout := os.environ.get("RELAYBOT_POLL_TIMEOUT"):
                self.transport.poll_timeout = int(poll_timeout)
            if task_timeout := os.environ.get("RELAYBOT_TASK_TIMEOUT"):
                self.executor.timeout_seconds = int(task_timeout)
            if max_agents := os.environ.get("RELAYBOT_MAX_AGENTS"):
                self.executor.max_agents = int(max_agents)
            if port := os.environ.get("RELAYBOT_PANEL_PORT"):
                self.panel.port = int(port)
            if panel_token := os.environ.get("RELAYBOT_PANEL_TOKEN"):
                self.panel.token = panel_token
            if state_dir := os.environ.get("RELAYBOT_STATE_DIR"):
                self.paths.state_dir = _to_path(state_dir)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment override: {e}")

        # Overrides bypass the constructors, so re-run their range checks
        for section in (self.transport, self.executor, self.panel):
            section.__post_init__()
        return self

    def allowed_dirs_for(self, mode: Mode) -> List[Path]:
        return self.mode_dirs.get(mode, [])


def load_config(path: Optional[Path] = None) -> Config:
    """Build the effective config: defaults, then YAML (if any), then environment.

    An explicit path that does not exist is an error; the default path is optional.
    """
    load_dotenv()
    load_dotenv(DEFAULT_STATE_DIR / ".env")

    if path is not None:
        config = Config.from_yaml(path)
    elif DEFAULT_CONFIG_PATH.exists():
        config = Config.from_yaml(DEFAULT_CONFIG_PATH)
    else:
        config = Config.default()
    return config.apply_env()


def validate_config(config: Config) -> list[str]:
    """
    Validate configuration. Returns list of warnings.
    Raises ConfigurationError for fatal issues.
    """
    errors = []
    warnings = []

    if not config.transport.bot_token:
        errors.append("Transport: bot token is required (set TELEGRAM_BOT_TOKEN)")

    if not config.transport.allowed_ids:
        warnings.append("Transport: no allowed ids - every requester will be rejected")

    working_dir = config.executor.working_dir
    if not working_dir.is_dir():
        errors.append(f"Executor: working_dir '{working_dir}' does not exist")

    for mode, dirs in config.mode_dirs.items():
        for d in dirs:
            if not d.is_dir():
                warnings.append(f"Mode {mode.value}: allowed dir '{d}' does not exist")

    if config.executor.max_agents < 1:
        errors.append(f"Executor: max_agents must be at least 1 (got {config.executor.max_agents})")
    if config.executor.timeout_seconds <= 0:
        errors.append(f"Executor: timeout_seconds must be positive (got {config.executor.timeout_seconds})")
    if config.transport.poll_timeout < 0:
        errors.append(f"Transport: poll_timeout cannot be negative (got {config.transport.poll_timeout})")

    if config.liveness_threshold <= config.health_interval:
        warnings.append(
            "liveness_threshold should exceed health_interval, "
            "or a healthy process will look dead between heartbeats"
        )

    if errors:
        raise ConfigurationError("\n".join(errors))

    return warnings
