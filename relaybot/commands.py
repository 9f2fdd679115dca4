"""
Inbound command parsing.

Commands (case-sensitive prefixes):
    /start               Help text
    /status              Dispatcher state
    /cost                Token and cost totals
    /stop                Refused while a task runs
    /logs                Tail of the activity log
    /cd <path>           Change working directory
    /<mode> <query>      Run query with a domain mode's system prompt
    /agents <N> <query>  Fan out N parallel agents
    anything else        Default-mode prompt
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

from .modes import Mode

# Command kinds
START = "start"
STATUS = "status"
COST = "cost"
STOP = "stop"
LOGS = "logs"
CD = "cd"
PROMPT = "prompt"
AGENTS = "agents"
USAGE = "usage"
EMPTY = "empty"

_SIMPLE = {
    "/start": START,
    "/status": STATUS,
    "/cost": COST,
    "/stop": STOP,
    "/logs": LOGS,
}

_AGENTS_USAGE = "Usage: /agents [N] [query]\nExample: /agents 3 research AI startups"
_CD_USAGE = "Usage: /cd <path>"


@dataclass
class Command:
    """Parsed inbound message.

    `kind` is one of the module-level kind constants. PROMPT and AGENTS carry a
    query to execute; USAGE carries the reply text in `message`.
    """

    kind: str
    mode: Mode = Mode.DEFAULT
    query: str = ""
    agents: int = 0
    path: str = ""
    message: str = ""

    @property
    def is_task(self) -> bool:
        """True if this command occupies the execution slot."""
        return self.kind in (PROMPT, AGENTS)


def clean_text(s: str) -> str:
    """Remove zero-width characters that break parsing."""
    return ''.join(c for c in s if unicodedata.category(c) != 'Cf')


def _split_word(text: str) -> tuple[str, str]:
    parts = text.split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


def parse_command(text: str) -> Command:
    """Parse message text into a Command."""
    text = clean_text(text).strip()
    if not text:
        return Command(kind=EMPTY)

    if not text.startswith("/"):
        return Command(kind=PROMPT, query=text)

    word, rest = _split_word(text)
    # "/status@MyBot" is how group chats address a bot
    word = word.split("@", 1)[0]

    if word in _SIMPLE:
        return Command(kind=_SIMPLE[word])

    if word == "/cd":
        if not rest:
            return Command(kind=USAGE, message=_CD_USAGE)
        return Command(kind=CD, path=rest)

    if word == "/agents":
        match = re.match(r"^(-?\d+)\s+(.+)$", rest, re.DOTALL)
        if not match:
            return Command(kind=USAGE, message=_AGENTS_USAGE)
        count = int(match.group(1))
        if count < 1:
            return Command(kind=USAGE, message="Need at least 1 agent")
        return Command(kind=AGENTS, agents=count, query=match.group(2).strip())

    mode = Mode.from_name(word[1:])
    if mode is not None and mode is not Mode.DEFAULT:
        if not rest:
            return Command(kind=USAGE, mode=mode, message=mode.usage)
        return Command(kind=PROMPT, mode=mode, query=rest)

    # Unknown slash command: treat the whole text as a prompt
    return Command(kind=PROMPT, query=text)


def help_text(max_agents: int) -> str:
    """Reply for /start."""
    lines = ["<b>AI Relay</b>", "", "<b>Modes:</b>"]
    for mode in Mode.commands():
        lines.append(f"/{mode.value} - {mode.description}")
    lines += [
        "",
        "<b>Parallel:</b>",
        f"/agents N [query] - Run N agents (max {max_agents})",
        "",
        "<b>Utils:</b>",
        "/cost - Token usage",
        "/status - Bot status",
        "/cd [path] - Change directory",
        "/logs - Recent activity",
        "",
        "Or just send any message.",
    ]
    return "\n".join(lines)
