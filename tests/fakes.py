"""In-memory collaborators shared by the relay tests."""

from relaybot.transport import Transport, Update


class FakeTransport(Transport):
    """Transport that serves scripted update batches and records every send.

    A batch may be an Exception instance, which `fetch_updates` raises.
    """

    message_limit = 4000
    chunk_delay = 0

    def __init__(self, batches=None, fail_html: bool = False, fail_all: bool = False):
        self.batches = list(batches or [])
        self.fetch_calls: list = []
        self.sent: list = []
        self.typing: list = []
        self.fail_html = fail_html
        self.fail_all = fail_all
        self.closed = False

    async def fetch_updates(self, since, timeout):
        self.fetch_calls.append(since)
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return [u for u in batch if u.id > since]

    async def send_text(self, chat_id, text, parse_mode="HTML"):
        if self.fail_all or (self.fail_html and parse_mode == "HTML"):
            return False
        self.sent.append((chat_id, text, parse_mode))
        return True

    async def send_typing(self, chat_id):
        self.typing.append(chat_id)

    async def close(self):
        self.closed = True

    @property
    def texts(self) -> list:
        return [text for _, text, _ in self.sent]

    def find(self, fragment: str) -> list:
        """Sent texts containing `fragment`."""
        return [t for t in self.texts if fragment in t]


def make_update(update_id: int, text: str, chat_id: str = "42", sender_id: str = "42",
                sender_name: str = "tester") -> Update:
    return Update(id=update_id, chat_id=chat_id, text=text, sender_id=sender_id, sender_name=sender_name)
