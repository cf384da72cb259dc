import asyncio
from typing import List, Optional

from scheduler import Scheduler
from transport import Group, Transport, TransportError


class FakeTransport(Transport):
    def __init__(self, session_id: str, auth_dir: str, sink):
        self.session_id = session_id
        self.auth_dir = auth_dir
        self.sink = sink
        self.sent = []
        self.presence_calls = 0
        self.presence_error: Optional[Exception] = None
        self.fail_sends = 0
        self.groups: List[Group] = []
        self.groups_error: Optional[Exception] = None
        self.logged_out = False
        self.closed = False
        self.cleared = []
        self.key_requests = []
        self.key_failures = 0

    def emit(self, event) -> None:
        self.sink(event)

    async def send_message(self, contact_id: str, text: str) -> None:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise TransportError("send failed")
        self.sent.append((contact_id, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    async def fetch_groups(self) -> List[Group]:
        if self.groups_error is not None:
            raise self.groups_error
        return list(self.groups)

    async def send_presence(self, presence: str = "available") -> None:
        self.presence_calls += 1
        if self.presence_error is not None:
            raise self.presence_error

    async def clear_session_data(self, contact_id: str) -> None:
        self.cleared.append(contact_id)

    async def request_fresh_keys(self, contact_id: str) -> None:
        self.key_requests.append(contact_id)
        if self.key_failures > 0:
            self.key_failures -= 1
            raise TransportError("prekey request failed")


class FakeFactory:
    def __init__(self):
        self.created: List[FakeTransport] = []
        self.fail = 0

    async def __call__(self, session_id: str, auth_dir: str, sink) -> FakeTransport:
        if self.fail > 0:
            self.fail -= 1
            raise TransportError("connection refused")
        transport = FakeTransport(session_id, auth_dir, sink)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class ManualCall:
    def __init__(self, delay, factory, name):
        self.delay = delay
        self.factory = factory
        self.name = name
        self.cancelled = False
        self.ran = False

    def cancel(self) -> None:
        self.cancelled = True

    def done(self) -> bool:
        return self.ran or self.cancelled

    async def run(self) -> None:
        self.ran = True
        await self.factory()


class ManualScheduler(Scheduler):
    """Records scheduled calls; tests decide when (and whether) they fire."""

    def __init__(self):
        self.calls: List[ManualCall] = []

    def schedule_after(self, delay, factory, name=None):
        call = ManualCall(delay, factory, name)
        self.calls.append(call)
        return call

    def pending(self) -> List[ManualCall]:
        return [c for c in self.calls if not c.done()]

    def pending_names(self) -> List[str]:
        return [c.name for c in self.pending()]

    async def run_pending(self) -> None:
        for call in self.pending():
            await call.run()


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, attempts: int = 200) -> bool:
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()
