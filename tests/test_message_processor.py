import asyncio

from bot_settings import BotSettingsStore
from fakes import FakeClock, FakeTransport
from menu import texts
from menu.resolver import MenuResolver
from menu.store import JsonMenuStore, SAMPLE_ENTRIES
from message_processor import MessageProcessor
from metrics import Metrics
from registry import DecryptionAttempt, SessionRegistry, SessionStatus
from transport import MessageEvent
from wa_io import WhatsAppIO

CONTACT = "628123456789@s.whatsapp.net"


class _NoFetch:
    async def fetch(self, url):
        raise AssertionError("no fetch expected")


def _setup(resolver=None):
    registry = SessionRegistry()
    session = registry.create("s1")
    registry.set_status("s1", SessionStatus.CONNECTED)
    session.transport = FakeTransport("s1", "auth_info_s1", lambda event: None)
    store = JsonMenuStore.from_data({"tb_menu": [], "tb_botmenu": list(SAMPLE_ENTRIES)})
    clock = FakeClock()
    metrics = Metrics()
    processor = MessageProcessor(
        registry,
        resolver or MenuResolver(store, _NoFetch()),
        BotSettingsStore(),
        io=WhatsAppIO(attempts=3, base_delay=2.0),
        metrics=metrics,
        clock=clock,
    )
    return processor, session, clock, metrics


def _process(processor, text, contact=CONTACT, from_me=False):
    return asyncio.run(processor.process("s1", MessageEvent(contact, text, from_me=from_me)))


def test_replies_with_main_menu():
    processor, session, _, metrics = _setup()
    reply = _process(processor, "menu")
    assert reply is not None
    assert texts.MAIN_MENU_HEADER in reply
    assert session.transport.sent == [(CONTACT, reply)]
    assert metrics.get("messages") == 1
    assert metrics.get("replies") == 1


def test_skips_own_group_and_empty_messages():
    processor, session, _, metrics = _setup()
    assert _process(processor, "menu", from_me=True) is None
    assert _process(processor, "menu", contact="1203630@g.us") is None
    assert _process(processor, "   ") is None
    assert session.transport.sent == []
    assert metrics.get("messages") == 0


def test_reply_rate_limit_per_session():
    processor, session, clock, metrics = _setup()
    assert _process(processor, "menu") is not None
    clock.advance(1.0)
    assert _process(processor, "1", contact="628999@s.whatsapp.net") is None
    assert metrics.get("rate_limited") == 1
    clock.advance(1.5)
    assert _process(processor, "1") is not None
    assert len(session.transport.sent) == 2


def test_message_without_connection_keeps_reply_slot_free():
    processor, session, clock, metrics = _setup()
    transport = session.transport
    session.transport = None
    assert _process(processor, "menu") is None
    assert session.last_reply_at == 0.0

    session.transport = transport
    clock.advance(0.5)
    assert _process(processor, "menu") is not None
    assert metrics.get("rate_limited") == 0
    assert len(transport.sent) == 1


def test_disabled_bot_stays_silent():
    processor, session, _, _ = _setup()
    processor.bot_settings.update("s1", enabled=False)
    assert _process(processor, "menu") is None
    assert session.transport.sent == []


def test_readable_message_clears_decryption_counter():
    processor, session, _, _ = _setup()
    session.decryption_attempts[CONTACT] = DecryptionAttempt(count=3, last_at=1.0)
    _process(processor, "menu")
    assert CONTACT not in session.decryption_attempts


def test_send_is_retried_on_transport_error(monkeypatch):
    sleeps = []

    async def _fast_sleep(sec):
        sleeps.append(sec)

    monkeypatch.setattr(asyncio, "sleep", _fast_sleep)
    processor, session, _, metrics = _setup()
    session.transport.fail_sends = 2
    assert _process(processor, "menu") is not None
    assert len(session.transport.sent) == 1
    assert sleeps == [2.0, 4.0]
    assert metrics.get("replies") == 1


def test_send_gives_up_after_three_attempts(monkeypatch):
    async def _fast_sleep(sec):
        return None

    monkeypatch.setattr(asyncio, "sleep", _fast_sleep)
    processor, session, _, metrics = _setup()
    session.transport.fail_sends = 3
    assert _process(processor, "menu") is None
    assert session.transport.sent == []
    assert metrics.get("errors") == 1


def test_resolver_crash_sends_apology():
    class _Broken:
        async def resolve(self, text, session=None, settings=None):
            raise RuntimeError("boom")

    processor, session, _, metrics = _setup(resolver=_Broken())
    reply = _process(processor, "menu")
    settings = processor.bot_settings.get("s1")
    assert reply == texts.with_footer(settings.responses["error"])
    assert "boom" not in reply
    assert session.transport.sent == [(CONTACT, reply)]
    assert metrics.get("errors") == 1


def test_deleted_session_is_ignored():
    processor, session, _, _ = _setup()
    processor.registry.mark_deleted("s1")
    assert _process(processor, "menu") is None
    assert session.transport.sent == []
