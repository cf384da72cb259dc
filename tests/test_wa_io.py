import asyncio

from fakes import FakeTransport
from wa_io import WhatsAppIO, is_group_jid, to_jid


def test_to_jid_normalizes_numbers():
    assert to_jid("628123") == "628123@s.whatsapp.net"
    assert to_jid(" +62 812-345 ") == "62812345@s.whatsapp.net"
    assert to_jid("120363", is_group=True) == "120363@g.us"
    assert to_jid("120363@g.us") == "120363@g.us"
    assert is_group_jid("120363@g.us")
    assert not is_group_jid("628@s.whatsapp.net")


def test_send_text_retries_and_records(monkeypatch):
    recorded = []

    async def _fast_sleep(_sec: float):
        return None

    monkeypatch.setattr(asyncio, "sleep", _fast_sleep)

    transport = FakeTransport("s1", "auth", lambda event: None)
    transport.fail_sends = 2
    io = WhatsAppIO(record_send=recorded.append)

    ok = asyncio.run(io.send_text(transport, "628@s.whatsapp.net", "hi"))
    assert ok is True
    assert transport.sent == [("628@s.whatsapp.net", "hi")]
    assert recorded == ["628@s.whatsapp.net"]


def test_send_text_gives_up(monkeypatch):
    async def _fast_sleep(_sec: float):
        return None

    monkeypatch.setattr(asyncio, "sleep", _fast_sleep)
    transport = FakeTransport("s1", "auth", lambda event: None)
    transport.fail_sends = 5
    ok = asyncio.run(WhatsAppIO(attempts=3).send_text(transport, "628@s.whatsapp.net", "hi"))
    assert ok is False
    assert transport.fail_sends == 2
