import logging
import sys
import threading

from bot_logging import setup_logging


def test_supervisor_logs_go_to_their_own_file(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(threading, "excepthook", threading.excepthook)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    supervisor = logging.getLogger("supervisor")
    try:
        setup_logging(str(tmp_path / "logs" / "gateway.log"))
        logging.getLogger("bot.messages").info("hello main")
        logging.getLogger("supervisor.registry").info("heartbeat ok")
        supervisor.error("reconnect failed")
        for h in root.handlers + supervisor.handlers:
            h.flush()
    finally:
        for h in set(root.handlers + supervisor.handlers):
            h.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    logs = tmp_path / "logs"
    main = (logs / "gateway.log").read_text(encoding="utf-8")
    lifecycle = (logs / "gateway_supervisor.log").read_text(encoding="utf-8")
    errors = (logs / "gateway_error.log").read_text(encoding="utf-8")
    assert "hello main" in main
    assert "heartbeat ok" not in main
    assert "[supervisor.registry] heartbeat ok" in lifecycle
    assert "reconnect failed" in errors
