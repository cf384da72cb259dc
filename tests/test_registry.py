from registry import SessionRegistry, SessionStatus


def test_create_get_and_status_changes():
    registry = SessionRegistry()
    changes = []
    registry.on_change = lambda s: changes.append((s.session_id, s.status))
    session = registry.create("s1", "Shop")
    assert registry.create("s1") is session
    assert registry.get("s1") is session
    registry.set_status("s1", SessionStatus.CONNECTING)
    assert session.status == SessionStatus.CONNECTING
    assert changes == [("s1", SessionStatus.DISCONNECTED), ("s1", SessionStatus.CONNECTING)]
    assert session.to_status()["session_name"] == "Shop"


def test_tombstoned_session_is_invisible():
    registry = SessionRegistry()
    registry.create("s1")
    registry.create("s2")
    registry.mark_deleted("s1")
    assert registry.get("s1") is None
    assert registry.get("s1", include_deleted=True) is not None
    assert registry.set_status("s1", SessionStatus.CONNECTED) is None
    assert "s1" not in registry
    assert registry.ids() == ["s2"]
    assert len(registry) == 1

    registry.delete("s1")
    assert registry.get("s1", include_deleted=True) is None
    fresh = registry.create("s1")
    assert fresh.deleted is False


def test_change_callback_errors_do_not_escape():
    registry = SessionRegistry()

    def _boom(session):
        raise RuntimeError("mirror down")

    registry.on_change = _boom
    registry.create("s1")
    registry.set_status("s1", SessionStatus.ERROR)
    assert registry.get("s1").status == SessionStatus.ERROR


def test_contact_lock_is_per_contact():
    registry = SessionRegistry()
    session = registry.create("s1")
    assert session.contact_lock("a") is session.contact_lock("a")
    assert session.contact_lock("a") is not session.contact_lock("b")
