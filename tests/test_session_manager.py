import time

import pytest

from session_manager import SessionManager


@pytest.fixture
def manager():
    manager = SessionManager()
    yield manager
    manager.end_all()


def test_sessions_are_independent(manager):
    first = manager.create_session("alice", timestep=0.01)
    second = manager.create_session("bob", timestep=0.01)
    assert first != second
    assert first.startswith("alice_")

    host_a = manager.get_host(first)
    host_b = manager.get_host(second)
    assert host_a.wait_until_ready(5.0) and host_b.wait_until_ready(5.0)

    host_a.set_setpoint(70.0)
    host_b.set_setpoint(30.0)
    time.sleep(0.2)
    assert host_a.engine.setpoint == 70.0
    assert host_b.engine.setpoint == 30.0


def test_end_session_stops_host(manager):
    session_id = manager.create_session("carol", timestep=0.01)
    host = manager.get_host(session_id)
    manager.end_session(session_id)
    assert manager.get_session(session_id) is None
    assert not host.is_connected()


def test_expired_sessions_are_removed():
    manager = SessionManager(session_timeout=0.0)
    try:
        manager.create_session("dave", timestep=0.01)
        manager.create_session("erin", timestep=0.01)
        time.sleep(0.01)
        assert manager.cleanup_expired_sessions() == 2
        assert manager.sessions == {}
    finally:
        manager.end_all()
