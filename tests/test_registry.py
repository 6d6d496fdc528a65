from concurrent.futures import ThreadPoolExecutor

import pytest

from sealchat.core.registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


def test_register_is_idempotent(registry):
    assert registry.register("u", "e") is None
    assert registry.register("u", "e") is None
    assert len(registry) == 1
    assert registry.lookup("u") == "e"


def test_last_connect_wins_and_reports_superseded(registry):
    registry.register("u", "e1")
    assert registry.register("u", "e2") == "e1"
    assert registry.lookup("u") == "e2"
    assert len(registry) == 1


def test_stale_unregister_keeps_newer_connection(registry):
    registry.register("u", "e1")
    registry.register("u", "e2")
    assert registry.unregister("u", "e1") is False
    assert registry.lookup("u") == "e2"


def test_unregister_matching_endpoint_removes_entry(registry):
    registry.register("u", "e1")
    assert registry.unregister("u", "e1") is True
    assert registry.lookup("u") is None
    assert "u" not in registry


def test_unregister_unknown_user_is_noop(registry):
    assert registry.unregister("ghost", "e") is False
    assert len(registry) == 0


def test_lookup_absent(registry):
    assert registry.lookup("nobody") is None


def test_rejects_blank_ids(registry):
    with pytest.raises(ValueError):
        registry.register("", "e")
    with pytest.raises(ValueError):
        registry.register("u", "")


def test_online_users_sorted(registry):
    registry.register("carol", "e3")
    registry.register("alice", "e1")
    registry.register("bob", "e2")
    assert registry.online_users() == ["alice", "bob", "carol"]


def test_concurrent_connect_disconnect_cycles_leave_no_stale_entries(registry):
    def cycle(worker: int) -> None:
        user = f"user-{worker % 8}"
        for i in range(500):
            endpoint = f"ep-{worker}-{i}"
            registry.register(user, endpoint)
            registry.unregister(user, endpoint)

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(cycle, range(32)))

    # the last register for a user is always followed by its own unregister
    assert len(registry) == 0


def test_concurrent_registers_end_with_one_entry_per_user(registry):
    def connect(worker: int) -> None:
        for i in range(200):
            registry.register(f"user-{i % 10}", f"ep-{worker}-{i}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(connect, range(8)))

    assert len(registry) == 10
    assert registry.online_users() == sorted(f"user-{i}" for i in range(10))
