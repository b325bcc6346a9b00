import pytest

from tapquest_core.message_log import fold, location_tap_event, registered_event
from tapquest_core.storage import InMemoryStorage, SQLiteStorage, load_storage_provider


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStorage()
    else:
        s = SQLiteStorage(str(tmp_path / "nested" / "state.db"))
        yield s
        s.close()


def test_state_roundtrip(store, state):
    state, _, _ = fold(state, [
        registered_event(state.keys, "Ada"),
        location_tap_event(state.keys, "loc-1", "Fountain", "pub", "01000000", "sig"),
    ])
    state.message_cursor = 2

    assert store.load_state() is None
    store.save_state(state)
    got = store.load_state()

    assert got is not state
    assert got.auth_token == state.auth_token
    assert got.keys == state.keys
    assert got.profile == state.profile
    assert got.activity_log == state.activity_log
    assert got.location_signatures == state.location_signatures
    assert got.message_cursor == 2

    store.clear_state()
    assert store.load_state() is None


def test_save_overwrites_single_slot(store, state):
    store.save_state(state)
    state.message_cursor = 9
    store.save_state(state)
    assert store.load_state().message_cursor == 9


def test_quarantine_and_audit(store):
    assert not store.seen_msg("123")
    store.mark_msg("123")
    store.mark_msg("123")
    assert store.seen_msg("123")

    store.log_event("login", {"email": "ada@example.com"})
    store.log_event("sync_partial", {"rejected": [[4, "bad signature"]]})
    events = store.list_events()
    assert [e.event_type for e in events] == ["login", "sync_partial"]
    assert events[1].payload == {"rejected": [[4, "bad signature"]]}
    assert events[0].ts.endswith("Z")


def test_load_storage_provider(monkeypatch, tmp_path):
    monkeypatch.delenv("TAPQUEST_STORAGE_PROVIDER", raising=False)
    assert isinstance(load_storage_provider(), InMemoryStorage)

    monkeypatch.setenv("TAPQUEST_STORAGE_PROVIDER", "sqlite")
    monkeypatch.setenv("TAPQUEST_DB_PATH", str(tmp_path / "env.db"))
    s = load_storage_provider()
    assert isinstance(s, SQLiteStorage)
    s.close()

    with pytest.raises(ValueError):
        load_storage_provider({"provider": "redis"})
