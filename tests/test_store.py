import threading

import pytest

from miotywatch.config import DEFAULT_PINNED_ID
from miotywatch.models import RemoteConfig


# =========================== test ============================================


def test_log_cap_keeps_newest_first(store):
    for i in range(101):
        store.add_log("INFO", f"m{i}")

    logs = store.get_logs(None)
    assert len(logs) == 100
    assert logs[0].message == "m100"
    assert logs[-1].message == "m1"


def test_default_log_limit_is_fifty(store):
    for i in range(60):
        store.add_log("DEBUG", f"m{i}")
    assert len(store.get_logs()) == 50
    assert [e.message for e in store.get_logs(3)] == ["m59", "m58", "m57"]


def test_unknown_log_level_is_rejected(store):
    with pytest.raises(ValueError):
        store.add_log("TRACE", "nope")


def test_clear_logs(store):
    store.add_log("CONN", "connected", "connection")
    store.clear_logs()
    assert store.get_logs() == []


def test_set_config_pins_unique_id(store):
    stored = store.set_config(RemoteConfig(unique_base_station_id="AA-BB", profile="US1"))
    assert stored.unique_base_station_id == DEFAULT_PINNED_ID
    assert stored.profile == "US1"
    assert stored.updated_at is not None


def test_update_config_pins_unique_id(store):
    stored = store.update_config(unique_base_station_id="AA-BB", base_station_name="Roof")
    assert stored.unique_base_station_id == DEFAULT_PINNED_ID
    assert stored.base_station_name == "Roof"
    assert store.get_config() is stored


def test_readers_never_see_mixed_config(store):
    a = RemoteConfig(base_station_name="a", profile="A")
    b = RemoteConfig(base_station_name="b", profile="B")
    allowed = {("mioty BS", "EU1"), ("a", "A"), ("b", "B")}
    seen = set()
    stop = threading.Event()

    def writer(config):
        while not stop.is_set():
            store.set_config(config)

    def reader():
        for _ in range(5000):
            config = store.get_config()
            seen.add((config.base_station_name, config.profile))

    threads = [threading.Thread(target=writer, args=(c,)) for c in (a, b)]
    for t in threads:
        t.start()
    try:
        reader()
    finally:
        stop.set()
        for t in threads:
            t.join()

    assert seen <= allowed


def test_snapshot_contains_every_record(store):
    store.add_log("INFO", "hello")
    snap = store.snapshot()
    assert set(snap) == {"connection", "config", "status", "system", "logs"}
    assert snap["config"]["unique_base_station_id"] == DEFAULT_PINNED_ID
    assert snap["logs"][0]["message"] == "hello"
    assert snap["system"]["cli_version"] == "test"


def test_overlapping_status_writes_are_whole(store):
    running = {"status": "running", "service_active": True, "uptime": "1 min"}
    stopped = {"status": "stopped", "service_active": False, "uptime": "unknown"}
    stop = threading.Event()
    seen = set()

    def writer(changes):
        while not stop.is_set():
            store.update_status(**changes)

    threads = [threading.Thread(target=writer, args=(c,)) for c in (running, stopped)]
    for t in threads:
        t.start()
    try:
        for _ in range(5000):
            s = store.get_status()
            seen.add((s.status, s.service_active, s.uptime))
    finally:
        stop.set()
        for t in threads:
            t.join()

    assert seen <= {("stopped", False, "unknown"), ("running", True, "1 min")}
    store.update_status(**running)
    assert store.get_status().status == "running"
