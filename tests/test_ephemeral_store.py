"""
Tests for the ephemeral OAuth stores.
"""
import threading

import pytest

from auth.ephemeral_store import (
    CODE_TTL_SECONDS,
    REGISTRATION_TTL_SECONDS,
    STATE_TTL_SECONDS,
    EphemeralStore,
    get_authorization_codes,
    get_client_registrations,
    get_pending_authorizations,
)


class TestTakeOnce:
    def test_value_is_returned_once(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        store.put("key", "value")

        assert store.take_once("key") == "value"
        assert store.take_once("key") is None

    def test_unknown_and_empty_keys(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        assert store.take_once("missing") is None
        assert store.take_once(None) is None
        assert store.take_once("") is None

    def test_expired_entry_is_not_returned_and_is_removed(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        store.put("key", "value")
        fake_clock.advance(60)

        assert store.take_once("key") is None
        assert "key" not in store

    def test_entry_is_usable_just_before_expiry(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        store.put("key", "value")
        fake_clock.advance(59.9)

        assert store.take_once("key") == "value"

    def test_per_entry_ttl_override(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        store.put("short", 1, ttl=5)
        store.put("long", 2)
        fake_clock.advance(10)

        assert store.take_once("short") is None
        assert store.take_once("long") == 2

    def test_concurrent_take_once_yields_single_winner(self):
        store = EphemeralStore("test", 60)
        store.put("key", "value")
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.take_once("key"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("value") == 1
        assert results.count(None) == 7


class TestSweep:
    def test_sweep_removes_only_expired(self, fake_clock):
        store = EphemeralStore("test", 60, clock=fake_clock)
        store.put("old", 1)
        fake_clock.advance(30)
        store.put("new", 2)
        fake_clock.advance(30)

        assert store.sweep_expired() == 1
        assert "old" not in store
        assert "new" in store
        assert len(store) == 1

    def test_put_rejects_empty_key(self):
        store = EphemeralStore("test", 60)
        with pytest.raises(ValueError):
            store.put("", "value")

    def test_negative_ttl_rejected(self):
        with pytest.raises(ValueError):
            EphemeralStore("test", -1)


def test_global_store_lifetimes():
    assert STATE_TTL_SECONDS == 600
    assert CODE_TTL_SECONDS == 600
    assert REGISTRATION_TTL_SECONDS == 86400
    assert get_pending_authorizations().ttl_seconds == STATE_TTL_SECONDS
    assert get_authorization_codes().ttl_seconds == CODE_TTL_SECONDS
    assert get_client_registrations().ttl_seconds == REGISTRATION_TTL_SECONDS
