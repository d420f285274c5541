"""Tests for the session registry, connection pools and pool rotation."""

import asyncio
import random

import pytest

from veil.core.models import Session, SessionMode, TunnelState
from veil.proxy.pool import ConnectionPool
from veil.proxy.registry import PoolRotator, SessionRegistry


class FakeReader:
    def __init__(self):
        self.eof = False

    def at_eof(self):
        return self.eof


class FakeWriter:
    def __init__(self):
        self.closed = False

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


def open_conn(pool, key=("192.0.2.1", 80, "a.test")):
    return pool.adopt(FakeReader(), FakeWriter(), key)


class TestConnectionPool:

    def test_release_then_acquire_reuses(self):
        pool = ConnectionPool("http", 0)
        conn = open_conn(pool)
        pool.release(conn)
        assert pool.idle_count() == 1
        assert pool.acquire(conn.key) is conn
        assert conn.uses == 1
        assert pool.get_metrics()["reused"] == 1

    def test_keys_are_separate(self):
        pool = ConnectionPool("http", 0)
        pool.release(open_conn(pool, ("192.0.2.1", 80, "a.test")))
        assert pool.acquire(("192.0.2.1", 80, "b.test")) is None

    def test_unreusable_release_closes(self):
        pool = ConnectionPool("http", 0)
        conn = open_conn(pool)
        pool.release(conn, reusable=False)
        assert conn.writer.closed
        assert pool.idle_count() == 0

    def test_dead_connections_skipped(self):
        pool = ConnectionPool("http", 0)
        conn = open_conn(pool)
        pool.release(conn)
        conn.reader.eof = True
        assert pool.acquire(conn.key) is None
        assert conn.writer.closed

    def test_expired_connections_skipped(self):
        pool = ConnectionPool("http", 0, idle_ttl=0.0)
        conn = open_conn(pool)
        pool.release(conn)
        assert pool.acquire(conn.key) is None

    def test_capacity(self):
        pool = ConnectionPool("http", 0, max_idle_per_key=2)
        conns = [open_conn(pool) for _ in range(3)]
        for conn in conns:
            pool.release(conn)
        assert pool.idle_count() == 2
        assert conns[2].writer.closed

    def test_retire_closes_idle_and_later_releases(self):
        pool = ConnectionPool("http", 0)
        idle = open_conn(pool)
        busy = open_conn(pool)
        pool.release(idle)
        assert pool.retire() == 1
        assert idle.writer.closed
        assert pool.acquire(idle.key) is None
        pool.release(busy)
        assert busy.writer.closed
        assert pool.idle_count() == 0


class TestSessionRegistry:

    def test_register_and_stats(self):
        registry = SessionRegistry()
        ok = registry.register(Session(mode=SessionMode.HTTP_RELAY))
        bad = registry.register(Session(mode=SessionMode.CONNECT_TUNNEL))
        ok.bytes_sent, ok.bytes_received = 100, 2000
        stats = registry.get_stats()
        assert stats["active"] == 2
        assert stats["by_mode"]["connect_tunnel"] == 1
        assert stats["bytes_received"] == 2000

        bad.fail("UpstreamConnectFailure")
        registry.unregister(ok)
        registry.unregister(bad)
        registry.unregister(bad)
        stats = registry.get_stats()
        assert stats["active"] == 0
        assert stats["total"] == 2
        assert stats["failed"] == 1
        assert stats["bytes_sent"] == 100
        assert len(registry) == 0

    def test_snapshot(self):
        registry = SessionRegistry()
        session = registry.register(Session(mode=SessionMode.WS_TUNNEL))
        assert registry.snapshot()[0]["id"] == session.id
        assert registry.get(session.id) is session

    def test_rotation_swaps_and_retires(self):
        registry = SessionRegistry()
        old_http = registry.pool_for("http")
        conn = open_conn(old_http)
        old_http.release(conn)

        epoch = registry.rotate_pools()
        assert epoch == 1
        new_http = registry.pool_for("http")
        assert new_http is not old_http
        assert new_http.epoch == 1
        assert old_http.retired
        assert conn.writer.closed
        assert new_http.acquire(conn.key) is None
        stats = registry.get_stats()
        assert stats["pool_rotations"] == 1
        assert stats["last_rotation"] is not None

    def test_rotation_leaves_sessions_alone(self):
        registry = SessionRegistry()
        session = registry.register(Session(mode=SessionMode.CONNECT_TUNNEL))
        session.advance(TunnelState.CONNECTING)
        session.advance(TunnelState.ESTABLISHED)
        checked_out = open_conn(registry.pool_for("https"))
        registry.rotate_pools()
        assert session.tunnel_state == TunnelState.ESTABLISHED
        assert registry.get(session.id) is session
        assert not checked_out.writer.closed
        checked_out.pool.release(checked_out)
        assert checked_out.writer.closed


class TestPoolRotator:

    def test_delay_within_jitter_band(self):
        registry = SessionRegistry()
        rotator = PoolRotator(registry, interval=3600, jitter=0.2, rng=random.Random(1))
        for _ in range(500):
            assert 3240 <= rotator.next_delay() <= 3960

    def test_no_jitter(self):
        rotator = PoolRotator(SessionRegistry(), interval=10, jitter=0.0)
        assert rotator.next_delay() == 10

    @pytest.mark.asyncio
    async def test_rotates_periodically(self):
        registry = SessionRegistry()
        rotator = PoolRotator(registry, interval=0.02, jitter=0.2, rng=random.Random(1))
        rotator.start()
        try:
            await asyncio.sleep(0.2)
        finally:
            await rotator.stop()
        rotations = registry.get_stats()["pool_rotations"]
        assert rotations >= 2
        await asyncio.sleep(0.05)
        assert registry.get_stats()["pool_rotations"] == rotations
