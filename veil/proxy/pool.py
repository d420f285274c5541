"""
Outbound keep-alive connection pools.

A pool belongs to one rotation epoch. Once the registry rotates it out the pool
is marked retired: its idle connections are closed, and connections that were
checked out of it are closed on release instead of going back to any pool.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PooledConnection:
    """One outbound connection and the pool it was opened for."""
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    key: Hashable
    pool: "ConnectionPool"
    sni: Optional[str] = None
    profile: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    uses: int = 0

    @property
    def usable(self) -> bool:
        return not self.writer.is_closing() and not self.reader.at_eof()

    def close(self):
        if not self.writer.is_closing():
            self.writer.close()


class ConnectionPool:
    """Idle connections for one protocol, keyed by (ip, port, host)."""

    def __init__(self, protocol: str, epoch: int, max_idle_per_key: int = 8, idle_ttl: float = 30.0):
        self.protocol = protocol
        self.epoch = epoch
        self.max_idle_per_key = max_idle_per_key
        self.idle_ttl = idle_ttl
        self.retired = False
        self.created_at = time.time()
        self._idle: Dict[Hashable, List[PooledConnection]] = {}
        self._lock = threading.Lock()
        self.opened = 0
        self.reused = 0

    def adopt(self, reader, writer, key: Hashable, sni: Optional[str] = None, profile: Optional[str] = None) -> PooledConnection:
        """Wrap a freshly opened connection as belonging to this pool."""
        with self._lock:
            self.opened += 1
        return PooledConnection(reader, writer, key, self, sni=sni, profile=profile)

    def acquire(self, key: Hashable) -> Optional[PooledConnection]:
        """Pop a live idle connection for `key`, dropping stale ones on the way."""
        now = time.monotonic()
        stale = []
        found = None
        with self._lock:
            if self.retired:
                return None
            bucket = self._idle.get(key, [])
            while bucket:
                conn = bucket.pop()
                if conn.usable and now - conn.last_used < self.idle_ttl:
                    found = conn
                    self.reused += 1
                    break
                stale.append(conn)
            if not bucket:
                self._idle.pop(key, None)
        for conn in stale:
            conn.close()
        return found

    def release(self, conn: PooledConnection, reusable: bool = True):
        """Return a connection after use. Closed instead when retired, unusable or over capacity."""
        conn.uses += 1
        conn.last_used = time.monotonic()
        keep = False
        with self._lock:
            if reusable and not self.retired and conn.usable:
                bucket = self._idle.setdefault(conn.key, [])
                if len(bucket) < self.max_idle_per_key:
                    bucket.append(conn)
                    keep = True
        if not keep:
            conn.close()

    def retire(self) -> int:
        """Mark retired and close every idle connection. Returns how many were closed."""
        with self._lock:
            self.retired = True
            idle = [c for bucket in self._idle.values() for c in bucket]
            self._idle.clear()
        for conn in idle:
            conn.close()
        if idle:
            logger.debug(f"Closed {len(idle)} idle {self.protocol} connections from epoch {self.epoch}")
        return len(idle)

    def idle_count(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._idle.values())

    def get_metrics(self) -> Dict[str, object]:
        return {
            "protocol": self.protocol,
            "epoch": self.epoch,
            "retired": self.retired,
            "idle": self.idle_count(),
            "opened": self.opened,
            "reused": self.reused,
        }
