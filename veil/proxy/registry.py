"""
Session registry and pool rotation (circuit breaker).

The registry tracks every live relay session and owns the outbound connection
pools. The rotator replaces all pools at a jittered interval; the swap is a
single reference assignment so sessions either see the old mapping or the new
one, never a half-rotated state. Sessions are never severed by rotation.
"""

import asyncio
import logging
import random
import threading
import time
from typing import Dict, List, Optional, Sequence

from ..core.models import RegistryStats, Session, SessionMode, SessionState
from .pool import ConnectionPool

PROTOCOLS = ("http", "https")


class SessionRegistry:
    """Live sessions plus the current generation of connection pools."""

    def __init__(self, protocols: Sequence[str] = PROTOCOLS):
        self.logger = logging.getLogger(__name__)
        self.protocols = tuple(protocols)
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self.stats = RegistryStats()
        self.epoch = 0
        self._pools: Dict[str, ConnectionPool] = self._new_pools(self.epoch)

    def _new_pools(self, epoch: int) -> Dict[str, ConnectionPool]:
        return {p: ConnectionPool(p, epoch) for p in self.protocols}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def register(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.id] = session
            self.stats.total_sessions += 1
        return session

    def unregister(self, session: Session):
        """Drop a finished session and fold its counters into the totals."""
        with self._lock:
            if self._sessions.pop(session.id, None) is None:
                return
            self.stats.bytes_sent += session.bytes_sent
            self.stats.bytes_received += session.bytes_received
            if session.state == SessionState.FAILED:
                self.stats.failed_sessions += 1

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def snapshot(self) -> List[Dict[str, object]]:
        return [s.to_dict() for s in self.active()]

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def pool_for(self, protocol: str) -> ConnectionPool:
        """Current pool for a protocol."""
        pools = self._pools
        return pools[protocol]

    def rotate_pools(self) -> int:
        """Swap in a fresh generation of pools and retire the old one. Returns the new epoch."""
        with self._lock:
            self.epoch += 1
            old = self._pools
            self._pools = self._new_pools(self.epoch)
            self.stats.pool_rotations += 1
            self.stats.last_rotation = time.time()
            epoch = self.epoch
        closed = sum(pool.retire() for pool in old.values())
        self.logger.info(f"Connection pools rotated to epoch {epoch} ({closed} idle connections closed)")
        return epoch

    def get_stats(self) -> Dict[str, object]:
        with self._lock:
            sessions = list(self._sessions.values())
            stats = RegistryStats(**vars(self.stats))
            pools = self._pools
        by_mode = {m.value: 0 for m in SessionMode}
        for s in sessions:
            by_mode[s.mode.value] += 1
        return {
            "active": len(sessions),
            "by_mode": by_mode,
            "total": stats.total_sessions,
            "failed": stats.failed_sessions,
            "bytes_sent": stats.bytes_sent + sum(s.bytes_sent for s in sessions),
            "bytes_received": stats.bytes_received + sum(s.bytes_received for s in sessions),
            "pool_rotations": stats.pool_rotations,
            "last_rotation": stats.last_rotation,
            "epoch": self.epoch,
            "pools": {name: pool.get_metrics() for name, pool in pools.items()},
        }


class PoolRotator:
    """Rotates the registry's pools every interval, jittered by +/- jitter/2."""

    def __init__(
        self,
        registry: SessionRegistry,
        interval: float = 3600.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.registry = registry
        self.interval = interval
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    def next_delay(self) -> float:
        return self.interval * (1 + self._rng.uniform(-self.jitter / 2, self.jitter / 2))

    async def _run(self):
        while True:
            delay = self.next_delay()
            self.logger.debug(f"Next pool rotation in {delay:.1f}s")
            await asyncio.sleep(delay)
            self.registry.rotate_pools()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="pool-rotator")
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
