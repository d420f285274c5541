"""
Byte fragmentation and timing jitter for relayed streams.

Outbound writes are split into randomly sized chunks and written with a random
pause between consecutive chunks, so record and packet sizes no longer mirror
the application payload. The sender is a coroutine owned by the session's
relay task: cancelling the session cancels any pending chunks.
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..core.exceptions import TransportClosed
from ..core.models import ObfuscationConfig

logger = logging.getLogger(__name__)


def fragment(
    buffer: bytes,
    min_size: int,
    max_size: int,
    rng: Optional[random.Random] = None,
) -> List[bytes]:
    """
    Split `buffer` into chunks whose sizes are drawn uniformly from [min_size, max_size].

    The final chunk takes whatever remains and may be shorter than min_size.
    Concatenating the result always reproduces `buffer`; empty input gives [].
    """
    if min_size < 1 or max_size < min_size:
        raise ValueError(f"invalid fragment bounds {min_size}-{max_size}")
    rng = rng or random.Random()
    data = bytes(buffer)
    chunks = []
    offset = 0
    while offset < len(data):
        size = rng.randint(min_size, max_size)
        size = min(size, len(data) - offset)
        chunks.append(data[offset:offset + size])
        offset += size
    return chunks


async def schedule_send(
    writer: asyncio.StreamWriter,
    chunks: Sequence[bytes],
    jitter_min_ms: float,
    jitter_max_ms: float,
    rng: Optional[random.Random] = None,
    is_open: Optional[Callable[[], bool]] = None,
) -> int:
    """
    Write chunks in order, draining after each and sleeping a random jitter between them.

    Raises TransportClosed if the writer (or the owning session, via `is_open`)
    stops accepting writes mid-sequence; the remaining chunks are dropped.
    Returns the number of bytes written.
    """
    rng = rng or random.Random()
    written = 0
    last = len(chunks) - 1
    for index, chunk in enumerate(chunks):
        if writer.is_closing() or (is_open is not None and not is_open()):
            raise TransportClosed(
                "transport became unwritable during shaped send",
                details={"sent_chunks": index, "pending_chunks": len(chunks) - index},
            )
        try:
            writer.write(chunk)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportClosed(
                "write failed during shaped send",
                details={"sent_chunks": index, "pending_chunks": len(chunks) - index},
                cause=e,
            ) from e
        written += len(chunk)
        if index < last and jitter_max_ms > 0:
            await asyncio.sleep(rng.uniform(jitter_min_ms, jitter_max_ms) / 1000.0)
    return written


@dataclass
class ShaperMetrics:
    """Counters for shaped writes."""
    writes: int = 0
    chunks: int = 0
    bytes: int = 0
    aborted: int = 0


class StreamShaper:
    """Applies the configured fragmentation and jitter to one write at a time."""

    def __init__(self, config: ObfuscationConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()
        self.metrics = ShaperMetrics()
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self.config.enabled and (self.config.fragment_enabled or self.config.jitter_enabled)

    def plan(self, data: bytes) -> List[bytes]:
        """Chunks that `send` would write for `data`."""
        if not data:
            return []
        if self.config.enabled and self.config.fragment_enabled:
            return fragment(data, self.config.min_fragment, self.config.max_fragment, self._rng)
        return [bytes(data)]

    async def send(
        self,
        writer: asyncio.StreamWriter,
        data: bytes,
        is_open: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Write `data` to `writer`, shaped when obfuscation is active."""
        if not data:
            return 0
        if not self.active:
            if writer.is_closing() or (is_open is not None and not is_open()):
                raise TransportClosed("transport is not writable")
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportClosed("write failed", cause=e) from e
            return len(data)

        chunks = self.plan(data)
        if self.config.jitter_enabled:
            jitter_min, jitter_max = self.config.min_jitter_ms, self.config.max_jitter_ms
        else:
            jitter_min = jitter_max = 0.0
        try:
            written = await schedule_send(writer, chunks, jitter_min, jitter_max, self._rng, is_open)
        except TransportClosed:
            with self._lock:
                self.metrics.aborted += 1
            raise
        with self._lock:
            self.metrics.writes += 1
            self.metrics.chunks += len(chunks)
            self.metrics.bytes += written
        return written

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "writes": self.metrics.writes,
                "chunks": self.metrics.chunks,
                "bytes": self.metrics.bytes,
                "aborted": self.metrics.aborted,
            }
