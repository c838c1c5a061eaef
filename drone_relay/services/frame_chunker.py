"""
Transport-stream frame chunker.

Repackages the transcoder's arbitrarily sized output blocks into fixed-size
chunks made of whole 188-byte MPEG-TS packets, so no network message ever
carries a partial packet.
"""

import logging
from typing import Awaitable, Callable, List

from drone_relay.config import STREAMING_CONFIG

logger = logging.getLogger(__name__)

ChunkSink = Callable[[bytes], Awaitable[None]]


class FrameChunker:
    """
    Push-driven byte accumulator emitting fixed-size chunks.

    No timers, no I/O: callers push blocks in and receive immutable chunks out.
    """

    def __init__(self, packet_size: int = STREAMING_CONFIG["ts_packet_size"],
                 packets_per_chunk: int = STREAMING_CONFIG["packets_per_chunk"]):
        if packet_size <= 0 or packets_per_chunk <= 0:
            raise ValueError("packet_size and packets_per_chunk must be positive")
        self.packet_size = packet_size
        self.chunk_size = packet_size * packets_per_chunk
        self._buffer = bytearray()
        self.chunks_emitted = 0
        self.resets = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet emitted."""
        return len(self._buffer)

    def remainder(self) -> bytes:
        return bytes(self._buffer)

    def reset(self) -> None:
        """Drop any buffered bytes (new transcoder process or recovery)."""
        self._buffer.clear()

    def feed(self, block: bytes) -> List[bytes]:
        """Append a block and return every whole chunk now available."""
        if block:
            self._buffer.extend(block)

        chunks: List[bytes] = []
        while len(self._buffer) >= self.chunk_size:
            chunks.append(bytes(self._buffer[:self.chunk_size]))
            del self._buffer[:self.chunk_size]
        self.chunks_emitted += len(chunks)
        return chunks

    async def push(self, block: bytes, sink: ChunkSink) -> int:
        """
        Feed a block and hand each resulting chunk to ``sink`` in order.

        A failure anywhere in chunk processing resets the accumulation buffer
        instead of propagating.

        Returns:
            Number of chunks delivered to the sink
        """
        delivered = 0
        try:
            for chunk in self.feed(block):
                await sink(chunk)
                delivered += 1
        except Exception as e:
            self.resets += 1
            logger.error("Chunker | event=buffer_reset | pending=%s | error=%s", len(self._buffer), e)
            self.reset()
        return delivered
