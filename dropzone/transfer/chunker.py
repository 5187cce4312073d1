"""
Transfer Chunker

Design Decision: Chunk and Partition Size
=========================================

Options Considered:
| Chunk   | Pros                              | Cons                          |
|---------|-----------------------------------|-------------------------------|
| 16KB    | Fits every data channel stack     | Many messages per MB          |
| 64KB    | Below common SCTP message limits  | -                             |
| 256KB   | Fewer messages                    | Rejected by some peers        |

Decision: 64,000 byte chunks grouped into 1,000,000 byte partitions
- A data channel has no backpressure we can rely on from both ends, so the
  partition is the flow-control unit: the sender stops after each partition
  until the receiver answers `partition-received`
- 1MB in flight keeps the pipe busy on a LAN without unbounded buffering

Flow:
```
next_partition() -> chunk, chunk, ... -> on_partition_end(offset)
                 (wait for acknowledge(offset))
next_partition() -> ...
```
"""

import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import aiofiles

from ..exceptions import TransferError

CHUNK_SIZE = 64000
MAX_PARTITION_SIZE = 1000000

ChunkCallback = Callable[[bytes], Awaitable[None]]
PartitionCallback = Callable[[int], Awaitable[None]]


class PayloadSource:
    """Something the chunker can read byte ranges from."""

    name: str = ''
    mime: str = ''

    @property
    def size(self) -> int:
        raise NotImplementedError

    async def read(self, offset: int, length: int) -> bytes:
        raise NotImplementedError


class BytesPayload(PayloadSource):
    """In-memory payload."""

    def __init__(self, data: bytes, name: str = 'payload.bin',
                 mime: str = 'application/octet-stream'):
        self._data = bytes(data)
        self.name = name
        self.mime = mime

    @property
    def size(self) -> int:
        return len(self._data)

    async def read(self, offset: int, length: int) -> bytes:
        return self._data[offset:offset + length]


class FilePayload(PayloadSource):
    """Payload read lazily from a file on disk."""

    def __init__(self, path: Union[str, Path], mime: Optional[str] = None):
        self.path = Path(path)
        self.name = self.path.name
        self.mime = mime or mimetypes.guess_type(self.name)[0] or 'application/octet-stream'
        self._size = os.path.getsize(self.path)

    @property
    def size(self) -> int:
        return self._size

    async def read(self, offset: int, length: int) -> bytes:
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(offset)
            return await f.read(length)


class TransferChunker:
    """
    Splits a payload into chunks, one partition at a time.

    The chunker refuses to start a partition while the previous one is
    unacknowledged, so at most one partition is ever in flight.
    """

    def __init__(self, payload: PayloadSource, on_chunk: ChunkCallback,
                 on_partition_end: PartitionCallback,
                 chunk_size: int = CHUNK_SIZE,
                 max_partition_size: int = MAX_PARTITION_SIZE):
        self.payload = payload
        self.chunk_size = chunk_size
        self.max_partition_size = max_partition_size
        self._on_chunk = on_chunk
        self._on_partition_end = on_partition_end

        self.offset = 0
        self.partition_size = 0
        self.partitions_sent = 0
        self._awaiting_ack: Optional[int] = None

    @property
    def size(self) -> int:
        return self.payload.size

    @property
    def awaiting_ack(self) -> bool:
        return self._awaiting_ack is not None

    def is_file_end(self) -> bool:
        return self.offset >= self.size

    def is_partition_end(self) -> bool:
        return self.partition_size >= self.max_partition_size

    @property
    def progress(self) -> float:
        if self.size == 0:
            return 1.0
        return min(self.offset / self.size, 1.0)

    async def next_partition(self):
        """Send chunks until the partition is full or the payload ends."""
        if self.awaiting_ack:
            raise TransferError(
                f"Partition ending at {self._awaiting_ack} not acknowledged yet"
            )

        self.partition_size = 0
        while not self.is_file_end():
            chunk = await self.payload.read(self.offset, self.chunk_size)
            if not chunk:
                raise TransferError(
                    f"{self.payload.name} ended at {self.offset} of {self.size} bytes"
                )

            self.offset += len(chunk)
            self.partition_size += len(chunk)
            await self._on_chunk(chunk)

            if self.is_partition_end():
                break
            # Let inbound messages through between chunks
            await asyncio.sleep(0)

        self._awaiting_ack = self.offset
        self.partitions_sent += 1
        await self._on_partition_end(self.offset)

    def acknowledge(self, offset: Optional[int] = None):
        """Record the receiver's `partition-received` for the open partition."""
        if self._awaiting_ack is None:
            raise TransferError("No partition awaiting acknowledgment")
        if offset is not None and offset != self._awaiting_ack:
            raise TransferError(
                f"Acknowledged offset {offset}, expected {self._awaiting_ack}"
            )
        self._awaiting_ack = None
