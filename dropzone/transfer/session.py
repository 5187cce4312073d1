"""
Transfer Session

The payload protocol between two peers, spoken over any Transport.

Sender                                   Receiver
------                                   --------
header {name, mime, size}         ->     new TransferDigester
chunk, chunk, ...                 ->     unchunk, progress (every >= 1%)
partition {offset}                ->
                                  <-     partition-received {offset}
chunk, chunk, ...                 ->     ...
                                  <-     transfer-complete
(next queued payload)

Text messages are `text {text}` with the text base64-encoded as UTF-8.

One payload at a time per destination: a busy flag plus a FIFO queue.
If the transport closes mid-transfer the payload is dropped; there is no
resume.
"""

import asyncio
import base64
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from ..events import EventBus
from ..exceptions import TransferError
from ..peer.transport import Message, Transport
from .chunker import CHUNK_SIZE, MAX_PARTITION_SIZE, PayloadSource, TransferChunker
from .digester import ReceivedFile, TransferDigester, TransferHeader

logger = logging.getLogger(__name__)

# Minimum progress step before the receiver reports progress back
PROGRESS_REPORT_STEP = 0.01


def encode_text(text: str) -> str:
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


def decode_text(encoded: str) -> str:
    return base64.b64decode(encoded).decode('utf-8')


class TransferSession:
    """
    Payload protocol endpoint for one remote peer.

    Fires on the event bus:
    - file-progress  {sender | recipient, progress}
    - file-received  {name, mime, size, data, sender}
    - text-received  {text, sender}
    - notify-user    {message}
    """

    def __init__(self, peer_id: str, events: EventBus,
                 chunk_size: int = CHUNK_SIZE,
                 max_partition_size: int = MAX_PARTITION_SIZE):
        self.peer_id = peer_id
        self.events = events
        self.chunk_size = chunk_size
        self.max_partition_size = max_partition_size
        self.transport: Optional[Transport] = None

        # Outbound
        self._queue: Deque[PayloadSource] = deque()
        self._busy = False
        self._chunker: Optional[TransferChunker] = None
        self._partition_task: Optional[asyncio.Task] = None
        self._pending_text: List[str] = []
        self._tasks = set()

        # Inbound
        self._digester: Optional[TransferDigester] = None
        self._last_progress = 0.0

        # Statistics
        self.files_sent = 0
        self.files_received = 0
        self.bytes_sent = 0

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def pending_text(self) -> int:
        return len(self._pending_text)

    def attach(self, transport: Transport):
        """Bind to a transport and start using it once it opens."""
        self.transport = transport
        transport.on_message(self.handle_message)
        transport.on_open(self._on_transport_open)
        transport.on_close(self._on_transport_closed)
        if transport.is_open:
            self._on_transport_open()

    async def send_json(self, message: Dict[str, Any]):
        if self.transport is None:
            return
        await self.transport.send(json.dumps(message))

    # === Sending ===

    def send_files(self, payloads: Iterable[PayloadSource]):
        """Queue payloads; they are sent one after another."""
        self._queue.extend(payloads)
        if self._busy:
            return
        self._dequeue()

    def send_text(self, text: str):
        if self.transport is None or not self.transport.is_open:
            self._pending_text.append(text)
            return
        self._spawn(self.send_json({'type': 'text', 'text': encode_text(text)}))

    def _dequeue(self):
        if not self._queue or self._busy:
            return
        if self.transport is None or not self.transport.is_open:
            return
        self._busy = True
        payload = self._queue.popleft()
        self._partition_task = self._spawn(self._send_file(payload))

    async def _send_file(self, payload: PayloadSource):
        header = TransferHeader(name=payload.name, mime=payload.mime, size=payload.size)
        logger.info(f"Sending {header.name} ({header.size:,} bytes) to {self.peer_id}")
        await self.send_json(header.to_message())

        self._chunker = TransferChunker(
            payload,
            on_chunk=self._send_chunk,
            on_partition_end=self._on_partition_end,
            chunk_size=self.chunk_size,
            max_partition_size=self.max_partition_size,
        )
        await self._send_partition()

    async def _send_partition(self):
        chunker = self._chunker
        if chunker is None:
            return
        try:
            await chunker.next_partition()
        except TransferError as e:
            logger.error(f"Transfer to {self.peer_id} failed: {e}")
            self._abort(str(e))

    async def _send_chunk(self, chunk: bytes):
        self.bytes_sent += len(chunk)
        await self.transport.send(chunk)

    async def _on_partition_end(self, offset: int):
        await self.send_json({'type': 'partition', 'offset': offset})

    def _on_partition_received(self, message: Dict[str, Any]):
        if self._chunker is None:
            return
        try:
            self._chunker.acknowledge(message.get('offset'))
        except TransferError as e:
            logger.warning(f"Unexpected partition-received from {self.peer_id}: {e}")
            return
        if self._chunker.is_file_end():
            return
        self._partition_task = self._spawn(self._send_partition())

    def _on_transfer_completed(self):
        if not self._busy:
            logger.warning(f"transfer-complete from {self.peer_id} without a running transfer, ignored")
            return
        self.events.fire('file-progress', {'recipient': self.peer_id, 'progress': 1.0})
        if self._chunker is not None:
            logger.info(f"Transfer of {self._chunker.payload.name} to {self.peer_id} complete")
        self._chunker = None
        self._partition_task = None
        self._busy = False
        self.files_sent += 1
        self.events.fire('notify-user', {'message': 'File transfer completed'})
        self._dequeue()

    # === Receiving ===

    async def handle_message(self, message: Message):
        """Entry point for everything the transport delivers."""
        if isinstance(message, (bytes, bytearray, memoryview)):
            await self._on_chunk_received(bytes(message))
            return

        if isinstance(message, str):
            try:
                message = json.loads(message)
            except ValueError:
                logger.error(f"Invalid JSON from {self.peer_id}: {message[:80]!r}")
                return

        if not isinstance(message, dict):
            logger.error(f"Unexpected message from {self.peer_id}: {message!r}")
            return

        msg_type = message.get('type')
        if msg_type == 'header':
            await self._on_file_header(message)
        elif msg_type == 'partition':
            await self.send_json({'type': 'partition-received', 'offset': message.get('offset')})
        elif msg_type == 'partition-received':
            self._on_partition_received(message)
        elif msg_type == 'progress':
            self.events.fire('file-progress', {
                'recipient': self.peer_id,
                'progress': message.get('progress', 0),
            })
        elif msg_type == 'transfer-complete':
            self._on_transfer_completed()
        elif msg_type == 'text':
            self._on_text_received(message)
        else:
            logger.warning(f"Unknown payload message {msg_type!r} from {self.peer_id}")

    async def _on_file_header(self, message: Dict[str, Any]):
        try:
            header = TransferHeader.from_message(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Bad header from {self.peer_id}: {e}")
            return

        if self._digester is not None and not self._digester.completed:
            logger.warning(f"{self._digester.header.name} from {self.peer_id} replaced before completion")

        logger.info(f"Receiving {header.name} ({header.size} bytes) from {self.peer_id}")
        self._last_progress = 0.0
        self._digester = TransferDigester(header, self._on_file_received, sender=self.peer_id)
        if self._digester.check_complete():
            await self.send_json({'type': 'transfer-complete'})

    async def _on_chunk_received(self, chunk: bytes):
        if not chunk:
            return
        digester = self._digester
        if digester is None or digester.completed:
            logger.warning(f"Chunk from {self.peer_id} without an open transfer, dropped")
            return

        digester.unchunk(chunk)
        progress = digester.progress
        self.events.fire('file-progress', {'sender': self.peer_id, 'progress': progress})

        if digester.completed:
            await self.send_json({'type': 'transfer-complete'})
            return

        if progress - self._last_progress < PROGRESS_REPORT_STEP:
            return
        self._last_progress = progress
        await self.send_json({'type': 'progress', 'progress': progress})

    def _on_file_received(self, received: ReceivedFile):
        self.files_received += 1
        logger.info(f"Received {received.name} ({received.size:,} bytes) from {self.peer_id}")
        self.events.fire('file-received', received.to_event())

    def _on_text_received(self, message: Dict[str, Any]):
        try:
            text = decode_text(message.get('text') or '')
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Undecodable text from {self.peer_id}: {e}")
            return
        self.events.fire('text-received', {'text': text, 'sender': self.peer_id})

    # === Transport state ===

    def _on_transport_open(self):
        pending, self._pending_text = self._pending_text, []
        for text in pending:
            self.send_text(text)
        self._dequeue()

    def _on_transport_closed(self):
        if self._busy:
            self._abort('Connection lost')
        if self._digester is not None and not self._digester.completed:
            logger.warning(f"Incoming {self._digester.header.name} from {self.peer_id} aborted")
            self._digester = None

    def _abort(self, reason: str):
        task = self._partition_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        name = self._chunker.payload.name if self._chunker else 'transfer'
        logger.warning(f"Transfer of {name} to {self.peer_id} aborted: {reason}")
        self._chunker = None
        self._partition_task = None
        self._busy = False
        self.events.fire('notify-user', {'message': f'Transfer of {name} aborted: {reason}'})

    async def close(self):
        """Drop queued payloads and stop any running transfer."""
        self._queue.clear()
        self._pending_text.clear()
        if self._busy:
            self._abort('Peer closed')
        self._digester = None

    # === Helpers ===

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Transfer task for {self.peer_id} failed: {error}", exc_info=error)

    def get_stats(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'busy': self._busy,
            'queued': len(self._queue),
            'files_sent': self.files_sent,
            'files_received': self.files_received,
            'bytes_sent': self.bytes_sent,
        }
