"""
Transfer Digester

Reassembles an inbound payload from chunks in arrival order. The header
declares the exact size; once that many bytes have arrived the payload is
assembled and the completion callback fires, exactly once.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

DEFAULT_MIME = 'application/octet-stream'


@dataclass
class TransferHeader:
    """`header` message announcing a payload."""
    name: str
    mime: str
    size: Optional[int]

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> 'TransferHeader':
        size = message.get('size')
        return cls(
            name=str(message.get('name') or 'unnamed'),
            mime=message.get('mime') or DEFAULT_MIME,
            size=int(size) if size is not None else None,
        )

    def to_message(self) -> Dict[str, Any]:
        return {'type': 'header', 'name': self.name, 'mime': self.mime, 'size': self.size}


@dataclass
class ReceivedFile:
    """A fully reassembled payload."""
    name: str
    mime: str
    size: int
    data: bytes
    sender: Optional[str] = None

    def to_event(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'mime': self.mime,
            'size': self.size,
            'data': self.data,
            'sender': self.sender,
        }


CompleteCallback = Callable[[ReceivedFile], None]


class TransferDigester:
    """Digest state for one inbound payload."""

    def __init__(self, header: TransferHeader, on_complete: CompleteCallback,
                 sender: Optional[str] = None):
        self.header = header
        self.sender = sender
        self.expected_size = header.size
        self.bytes_received = 0
        self._buffer: List[bytes] = []
        self._on_complete = on_complete
        self._completed = False

    @property
    def progress(self) -> float:
        if not self.expected_size:
            return 1.0
        return min(self.bytes_received / self.expected_size, 1.0)

    @property
    def completed(self) -> bool:
        return self._completed

    def unchunk(self, chunk: bytes):
        """Append one chunk; completes the payload when the size is reached."""
        if not chunk or self._completed:
            return
        self._buffer.append(bytes(chunk))
        self.bytes_received += len(chunk)
        self.check_complete()

    def check_complete(self) -> bool:
        """Fire completion if all declared bytes are in. Returns completion state."""
        if self._completed:
            return True
        if self.bytes_received < (self.expected_size or 0):
            return False

        self._completed = True
        data = b''.join(self._buffer)
        self._buffer = []
        self._on_complete(ReceivedFile(
            name=self.header.name,
            mime=self.header.mime,
            size=len(data) if self.expected_size is None else self.expected_size,
            data=data,
            sender=self.sender,
        ))
        return True
