"""
Transfer Module - Payload Protocol

Splits payloads into chunks and partitions, reassembles them on the other
side and runs the header/partition/ack exchange over a peer transport.
"""

from .chunker import CHUNK_SIZE, MAX_PARTITION_SIZE, BytesPayload, FilePayload, PayloadSource, TransferChunker
from .digester import ReceivedFile, TransferDigester, TransferHeader

__all__ = [
    'CHUNK_SIZE',
    'MAX_PARTITION_SIZE',
    'BytesPayload',
    'FilePayload',
    'PayloadSource',
    'TransferChunker',
    'ReceivedFile',
    'TransferDigester',
    'TransferHeader',
]
