"""
Dropzone - LAN peer file and text drop

Signaling relay (dropzone.signaling, dropzone.api) plus an asyncio client
node (dropzone.node) that links to peers directly or through the relay.
"""

__version__ = '0.1.0'
