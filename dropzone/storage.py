"""
Received Payload Storage

Design Decision: Never Overwrite
================================

Payload names come from the remote peer and cannot be trusted:
- Only the final path component is kept ("../../etc/passwd" -> "passwd")
- An existing file is never replaced; the new one becomes "name (1).ext",
  "name (2).ext", ...
- Files are created exclusively ('xb'), so two payloads with the same name
  arriving together still end up in separate files
"""

import logging
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Dict, Union

import aiofiles
import aiofiles.os

from .transfer.digester import ReceivedFile

logger = logging.getLogger(__name__)

FALLBACK_NAME = 'received.bin'


def safe_name(name: str) -> str:
    """Strip directories (either separator style) from a peer-supplied name."""
    name = PureWindowsPath(PurePosixPath(name or '').name).name
    name = name.strip().lstrip('.')
    return name or FALLBACK_NAME


def candidate_path(output_dir: Path, name: str, attempt: int) -> Path:
    if attempt == 0:
        return output_dir / name
    path = Path(name)
    return output_dir / f"{path.stem} ({attempt}){path.suffix}"


async def save_received(output_dir: Union[str, Path],
                        received: Union[ReceivedFile, Dict[str, Any]]) -> Path:
    """
    Write a received payload into output_dir.

    Args:
        output_dir: Target directory (created if missing)
        received: ReceivedFile or a `file-received` event detail

    Returns:
        Path of the written file
    """
    if isinstance(received, dict):
        name, data = received.get('name'), received.get('data') or b''
    else:
        name, data = received.name, received.data

    output_dir = Path(output_dir)
    await aiofiles.os.makedirs(output_dir, exist_ok=True)

    name = safe_name(name)
    attempt = 0
    while True:
        path = candidate_path(output_dir, name, attempt)
        try:
            async with aiofiles.open(path, 'xb') as f:
                await f.write(data)
        except FileExistsError:
            attempt += 1
            continue
        break

    logger.info(f"Saved {len(data):,} bytes to {path}")
    return path
