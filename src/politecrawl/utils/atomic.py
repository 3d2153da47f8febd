"""
Atomic file writing utilities.

Content is written to a temporary file in the target directory, flushed to
disk and then moved into place with ``os.replace`` so readers never observe a
partially written file.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_bytes(target_path: Union[str, Path], data: bytes) -> Path:
    """
    Atomically write ``data`` to ``target_path``.

    Raises:
        OSError: If the temporary file cannot be written or moved into place
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=target_path.parent, prefix=f".{target_path.name}.", suffix=".tmp", delete=False
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(data)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        os.replace(str(temp_file_path), str(target_path))
        logger.debug("Atomic write completed", target=str(target_path), size=len(data))
        return target_path

    except OSError:
        if temp_file_path is not None and temp_file_path.exists():
            temp_file_path.unlink(missing_ok=True)
            logger.debug("Cleaned up temporary file", temp_file=str(temp_file_path))
        raise


def atomic_write_text(target_path: Union[str, Path], content: str, encoding: str = "utf-8") -> Path:
    """Atomically write text content. See ``atomic_write_bytes``."""
    return atomic_write_bytes(target_path, content.encode(encoding))
