"""
Atomic JSON document persistence for the ephemeral stores.

Every write is a full rewrite to a temporary file in the same directory
followed by ``os.replace``, so readers never observe a half-written file.
"""

import json
import logging
import os
import tempfile
from typing import Any, Optional

from presence.errors import StoreIOError

logger = logging.getLogger(__name__)


def read_json(path: str) -> Optional[Any]:
    """
    Load a JSON document.

    Returns None if the file does not exist. Raises StoreIOError if it
    exists but cannot be read or parsed.
    """
    if not os.path.exists(path):
        return None
    try:
        with open(path, 'r', encoding='utf-8') as fh:
            return json.load(fh)
    except (OSError, ValueError) as e:
        raise StoreIOError(f'Failed to read {path}: {e}') from e


def write_json_atomic(path: str, document: Any) -> None:
    """Write a JSON document atomically. Raises StoreIOError on failure."""
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f'.{os.path.basename(path)}.', suffix='.tmp', dir=directory
        )
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            json.dump(document, fh, indent=2)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                logger.debug(f'Could not remove temp file {tmp_path}')
        raise StoreIOError(f'Failed to write {path}: {e}') from e
