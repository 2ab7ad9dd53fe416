"""Ephemeral storage for unsealed key material.

Some cryptsetup operations need two keys at once (an authorizing key and
a new key) and only one of them can travel over stdin. The other one is
written here:

- the directory is 0700 and lives on a tmpfs (``/run`` by default)
- each file is created 0600 with O_EXCL
- the file is overwritten and unlinked when the context exits, whether
  the operation succeeded, failed or was cancelled
- ``purge_stale_ephemeral`` removes anything left by a crash at startup
"""

import logging
import os
import secrets
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

PREFIX = "key-"


def _prepare_dir(directory: str) -> Path:
    path = Path(directory)
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(path, 0o700)
    return path


def _shred(path: Path) -> None:
    try:
        size = path.stat().st_size
        with open(path, "r+b") as f:
            f.write(b"\x00" * size)
            f.flush()
            os.fsync(f.fileno())
    except FileNotFoundError:
        return
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


@contextmanager
def ephemeral_key_file(directory: str, key_material: bytes) -> Iterator[str]:
    """Write key material to a short-lived owner-only file.

    Usage:
        with ephemeral_key_file(settings.ephemeral_dir, old_key) as path:
            run(["cryptsetup", "luksAddKey", "--key-file", path, ...])
    """
    base = _prepare_dir(directory)
    path = base / f"{PREFIX}{secrets.token_hex(8)}"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(key_material)
            f.flush()
            os.fsync(f.fileno())
        yield str(path)
    finally:
        _shred(path)


def purge_stale_ephemeral(directory: str) -> int:
    """Remove key files left behind by a crash. Returns the count removed."""
    base = Path(directory)
    if not base.exists():
        return 0
    removed = 0
    for path in base.glob(f"{PREFIX}*"):
        _shred(path)
        removed += 1
    if removed:
        logger.warning(f"Purged {removed} stale ephemeral key file(s) from {base}")
    return removed
