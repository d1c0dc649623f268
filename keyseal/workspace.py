"""
Scoped working area for a single encrypt/decrypt operation.

All intermediate material (normalized keys, converted keys, the encoded
session key, decoded envelope blocks) is written below one private
directory that is removed when the operation ends, whatever the exit path.
"""

import logging
import os
import shutil
import signal
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

CLEANUP_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGHUP") if hasattr(signal, name)
)


class Workspace:
    def __init__(self, parent: Optional[str] = None, prefix: str = "keyseal-"):
        self.root = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
        os.chmod(self.root, 0o700)
        self._closed = False
        logger.debug("Workspace created at %s", self.root)

    def path(self, name: str) -> Path:
        if self._closed:
            raise RuntimeError("workspace already released")
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid workspace entry name: {name!r}")
        return self.root / name

    def write(self, name: str, data: bytes, secret: bool = False) -> Path:
        """
        Store a named buffer. Secret buffers are created exclusively with
        owner-only permissions.
        """
        target = self.path(name)
        if secret:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
        else:
            target.write_bytes(data)
        return target

    def read(self, name: str) -> bytes:
        return self.path(name).read_bytes()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        shutil.rmtree(self.root, ignore_errors=True)
        logger.debug("Workspace %s removed", self.root)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _raise_exit(signum, frame):
    logger.info("Received signal %s, cleaning up", signum)
    raise SystemExit(128 + signum)


@contextmanager
def cleanup_on_signals() -> Iterator[None]:
    """
    Turn termination signals into SystemExit while active so that enclosing
    ``with Workspace()`` blocks unwind and remove their files.
    """
    previous = {}
    for sig in CLEANUP_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _raise_exit)
        except ValueError:
            # Not on the main thread; handlers cannot be installed.
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
