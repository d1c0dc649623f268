import logging
import os
from typing import Optional

from . import crypto
from .workspace import Workspace

logger = logging.getLogger(__name__)

SESSION_KEY_LEN = 32
SESSION_KEY_FILE = "session.key"


class SessionKey:
    """
    Single-use symmetric key. ``raw`` is wrapped for recipients while
    ``encoded`` (base64 of raw) is the passphrase of the payload cipher.
    """

    def __init__(self, raw: bytes):
        if len(raw) != SESSION_KEY_LEN:
            raise ValueError(f"session key must be {SESSION_KEY_LEN} bytes, got {len(raw)}")
        self._raw = bytearray(raw)
        self._wiped = False

    @property
    def raw(self) -> bytes:
        self._check()
        return bytes(self._raw)

    @property
    def encoded(self) -> bytes:
        self._check()
        return crypto.b64e(bytes(self._raw)).encode("ascii")

    def _check(self) -> None:
        if self._wiped:
            raise RuntimeError("session key has been wiped")

    def wipe(self) -> None:
        for i in range(len(self._raw)):
            self._raw[i] = 0
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __repr__(self) -> str:
        return "SessionKey(<redacted>)"


class SessionKeyManager:
    """Generates the one session key of an encrypt operation and owns it until close."""

    def __init__(self, workspace: Workspace):
        self.workspace = workspace
        self._key: Optional[SessionKey] = None

    def generate(self) -> SessionKey:
        if self._key is not None:
            raise RuntimeError("a session key was already generated for this operation")
        key = SessionKey(os.urandom(SESSION_KEY_LEN))
        self.workspace.write(SESSION_KEY_FILE, key.encoded, secret=True)
        self._key = key
        logger.debug("Session key generated")
        return key

    def close(self) -> None:
        if self._key is not None:
            self._key.wipe()
        if not self.workspace.closed:
            path = self.workspace.path(SESSION_KEY_FILE)
            if path.exists():
                path.write_bytes(b"\0" * path.stat().st_size)
                path.unlink()

    def __enter__(self) -> "SessionKeyManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
