"""
Key fingerprints.

A fingerprint is the lowercase hex SHA-256 of the OpenSSH wire encoding of a
public key. It is the join key between the wrapped session keys written at
encryption time and the private key presented at decryption time, so it must
come out identical for an ``ssh-rsa`` line, a PEM public key, and the public
half derived from the matching private key.

Deriving the public half of an encrypted private key needs its passphrase.
That passphrase is only ever read from the controlling terminal: piping it in
on stdin is refused so the tool cannot be driven unattended with a private key
it is not supposed to unlock.
"""

import enum
import getpass
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .errors import ConfigurationError, PassphraseError, PassphraseUnavailable

logger = logging.getLogger(__name__)

TTY_PATH = "/dev/tty"

PassphrasePrompt = Callable[[str], bytes]


class Mode(enum.Enum):
    ENCRYPTION = "encryption"
    DECRYPTION = "decryption"


class Status(enum.Enum):
    OK = "ok"
    MALFORMED = "malformed"
    NEEDS_DERIVATION = "needs-derivation"
    DERIVATION_FAILED = "derivation-failed"


@dataclass
class FingerprintResult:
    status: Status
    fingerprint: Optional[str] = None
    private_key: Optional[object] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is Status.OK


class TerminalPassphrasePrompt:
    """Reads a passphrase from the controlling terminal, never from redirected input."""

    def __init__(self, tty_path: str = TTY_PATH):
        self.tty_path = tty_path

    def _require_terminal(self) -> None:
        try:
            fd = os.open(self.tty_path, os.O_RDWR | os.O_NOCTTY)
        except OSError as exc:
            raise PassphraseUnavailable(
                "a passphrase is required but there is no controlling terminal to ask for it"
            ) from exc
        os.close(fd)

    def __call__(self, description: str) -> bytes:
        self._require_terminal()
        secret = getpass.getpass(f"Enter passphrase for {description}: ")
        return secret.encode("utf-8")


def fingerprint_public_key(public_key) -> str:
    line = public_key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    blob = crypto.b64d(line.split()[1].decode("ascii"))
    return crypto.hash_bytes(blob).hex()


def is_private_key(material: bytes) -> bool:
    return b"PRIVATE KEY-----" in material


def load_public_key(material: bytes):
    """Parse an OpenSSH public key line or a PEM public key."""
    stripped = material.strip()
    if stripped.startswith(b"-----BEGIN"):
        return serialization.load_pem_public_key(stripped)
    # Only the type and key tokens matter; any comment is dropped.
    parts = stripped.split()
    if len(parts) < 2:
        raise ValueError("not an OpenSSH public key line")
    return serialization.load_ssh_public_key(parts[0] + b" " + parts[1])


def load_private_key(material: bytes, password: Optional[bytes] = None):
    if b"BEGIN OPENSSH PRIVATE KEY" in material:
        return serialization.load_ssh_private_key(material, password=password)
    return serialization.load_pem_private_key(material, password=password)


def _derive(material: bytes, description: str, prompt: Optional[PassphrasePrompt]) -> FingerprintResult:
    try:
        private_key = load_private_key(material, password=None)
    except TypeError:
        # Encrypted key: the passphrase has to come from the terminal.
        if prompt is None:
            return FingerprintResult(Status.DERIVATION_FAILED, detail="private key is encrypted")
        passphrase = prompt(description)
        try:
            private_key = load_private_key(material, password=passphrase)
        except (ValueError, TypeError) as exc:
            logger.debug("Private key derivation failed: %s", exc)
            return FingerprintResult(Status.DERIVATION_FAILED, detail="wrong passphrase or unreadable key")
    except (ValueError, UnsupportedAlgorithm) as exc:
        return FingerprintResult(Status.DERIVATION_FAILED, detail=str(exc))
    try:
        fp = fingerprint_public_key(private_key.public_key())
    except (ValueError, TypeError) as exc:
        return FingerprintResult(Status.DERIVATION_FAILED, detail=str(exc))
    return FingerprintResult(Status.OK, fingerprint=fp, private_key=private_key)


def _direct(material: bytes) -> FingerprintResult:
    if is_private_key(material):
        return FingerprintResult(Status.NEEDS_DERIVATION, detail="not a public key")
    try:
        public_key = load_public_key(material)
        return FingerprintResult(Status.OK, fingerprint=fingerprint_public_key(public_key))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        return FingerprintResult(Status.MALFORMED, detail=str(exc) or "malformed key")


def fingerprint_of(
    material: bytes,
    mode: Mode = Mode.ENCRYPTION,
    prompt: Optional[PassphrasePrompt] = None,
    description: str = "private key",
) -> FingerprintResult:
    """
    Compute the fingerprint of a key.

    In encryption mode the material must be a public key. In decryption mode a
    private key is accepted: the direct attempt reports NEEDS_DERIVATION and the
    public half is then derived, asking ``prompt`` for the passphrase if the
    key is encrypted.
    """
    direct = _direct(material)
    if direct.status is not Status.NEEDS_DERIVATION or mode is Mode.ENCRYPTION:
        if not direct.ok:
            logger.warning("Cannot fingerprint key: %s", direct.detail or direct.status.value)
        return direct
    return _derive(material, description, prompt)


@dataclass
class LocalIdentity:
    """The decrypting party: its fingerprint and the unlocked private key."""

    fingerprint: str
    private_key: rsa.RSAPrivateKey
    source: str = ""


def load_identity(path: Path | str, prompt: Optional[PassphrasePrompt] = None) -> LocalIdentity:
    path = Path(path)
    try:
        material = path.read_bytes()
    except OSError as exc:
        raise ConfigurationError(f"cannot read private key {path}: {exc}") from exc
    if prompt is None:
        prompt = TerminalPassphrasePrompt()
    result = fingerprint_of(material, Mode.DECRYPTION, prompt=prompt, description=str(path))
    if result.status is Status.MALFORMED:
        raise ConfigurationError(f"{path} does not contain a usable key")
    if result.status is Status.DERIVATION_FAILED:
        raise PassphraseError(f"cannot derive the public key from {path} ({result.detail})")
    if result.private_key is None:
        raise ConfigurationError(f"{path} is a public key; decryption needs the private key")
    if not isinstance(result.private_key, rsa.RSAPrivateKey):
        raise ConfigurationError(f"{path} is not an RSA private key")
    logger.info("Local key fingerprint: %s", result.fingerprint)
    return LocalIdentity(fingerprint=result.fingerprint, private_key=result.private_key, source=str(path))
