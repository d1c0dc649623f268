"""
Recipient key normalization and conversion.

Raw key text comes from the key sources (authorized_keys style lines, or a
single PEM public key file). The normalizer reduces it to one record per
distinct key; the converter turns each RSA record into the PEM public key the
wrapping step encrypts with.
"""

import enum
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import fingerprint
from .errors import NoUsableKeyMaterial
from .workspace import Workspace

logger = logging.getLogger(__name__)

AGGREGATE_FILE = "recipients.keys"

KEY_LINE_RE = re.compile(
    r"(?:^|\s)"
    r"(ssh-rsa|ssh-dss|ssh-ed25519|ecdsa-sha2-nistp(?:256|384|521)|sk-[a-z0-9@.-]+)"
    r"\s+([A-Za-z0-9+/]+={0,3})(?=\s|$)"
)
PEM_PUBLIC_RE = re.compile(
    r"-----BEGIN (RSA )?PUBLIC KEY-----.+?-----END (?(1)RSA )PUBLIC KEY-----",
    re.DOTALL,
)
LABEL_RE = re.compile(r"[^A-Za-z0-9._@+-]")

KeyEntry = Tuple[str, str]


class KeyAlgorithm(enum.Enum):
    RSA = "rsa"
    UNSUPPORTED = "unsupported"


@dataclass
class KeyRecord:
    raw_material: bytes
    algorithm: KeyAlgorithm
    identifier: str
    key_type: str
    fingerprint: Optional[str] = None
    path: Optional[Path] = None

    @property
    def dedup_key(self) -> bytes:
        if self.key_type == "pem":
            return b"".join(self.raw_material.split())
        return self.raw_material

    def line(self) -> str:
        text = self.raw_material.decode("ascii")
        if self.key_type == "pem":
            return text
        return f"{text} {self.identifier}"

    def ensure_fingerprint(self) -> Optional[str]:
        if self.fingerprint is None:
            result = fingerprint.fingerprint_of(self.raw_material, fingerprint.Mode.ENCRYPTION)
            if result.ok:
                self.fingerprint = result.fingerprint
        return self.fingerprint


@dataclass
class ConvertedKey:
    fingerprint: str
    identifier: str
    encryption_form: bytes


def _label(identifier: str) -> str:
    return LABEL_RE.sub("_", identifier) or "unnamed"


def _pem_algorithm(pem: str, rsa_header: bool) -> KeyAlgorithm:
    if rsa_header:
        return KeyAlgorithm.RSA
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii", errors="replace"))
    except (ValueError, UnsupportedAlgorithm):
        # Left for the converter to reject with a warning.
        return KeyAlgorithm.RSA
    return KeyAlgorithm.RSA if isinstance(key, rsa.RSAPublicKey) else KeyAlgorithm.UNSUPPORTED


def parse_key_text(identifier: str, text: str) -> List[KeyRecord]:
    """Extract key records from one source text, dropping options and comments."""
    label = _label(identifier)
    pem = PEM_PUBLIC_RE.search(text)
    if pem:
        block = pem.group(0).strip() + "\n"
        return [
            KeyRecord(
                raw_material=block.encode("ascii", errors="replace"),
                algorithm=_pem_algorithm(block, bool(pem.group(1))),
                identifier=label,
                key_type="pem",
            )
        ]
    records = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = KEY_LINE_RE.search(line)
        if not match:
            continue
        key_type, material = match.group(1), match.group(2)
        records.append(
            KeyRecord(
                raw_material=f"{key_type} {material}".encode("ascii"),
                algorithm=KeyAlgorithm.RSA if key_type == "ssh-rsa" else KeyAlgorithm.UNSUPPORTED,
                identifier=label,
                key_type=key_type,
            )
        )
    return records


class KeyNormalizer:
    def __init__(self, workspace: Workspace):
        self.workspace = workspace

    def normalize(self, entries: Iterable[KeyEntry], required: Sequence[str] = ()) -> List[KeyRecord]:
        """
        Turn ``(identifier, raw_text)`` entries into a sorted, deduplicated list
        of key records. Every identifier in ``required`` must contribute at
        least one record.
        """
        found = {}
        per_identifier = {}
        for identifier, text in entries:
            records = parse_key_text(identifier, text or "")
            usable = sum(1 for r in records if r.algorithm is KeyAlgorithm.RSA)
            per_identifier[identifier] = per_identifier.get(identifier, 0) + usable
            for record in records:
                found.setdefault(record.dedup_key, record)

        for identifier in required:
            if not per_identifier.get(identifier):
                raise NoUsableKeyMaterial(f"no usable key material for {identifier}")
        if not found:
            raise NoUsableKeyMaterial("no usable key material")

        records = sorted(found.values(), key=lambda r: r.line())
        lines = [r.line() for r in records]
        aggregate = "".join(line if line.endswith("\n") else line + "\n" for line in lines)
        self.workspace.write(AGGREGATE_FILE, aggregate.encode("ascii"))
        for index, record in enumerate(records):
            record.path = self.workspace.write(f"key-{index:03d}.pub", record.raw_material)
        logger.info("Normalized %d distinct recipient key(s)", len(records))
        return records


class KeyConverter:
    def __init__(self, workspace: Workspace):
        self.workspace = workspace

    def convert(self, record: KeyRecord) -> Optional[ConvertedKey]:
        if record.algorithm is not KeyAlgorithm.RSA:
            logger.warning("Skipping %s key for %s: unsupported key type", record.key_type, record.identifier)
            return None
        try:
            public_key = fingerprint.load_public_key(record.raw_material)
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise ValueError("not an RSA key")
            pem = public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Skipping key for %s: conversion failed (%s)", record.identifier, exc)
            return None
        fp = record.ensure_fingerprint()
        if not fp:
            logger.warning("Skipping key for %s: no fingerprint", record.identifier)
            return None
        self.workspace.write(f"{fp}.pem", pem)
        logger.debug("Converted key for %s (%s)", record.identifier, fp)
        return ConvertedKey(fingerprint=fp, identifier=record.identifier, encryption_form=pem)

    def convert_all(self, records: Iterable[KeyRecord]) -> List[ConvertedKey]:
        """Convert every record, keeping one key per fingerprint."""
        converted = []
        seen = {}
        for record in records:
            fp = record.ensure_fingerprint() if record.algorithm is KeyAlgorithm.RSA else None
            if fp is not None and fp in seen:
                logger.info("Key for %s is the same key as %s; wrapping once", record.identifier, seen[fp])
                continue
            key = self.convert(record)
            if key is None:
                continue
            seen[key.fingerprint] = key.identifier
            converted.append(key)
        if not converted:
            raise NoUsableKeyMaterial("no valid key could be produced")
        return converted
