"""
Envelope codec.

An envelope is plain ASCII: a run of ``uuencode -m`` style blocks, each
framed as::

    begin-base64 600 <name>
    <base64 body, 76 columns>
    ====

The first block is the encrypted payload, named after the input file. Each
following block is a session key wrapped for one recipient and named by that
recipient's fingerprint, and the last one is the version manifest under a
reserved name. Blocks carry no length prefix, so the decoder is strict about
block names: anything that is not a fingerprint or the version name after the
payload block is rejected, and so is a repeated name.
"""

import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from . import version
from .errors import FormatError
from .version import VersionManifest
from .workspace import Workspace

logger = logging.getLogger(__name__)

VERSION_BLOCK_NAME = "keyseal-version"
DEFAULT_PAYLOAD_NAME = "stdin"
DEFAULT_MODE = "600"

BEGIN_RE = re.compile(r"^begin(-base64)? ([0-7]{3,4}) (.+)$")
BASE64_END = "===="
UU_END = "end"

FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")
FILENAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._+@-]{0,254}$")
UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._+@-]")


@dataclass
class Block:
    name: str
    data: bytes
    mode: str = DEFAULT_MODE


@dataclass
class WrappedSessionKey:
    recipient_fingerprint: str
    ciphertext: bytes


@dataclass
class Envelope:
    payload_name: str
    payload: bytes
    wrapped_keys: List[WrappedSessionKey] = field(default_factory=list)
    manifest: Optional[VersionManifest] = None

    def find(self, fingerprint: str) -> Optional[WrappedSessionKey]:
        for wrapped in self.wrapped_keys:
            if wrapped.recipient_fingerprint == fingerprint:
                return wrapped
        return None

    @property
    def recipients(self) -> List[str]:
        return [w.recipient_fingerprint for w in self.wrapped_keys]


def sanitize_name(path: Optional[str]) -> str:
    """Reduce an input path to a block name token."""
    if not path or path == "-":
        return DEFAULT_PAYLOAD_NAME
    base = UNSAFE_CHARS_RE.sub("_", os.path.basename(str(path).rstrip("/")))
    if not base:
        return DEFAULT_PAYLOAD_NAME
    if not FILENAME_RE.match(base):
        base = ("_" + base)[:255]
    return base


def is_fingerprint(name: str) -> bool:
    return bool(FINGERPRINT_RE.match(name))


def encode_block(name: str, data: bytes, mode: str = DEFAULT_MODE) -> str:
    body = base64.encodebytes(data).decode("ascii")
    return f"begin-base64 {mode} {name}\n{body}{BASE64_END}\n"


def encode_envelope(envelope: Envelope) -> str:
    if not envelope.wrapped_keys:
        raise ValueError("refusing to encode an envelope without recipients")
    parts = [encode_block(envelope.payload_name, envelope.payload)]
    parts.extend(encode_block(w.recipient_fingerprint, w.ciphertext) for w in envelope.wrapped_keys)
    manifest = envelope.manifest or version.current_manifest()
    parts.append(encode_block(VERSION_BLOCK_NAME, manifest.render().encode("ascii")))
    return "".join(parts)


def _decode_body(name: str, lines: List[str], base64_body: bool) -> bytes:
    try:
        if base64_body:
            return base64.b64decode("".join(line.strip() for line in lines), validate=True)
        return b"".join(binascii.a2b_uu(line) for line in lines if line.strip())
    except (binascii.Error, ValueError) as exc:
        raise FormatError(f"block {name!r} has a corrupt body: {exc}") from exc


def split_blocks(stream: Union[str, bytes]) -> List[Block]:
    """
    Find every block in ``stream``, in order. Text outside blocks is ignored.
    Classic ``begin <mode> <name>`` / ``end`` uuencode blocks are accepted too.
    """
    if isinstance(stream, bytes):
        stream = stream.decode("latin-1")
    blocks = []
    current = None
    body: List[str] = []
    for raw_line in stream.splitlines():
        line = raw_line.rstrip("\r")
        if current is None:
            match = BEGIN_RE.match(line)
            if match:
                current = (match.group(3).strip(), match.group(2), bool(match.group(1)))
                body = []
            continue
        name, mode, base64_body = current
        if line == (BASE64_END if base64_body else UU_END):
            blocks.append(Block(name=name, data=_decode_body(name, body, base64_body), mode=mode))
            current = None
            continue
        body.append(line)
    if current is not None:
        raise FormatError(f"block {current[0]!r} is not terminated")
    return blocks


def decode_envelope(stream: Union[str, bytes], workspace: Optional[Workspace] = None) -> Envelope:
    blocks = split_blocks(stream)
    if not blocks:
        raise FormatError("invalid input: no envelope blocks found")
    if workspace is not None:
        for index, block in enumerate(blocks):
            workspace.write(f"block-{index:03d}", block.data)

    payload = blocks[0]
    if not FILENAME_RE.match(payload.name):
        raise FormatError(f"invalid payload block name {payload.name!r}")

    envelope = Envelope(payload_name=payload.name, payload=payload.data)
    seen = set()
    for block in blocks[1:]:
        if block.name in seen:
            raise FormatError(f"duplicate block name {block.name!r}")
        seen.add(block.name)
        if block.name == VERSION_BLOCK_NAME:
            envelope.manifest = version.parse_manifest(block.data.decode("ascii", errors="replace"))
        elif is_fingerprint(block.name):
            envelope.wrapped_keys.append(WrappedSessionKey(block.name, block.data))
        else:
            raise FormatError(f"unexpected block name {block.name!r}")
    logger.debug(
        "Decoded envelope %r with %d wrapped key(s)%s",
        envelope.payload_name,
        len(envelope.wrapped_keys),
        "" if envelope.manifest else " and no version block",
    )
    return envelope
