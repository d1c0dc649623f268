"""
High-level encrypt/decrypt/inspect API.

``encrypt`` produces an armored envelope that every recipient key can open;
``decrypt`` opens it with one local private key.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import __version__, armor, crypto, version
from .armor import Envelope, WrappedSessionKey
from .config import DEFAULT_WORKERS
from .errors import CryptoError, NoUsableKeyMaterial, NotEncryptedForKey, PassphraseError
from .fingerprint import LocalIdentity
from .keys import ConvertedKey, KeyConverter, KeyNormalizer
from .session import SESSION_KEY_LEN, SessionKey, SessionKeyManager
from .workspace import Workspace

logger = logging.getLogger(__name__)


def _wrap_all(session_key: SessionKey, converted: Sequence[ConvertedKey], max_workers: int) -> List[WrappedSessionKey]:
    """Wrap the session key for each recipient; recipients are independent."""
    raw = session_key.raw
    wrapped = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(crypto.wrap_key, key.encryption_form, raw) for key in converted]
        for key, future in zip(converted, futures):
            try:
                ciphertext = future.result()
            except ValueError as exc:
                logger.warning("Could not wrap the session key for %s: %s", key.identifier, exc)
                continue
            wrapped.append(WrappedSessionKey(recipient_fingerprint=key.fingerprint, ciphertext=ciphertext))
            logger.info("Encrypted for %s (%s)", key.identifier, key.fingerprint)
    if not wrapped:
        raise NoUsableKeyMaterial("no valid key could be produced")
    return wrapped


def encrypt(
    payload: bytes,
    entries: Iterable[Tuple[str, str]],
    *,
    name: Optional[str] = None,
    required: Sequence[str] = (),
    workspace: Optional[Workspace] = None,
    max_workers: Optional[int] = None,
) -> str:
    """
    Encrypt ``payload`` for every key found in ``entries`` (pairs of
    recipient identifier and raw key text) and return the armored envelope.
    ``name`` is the input file name recorded in the payload block.
    """
    with ExitStack() as stack:
        if workspace is None:
            workspace = stack.enter_context(Workspace())
        records = KeyNormalizer(workspace).normalize(entries, required=required)
        converted = KeyConverter(workspace).convert_all(records)

        manager = stack.enter_context(SessionKeyManager(workspace))
        session_key = manager.generate()
        block = crypto.encrypt_aes_cbc(session_key.encoded, payload)
        wrapped = _wrap_all(session_key, converted, max_workers or DEFAULT_WORKERS)

        envelope = Envelope(
            payload_name=armor.sanitize_name(name),
            payload=block,
            wrapped_keys=wrapped,
            manifest=version.current_manifest(),
        )
        return armor.encode_envelope(envelope)


def _recover_session_key(envelope: Envelope, identity: LocalIdentity) -> SessionKey:
    wrapped = envelope.find(identity.fingerprint)
    if wrapped is None:
        raise NotEncryptedForKey(identity.fingerprint)
    try:
        raw = crypto.unwrap_key(identity.private_key, wrapped.ciphertext)
    except CryptoError as exc:
        raise PassphraseError("could not decrypt the session key") from exc
    if len(raw) != SESSION_KEY_LEN:
        raise PassphraseError("could not decrypt the session key")
    return SessionKey(raw)


def decrypt(
    armored,
    identity: LocalIdentity,
    *,
    expert: bool = False,
    current_version: str = __version__,
    workspace: Optional[Workspace] = None,
) -> bytes:
    """Open an envelope with the local identity and return the plaintext."""
    with ExitStack() as stack:
        if workspace is None:
            workspace = stack.enter_context(Workspace())
        envelope = armor.decode_envelope(armored, workspace=workspace)
        version.check_compatibility(envelope.manifest, current_version=current_version, expert=expert)
        session_key = _recover_session_key(envelope, identity)
        stack.callback(session_key.wipe)
        plaintext = crypto.decrypt_aes_cbc(session_key.encoded, envelope.payload)
        logger.info("Decrypted %s (%d bytes)", envelope.payload_name, len(plaintext))
        return plaintext


def inspect(armored) -> Dict:
    """Describe an envelope: payload name, recipient fingerprints, version manifest."""
    envelope = armor.decode_envelope(armored)
    manifest = envelope.manifest
    return {
        "payload_name": envelope.payload_name,
        "payload_size": len(envelope.payload),
        "recipients": envelope.recipients,
        "version": None
        if manifest is None
        else {
            "producer": manifest.producer_version,
            "encrypt_for": manifest.encrypt_for,
            "decrypt_from": manifest.decrypt_from,
        },
    }
