import sys
from pathlib import Path
import tempfile

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

# Ensure project root on sys.path for direct `python tests/test_library.py` runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keyseal import armor, crypto, keymanager, library, session  # noqa: E402
from keyseal.errors import (  # noqa: E402
    CompatibilityError,
    FormatError,
    NoUsableKeyMaterial,
    NotEncryptedForKey,
    PassphraseError,
)
from keyseal.fingerprint import load_identity, load_public_key  # noqa: E402
from keyseal.version import VersionManifest  # noqa: E402
from keyseal.workspace import Workspace  # noqa: E402


def _payload():
    return b"quarterly numbers\n" + bytes(range(256)) + b"\x00trailing"


def _recipient(tmp, name, passphrase=None):
    data = keymanager.generate_keypair(name, base_dir=tmp, passphrase=passphrase)
    entry = (name, keymanager.load_public_text(name, base_dir=tmp))
    identity = load_identity(data["private_path"], prompt=lambda _desc: passphrase or b"")
    return entry, identity


def test_encrypt_decrypt_roundtrip():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        armored = library.encrypt(_payload(), [entry], name="numbers.bin")
        assert armored.startswith("begin-base64 600 numbers.bin\n")
        assert library.decrypt(armored, identity) == _payload()


def test_multi_recipient_each_can_decrypt():
    with tempfile.TemporaryDirectory() as tmp:
        recipients = [_recipient(tmp, name) for name in ("alice", "bob", "carol")]
        armored = library.encrypt(_payload(), [entry for entry, _ in recipients], max_workers=3)
        info = library.inspect(armored)
        assert sorted(info["recipients"]) == sorted(identity.fingerprint for _, identity in recipients)
        plaintexts = {library.decrypt(armored, identity) for _, identity in recipients}
        assert plaintexts == {_payload()}


def test_encrypted_private_key_roundtrip():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice", passphrase=b"correct horse")
        armored = library.encrypt(b"secret", [entry])
        assert library.decrypt(armored, identity) == b"secret"


def test_decrypt_with_other_key_is_not_encrypted_for_this_key():
    with tempfile.TemporaryDirectory() as tmp:
        alice_entry, _ = _recipient(tmp, "alice")
        _, mallory = _recipient(tmp, "mallory")
        armored = library.encrypt(_payload(), [alice_entry])
        with pytest.raises(NotEncryptedForKey) as excinfo:
            library.decrypt(armored, mallory)
        assert "not encrypted for this key" in str(excinfo.value)


def test_version_gate():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        envelope = armor.decode_envelope(library.encrypt(_payload(), [entry]))
        envelope.manifest = VersionManifest("1.0.2", ["1.0"], ["1.0"])
        armored = armor.encode_envelope(envelope)

        with pytest.raises(CompatibilityError):
            library.decrypt(armored, identity, current_version="2.0")
        assert library.decrypt(armored, identity, current_version="2.0", expert=True) == _payload()
        assert library.decrypt(armored, identity, current_version="1.0.7") == _payload()


def test_expert_mode_opens_unreadable_version_block():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        armored = library.encrypt(_payload(), [entry])
        marker = f"begin-base64 600 {armor.VERSION_BLOCK_NAME}"
        odd = armored[: armored.index(marker)] + armor.encode_block(armor.VERSION_BLOCK_NAME, b"2.0.0-rc1\n2.0\n2.0\n")

        assert library.inspect(odd)["version"]["producer"] == "2.0.0-rc1"
        with pytest.raises(CompatibilityError) as excinfo:
            library.decrypt(odd, identity)
        assert "2.0.0-rc1" in str(excinfo.value)
        assert library.decrypt(odd, identity, expert=True) == _payload()


def test_same_key_in_two_forms_is_wrapped_once():
    with tempfile.TemporaryDirectory() as tmp:
        (_, ssh_line), identity = _recipient(tmp, "alice")
        pem = identity.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.PKCS1,
        ).decode("ascii")
        armored = library.encrypt(_payload(), [("alice", ssh_line), ("alice-file", pem)])
        assert library.inspect(armored)["recipients"] == [identity.fingerprint]
        assert library.decrypt(armored, identity) == _payload()


def test_named_recipient_with_only_unsupported_keys_is_fatal():
    with tempfile.TemporaryDirectory() as tmp:
        alice, _ = _recipient(tmp, "alice")
        bob = ("bob", ed25519.Ed25519PrivateKey.generate().public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode("ascii"))
        with pytest.raises(NoUsableKeyMaterial) as excinfo:
            library.encrypt(_payload(), [alice, bob], required=["alice", "bob"])
        assert "bob" in str(excinfo.value)


def test_legacy_envelope_without_version_block():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        armored = library.encrypt(_payload(), [entry])
        marker = f"begin-base64 600 {armor.VERSION_BLOCK_NAME}"
        legacy = armored[: armored.index(marker)]
        assert library.decrypt(legacy, identity, current_version="9.9") == _payload()


def test_malformed_input_is_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        _, identity = _recipient(tmp, "alice")
        with pytest.raises(FormatError) as excinfo:
            library.decrypt(b"\x89PNG\r\n\x1a\n not an envelope", identity)
        assert "invalid input" in str(excinfo.value)


def test_empty_recipient_set_fails_before_any_cipher(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("cipher must not run")

    monkeypatch.setattr(crypto, "encrypt_aes_cbc", boom)
    monkeypatch.setattr(crypto, "wrap_key", boom)
    monkeypatch.setattr(session.SessionKeyManager, "generate", boom)
    with pytest.raises(NoUsableKeyMaterial) as excinfo:
        library.encrypt(b"data", [("alice", ""), ("bob", "# nothing here\n")])
    assert "no usable key material" in str(excinfo.value)


def test_named_recipient_without_keys_is_fatal():
    with tempfile.TemporaryDirectory() as tmp:
        entry, _ = _recipient(tmp, "alice")
        with pytest.raises(NoUsableKeyMaterial):
            library.encrypt(b"data", [entry, ("bob", "")], required=["alice", "bob"])


def test_bad_wrapped_key_gives_passphrase_hint():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        envelope = armor.decode_envelope(library.encrypt(_payload(), [entry]))
        pem = Path(tmp, "alice.pub").read_bytes()
        public_pem = load_public_key(pem).public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        envelope.wrapped_keys[0].ciphertext = crypto.wrap_key(public_pem, b"too short")
        with pytest.raises(PassphraseError) as excinfo:
            library.decrypt(armor.encode_envelope(envelope), identity)
        assert "passphrase" in str(excinfo.value)


def test_session_key_file_removed_after_encrypt():
    with tempfile.TemporaryDirectory() as tmp:
        entry, _ = _recipient(tmp, "alice")
        with Workspace() as ws:
            library.encrypt(b"data", [entry], workspace=ws)
            assert not ws.path(session.SESSION_KEY_FILE).exists()
            assert ws.path("recipients.keys").exists()


def test_fresh_session_key_per_encryption():
    with tempfile.TemporaryDirectory() as tmp:
        entry, _ = _recipient(tmp, "alice")
        first = armor.decode_envelope(library.encrypt(b"same", [entry]))
        second = armor.decode_envelope(library.encrypt(b"same", [entry]))
        assert first.payload != second.payload
        assert first.wrapped_keys[0].ciphertext != second.wrapped_keys[0].ciphertext


def test_inspect_reports_manifest():
    with tempfile.TemporaryDirectory() as tmp:
        entry, identity = _recipient(tmp, "alice")
        info = library.inspect(library.encrypt(b"data", [entry], name="/srv/files/plan.txt"))
        assert info["payload_name"] == "plan.txt"
        assert info["recipients"] == [identity.fingerprint]
        assert info["version"]["encrypt_for"] == ["1.0", "1.1"]


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-vv", "-s", "--capture=no"]))
