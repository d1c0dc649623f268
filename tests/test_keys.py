import logging
import sys
from pathlib import Path
import tempfile

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keyseal import keymanager  # noqa: E402
from keyseal.errors import NoUsableKeyMaterial  # noqa: E402
from keyseal.fingerprint import load_private_key  # noqa: E402
from keyseal.keys import (  # noqa: E402
    AGGREGATE_FILE,
    KeyAlgorithm,
    KeyConverter,
    KeyNormalizer,
    parse_key_text,
)
from keyseal.workspace import Workspace  # noqa: E402


def _rsa_line(tmp, name):
    data = keymanager.generate_keypair(name, base_dir=tmp)
    return Path(data["public_path"]).read_text().strip(), data


def _ed25519_line():
    return ed25519.Ed25519PrivateKey.generate().public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")


def test_parse_drops_options_and_comments():
    with tempfile.TemporaryDirectory() as tmp:
        line, _ = _rsa_line(tmp, "alice")
        key_type, material = line.split()[:2]
        text = "\n".join(
            [
                "# a comment line",
                f'command="/bin/true",no-pty {key_type} {material} alice@laptop',
                "garbage that is not a key",
                "",
            ]
        )
        records = parse_key_text("alice", text)
        assert len(records) == 1
        assert records[0].raw_material == f"{key_type} {material}".encode("ascii")
        assert records[0].algorithm is KeyAlgorithm.RSA
        assert records[0].line() == f"{key_type} {material} alice"


def test_parse_marks_other_algorithms_unsupported():
    records = parse_key_text("bob", _ed25519_line() + " bob@host\n")
    assert len(records) == 1
    assert records[0].key_type == "ssh-ed25519"
    assert records[0].algorithm is KeyAlgorithm.UNSUPPORTED


def test_parse_pem_file_is_one_key():
    with tempfile.TemporaryDirectory() as tmp:
        _, data = _rsa_line(tmp, "carol")
        pem = load_private_key(Path(data["private_path"]).read_bytes()).public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        records = parse_key_text("carol", "some header\n" + pem)
        assert len(records) == 1
        assert records[0].key_type == "pem"
        assert records[0].algorithm is KeyAlgorithm.RSA
        assert records[0].ensure_fingerprint() == data["fingerprint"]


def test_normalize_dedupes_and_sorts():
    with tempfile.TemporaryDirectory() as tmp:
        alice, _ = _rsa_line(tmp, "alice")
        bob, _ = _rsa_line(tmp, "bob")
        with Workspace() as ws:
            records = KeyNormalizer(ws).normalize(
                [("alice", alice), ("bob", bob), ("alice-again", alice)],
                required=["alice", "bob"],
            )
            assert len(records) == 2
            lines = [r.line() for r in records]
            assert lines == sorted(lines)
            aggregate = ws.read(AGGREGATE_FILE).decode("ascii")
            assert aggregate.count("\n") == 2
            for record in records:
                assert record.path is not None and record.path.exists()


def test_normalize_requires_keys_for_named_recipients():
    with tempfile.TemporaryDirectory() as tmp:
        alice, _ = _rsa_line(tmp, "alice")
        with Workspace() as ws:
            with pytest.raises(NoUsableKeyMaterial) as excinfo:
                KeyNormalizer(ws).normalize([("alice", alice), ("nobody", "")], required=["alice", "nobody"])
            assert "nobody" in str(excinfo.value)


def test_normalize_with_nothing_usable():
    with Workspace() as ws:
        with pytest.raises(NoUsableKeyMaterial):
            KeyNormalizer(ws).normalize([("x", "no keys here\n")])


def test_converter_skips_unsupported_and_malformed(caplog):
    with tempfile.TemporaryDirectory() as tmp:
        alice, data = _rsa_line(tmp, "alice")
        entries = [
            ("alice", alice),
            ("bob", _ed25519_line()),
            ("mallory", "ssh-rsa AAAAB3NzaC1yc2EAAAA= broken"),
        ]
        with Workspace() as ws:
            records = KeyNormalizer(ws).normalize(entries)
            assert len(records) == 3
            with caplog.at_level(logging.WARNING, logger="keyseal.keys"):
                converted = KeyConverter(ws).convert_all(records)
            assert [c.fingerprint for c in converted] == [data["fingerprint"]]
            assert converted[0].encryption_form.startswith(b"-----BEGIN PUBLIC KEY-----")
            assert ws.path(f"{data['fingerprint']}.pem").exists()
        messages = " ".join(r.getMessage() for r in caplog.records)
        assert "bob" in messages
        assert "mallory" in messages


def test_converter_keeps_one_key_per_fingerprint():
    with tempfile.TemporaryDirectory() as tmp:
        line, data = _rsa_line(tmp, "alice")
        pem = load_private_key(Path(data["private_path"]).read_bytes()).public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        with Workspace() as ws:
            records = KeyNormalizer(ws).normalize([("alice", line), ("alice-pem", pem)])
            assert len(records) == 2
            converted = KeyConverter(ws).convert_all(records)
            assert [c.fingerprint for c in converted] == [data["fingerprint"]]


def test_normalize_ignores_unsupported_keys_of_named_recipients():
    with tempfile.TemporaryDirectory() as tmp:
        alice, _ = _rsa_line(tmp, "alice")
        with Workspace() as ws:
            with pytest.raises(NoUsableKeyMaterial) as excinfo:
                KeyNormalizer(ws).normalize([("alice", alice), ("bob", _ed25519_line())], required=["alice", "bob"])
            assert "bob" in str(excinfo.value)


def test_converter_empty_batch_is_fatal():
    with Workspace() as ws:
        records = KeyNormalizer(ws).normalize([("bob", _ed25519_line())])
        with pytest.raises(NoUsableKeyMaterial) as excinfo:
            KeyConverter(ws).convert_all(records)
        assert "no valid key could be produced" in str(excinfo.value)


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-vv", "-s", "--capture=no"]))
