import os
from pathlib import Path
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import fingerprint
from .config import DEFAULT_KEYS_DIR


def _ensure_dir(base_dir: Path) -> None:
    base_dir.mkdir(parents=True, exist_ok=True)


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def generate_keypair(
    name: str,
    base_dir: Path | str = DEFAULT_KEYS_DIR,
    bits: int = 2048,
    passphrase: Optional[bytes] = None,
) -> Dict[str, object]:
    """
    Generate an RSA key pair for a recipient.
    Writes ``<name>.key`` (PKCS#8 PEM, encrypted when a passphrase is given)
    and ``<name>.pub`` (OpenSSH line commented with the name).
    """
    base_dir = Path(base_dir)
    _ensure_dir(base_dir)
    priv = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    encryption = (
        serialization.BestAvailableEncryption(passphrase)
        if passphrase
        else serialization.NoEncryption()
    )
    priv_pem = priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    pub_line = priv.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    private_path = base_dir / f"{name}.key"
    public_path = base_dir / f"{name}.pub"
    _write_private(private_path, priv_pem)
    public_path.write_bytes(pub_line + f" {name}\n".encode("utf-8"))
    return {
        "name": name,
        "private_path": private_path,
        "public_path": public_path,
        "fingerprint": fingerprint.fingerprint_public_key(priv.public_key()),
    }


def private_key_path(name: str, base_dir: Path | str = DEFAULT_KEYS_DIR) -> Path:
    path = Path(base_dir) / f"{name}.key"
    if not path.exists():
        raise FileNotFoundError(f"No private key for {name} in {path}")
    return path


def load_public_text(name: str, base_dir: Path | str = DEFAULT_KEYS_DIR) -> str:
    path = Path(base_dir) / f"{name}.pub"
    if not path.exists():
        raise FileNotFoundError(f"No public key for {name} in {path}")
    return path.read_text()


def list_recipients(base_dir: Path | str = DEFAULT_KEYS_DIR) -> list[str]:
    base_dir = Path(base_dir)
    if not base_dir.exists():
        return []
    return sorted(p.stem for p in base_dir.glob("*.pub"))
