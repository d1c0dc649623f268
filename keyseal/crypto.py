import base64
import binascii
import os

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoError, FormatError

SALT_MAGIC = b"Salted__"
SALT_LEN = 8
AES_KEY_LEN = 32
AES_IV_LEN = 16
PBKDF2_ITERATIONS = 10000


def b64e(data: bytes) -> str:
    """Standard base64 encoding without newlines."""
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    """Strict standard base64 decoding."""
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise FormatError(f"invalid base64 data: {exc}") from exc


def _derive_key_iv(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    """PBKDF2-HMAC-SHA256 key and IV derivation, as `openssl enc -pbkdf2` does it."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_LEN + AES_IV_LEN,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase)
    return material[:AES_KEY_LEN], material[AES_KEY_LEN:]


def encrypt_aes_cbc(passphrase: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-256-CBC under a passphrase and a random salt.
    Output layout is ``Salted__ || salt || ciphertext``.
    """
    salt = os.urandom(SALT_LEN)
    key, iv = _derive_key_iv(passphrase, salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return SALT_MAGIC + salt + encryptor.update(padded) + encryptor.finalize()


def decrypt_aes_cbc(passphrase: bytes, data: bytes) -> bytes:
    header_len = len(SALT_MAGIC) + SALT_LEN
    if len(data) < header_len + AES_IV_LEN or not data.startswith(SALT_MAGIC):
        raise CryptoError("payload is not a salted AES-256-CBC block")
    body = data[header_len:]
    if len(body) % AES_IV_LEN:
        raise CryptoError("payload length is not a multiple of the cipher block size")
    key, iv = _derive_key_iv(passphrase, data[len(SALT_MAGIC):header_len])
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise CryptoError("payload decryption failed (wrong session key or corrupt data)") from exc


def load_public_key(pem: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("not an RSA public key")
    return key


def wrap_key(recipient_public_pem: bytes, symmetric_key: bytes) -> bytes:
    """Encrypt the raw session key for one recipient (RSA, PKCS#1 v1.5 padding)."""
    recipient_pub = load_public_key(recipient_public_pem)
    return recipient_pub.encrypt(bytes(symmetric_key), asym_padding.PKCS1v15())


def unwrap_key(recipient_private: rsa.RSAPrivateKey, wrapped: bytes) -> bytes:
    """Recover the raw session key from a wrapped blob."""
    try:
        return recipient_private.decrypt(wrapped, asym_padding.PKCS1v15())
    except ValueError as exc:
        raise CryptoError("could not unwrap the session key") from exc


def hash_bytes(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()
