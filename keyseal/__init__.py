"""
keyseal package.
Encrypts a file once for many RSA recipients and decrypts it with any one of their private keys.
"""

__version__ = "1.1.0"

__all__ = [
    "armor",
    "config",
    "crypto",
    "errors",
    "fingerprint",
    "keymanager",
    "keys",
    "library",
    "session",
    "sources",
    "version",
    "workspace",
]
