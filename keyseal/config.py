import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_KEYS_DIR = Path("keys")
DEFAULT_WORKERS = 4
DEFAULT_TIMEOUT = 5.0


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read from KEYSEAL_* environment variables."""

    keys_dir: Path = DEFAULT_KEYS_DIR
    directory_url: Optional[str] = None
    directory_timeout: float = DEFAULT_TIMEOUT
    workers: int = DEFAULT_WORKERS
    tmpdir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            keys_dir=Path(os.getenv("KEYSEAL_KEYS_DIR", str(DEFAULT_KEYS_DIR))),
            directory_url=os.getenv("KEYSEAL_DIRECTORY_URL") or None,
            directory_timeout=_float_env("KEYSEAL_DIRECTORY_TIMEOUT", DEFAULT_TIMEOUT),
            workers=_int_env("KEYSEAL_WORKERS", DEFAULT_WORKERS),
            tmpdir=os.getenv("KEYSEAL_TMPDIR") or None,
        )
