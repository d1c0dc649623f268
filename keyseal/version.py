import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from . import __version__
from .errors import CompatibilityError, FormatError

logger = logging.getLogger(__name__)

# Tool versions able to decrypt what this version writes, and versions whose
# envelopes this version can read. Only major.minor is significant.
ENCRYPT_FOR = ("1.0", "1.1")
DECRYPT_FROM = ("1.0", "1.1")

VERSION_RE = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?$")


def major_minor(version: str) -> Tuple[int, int]:
    match = VERSION_RE.match(version.strip())
    if not match:
        raise FormatError(f"invalid version token: {version!r}")
    return int(match.group(1)), int(match.group(2))


@dataclass
class VersionManifest:
    producer_version: str
    encrypt_for: List[str] = field(default_factory=list)
    decrypt_from: List[str] = field(default_factory=list)
    raw: str = field(default="", compare=False, repr=False)

    def render(self) -> str:
        return "\n".join(
            [
                self.producer_version,
                " ".join(self.encrypt_for),
                " ".join(self.decrypt_from),
            ]
        ) + "\n"


def current_manifest() -> VersionManifest:
    return VersionManifest(
        producer_version=__version__,
        encrypt_for=list(ENCRYPT_FOR),
        decrypt_from=list(DECRYPT_FROM),
    )


def parse_manifest(text: str) -> VersionManifest:
    """
    Read a version block without judging it. Token checks happen in
    ``check_compatibility`` so that expert mode can still open envelopes
    from producers this version does not understand.
    """
    lines = text.splitlines() + ["", "", ""]
    return VersionManifest(
        producer_version=lines[0].strip(),
        encrypt_for=lines[1].split(),
        decrypt_from=lines[2].split(),
        raw=text,
    )


def _declaration(manifest: VersionManifest) -> str:
    return (
        f"  producer version: {manifest.producer_version}\n"
        f"  encrypt for:      {' '.join(manifest.encrypt_for)}\n"
        f"  decrypt from:     {' '.join(manifest.decrypt_from)}\n"
    )


def check_compatibility(
    manifest: Optional[VersionManifest],
    current_version: str = __version__,
    expert: bool = False,
) -> None:
    """
    Accept an envelope iff this tool's major.minor is listed in the
    producer's ``encrypt_for`` declaration. ``decrypt_from`` is not consulted.
    """
    if expert:
        logger.warning("Expert mode: skipping the version compatibility check")
        return
    if manifest is None:
        logger.info("Envelope carries no version information; assuming it is compatible")
        return
    wanted = major_minor(current_version)
    try:
        if not manifest.encrypt_for:
            raise FormatError("no compatible versions declared")
        accepted = {major_minor(v) for v in manifest.encrypt_for}
    except FormatError as exc:
        raise CompatibilityError(
            f"envelope has an unreadable version block ({exc}); it declares:\n"
            f"{_declaration(manifest)}"
            "use --expert to try anyway"
        ) from exc
    if wanted not in accepted:
        raise CompatibilityError(
            f"envelope is not readable by version {current_version}; it declares:\n"
            f"{_declaration(manifest)}"
            "use --expert to try anyway"
        )
    logger.debug("Envelope from version %s is compatible", manifest.producer_version)
