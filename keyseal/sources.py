"""
Where recipient keys come from.

Every source returns opaque multi-line key text; parsing is left to
``keys.KeyNormalizer``.
"""

import grp
import logging
import pwd
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import requests

from .config import Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class FileKeySource:
    """Key files named on the command line. The filename stem labels the key."""

    def lookup(self, path: Path | str) -> Tuple[str, str]:
        path = Path(path)
        try:
            return path.stem or path.name, path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ConfigurationError(f"cannot read key file {path}: {exc}") from exc


class KeyDirSource:
    """Public keys stored as ``<keys_dir>/<name>.pub`` (see keymanager)."""

    def __init__(self, keys_dir: Path | str):
        self.keys_dir = Path(keys_dir)

    def lookup(self, name: str) -> str:
        path = self.keys_dir / f"{name}.pub"
        if not path.exists():
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ConfigurationError(f"cannot read key file {path}: {exc}") from exc


class DirectoryKeySource:
    """Client of the key directory service (see the keydirectory package)."""

    def __init__(self, base_url: str, timeout: float = 5.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str):
        url = f"{self.base_url}{path}"
        try:
            res = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Key directory lookup %s failed: %s", url, exc)
            return None
        if res.status_code == 404:
            return None
        if res.status_code != 200:
            logger.warning("Key directory lookup %s returned %s", url, res.status_code)
            return None
        return res

    def lookup(self, name: str) -> str:
        res = self._get(f"/users/{name}/keys")
        return res.text if res is not None else ""

    def group_members(self, group: str) -> Optional[List[str]]:
        res = self._get(f"/groups/{group}")
        if res is None:
            return None
        return list(res.json().get("members", []))


class GroupExpander:
    """Expands a group name to user names, from the directory service or the OS."""

    def __init__(self, directory: Optional[DirectoryKeySource] = None):
        self.directory = directory

    def members(self, group: str) -> List[str]:
        if self.directory is not None:
            members = self.directory.group_members(group)
            if members is not None:
                return sorted(set(members))
        try:
            entry = grp.getgrnam(group)
        except KeyError as exc:
            raise ConfigurationError(f"unknown group {group}") from exc
        names = set(entry.gr_mem)
        names.update(p.pw_name for p in pwd.getpwall() if p.pw_gid == entry.gr_gid)
        return sorted(names)


class UserKeyResolver:
    """Looks a user up in the key directory when configured, then in the local key dir."""

    def __init__(self, keys_dir: KeyDirSource, directory: Optional[DirectoryKeySource] = None):
        self.keys_dir = keys_dir
        self.directory = directory

    def lookup(self, name: str) -> str:
        texts = []
        if self.directory is not None:
            texts.append(self.directory.lookup(name))
        texts.append(self.keys_dir.lookup(name))
        return "\n".join(t for t in texts if t)


def collect_entries(
    users: Sequence[str] = (),
    groups: Sequence[str] = (),
    key_files: Sequence[str] = (),
    settings: Optional[Settings] = None,
    directory: Optional[DirectoryKeySource] = None,
) -> Tuple[List[Tuple[str, str]], List[str]]:
    """
    Gather raw key text for every requested recipient.

    Returns ``(entries, required)``: explicitly named users and key files are
    required to yield a key, group members are best effort.
    """
    settings = settings or Settings.from_env()
    if not (users or groups or key_files):
        raise ConfigurationError("no recipients specified")
    if directory is None and settings.directory_url:
        directory = DirectoryKeySource(settings.directory_url, timeout=settings.directory_timeout)
    resolver = UserKeyResolver(KeyDirSource(settings.keys_dir), directory)

    entries: List[Tuple[str, str]] = []
    required: List[str] = []
    files = FileKeySource()
    for path in key_files:
        label, text = files.lookup(path)
        entries.append((label, text))
        required.append(label)
    for user in users:
        entries.append((user, resolver.lookup(user)))
        required.append(user)
    expander = GroupExpander(directory)
    for group in groups:
        members = expander.members(group)
        if not members:
            logger.warning("Group %s has no members", group)
        for member in members:
            text = resolver.lookup(member)
            if not text:
                logger.warning("No key found for %s (member of %s)", member, group)
            entries.append((member, text))
    return entries, required
