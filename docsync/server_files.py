"""The server's per-user sync directories and the initial copy to a backup server."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import NamedTuple

from .file_transfer import receive_file
from .packet import Packet, PacketType

DEFAULT_BASE_DIR = Path("userDirectories")

_log = logging.getLogger(__name__)


class SyncEntry(NamedTuple):
    """Header of one file in a directory transfer."""

    path: str
    total: int
    index: int


def files_in_directory(directory_path) -> list[str]:
    """Regular files below a directory, recursively, skipping names starting with '.'.

    A directory that cannot be opened yields an empty list.
    """
    base = str(directory_path)
    try:
        names = sorted(os.listdir(base))
    except OSError:
        _log.error("failed to open directory: %s", base)
        return []
    found: list[str] = []
    for name in names:
        if name.startswith("."):
            continue
        full_path = f"{base}/{name}"
        try:
            mode = os.stat(full_path).st_mode
        except OSError:
            continue
        if stat.S_ISREG(mode):
            found.append(full_path)
        elif stat.S_ISDIR(mode):
            found.extend(files_in_directory(full_path))
    return found


def delete_file(file_path) -> bool:
    """Delete a file; False if it did not exist."""
    try:
        Path(file_path).unlink()
    except FileNotFoundError:
        return False
    return True


def _payload_text(payload) -> str:
    if isinstance(payload, (bytes, bytearray)):
        raw = bytes(payload).split(b"\0", 1)[0]
        return raw.decode("utf-8", "surrogateescape")
    return str(payload)


def parse_sync_entry(payload) -> SyncEntry:
    """Parse "path\\ntotal\\nindex" into a SyncEntry; ValueError if malformed."""
    text = _payload_text(payload)
    path, separator, rest = text.partition("\n")
    tokens = rest.split()
    if not path or not separator or len(tokens) < 2:
        raise ValueError(f"invalid sync entry payload: {text!r}")
    try:
        total, index = int(tokens[0]), int(tokens[1])
    except ValueError as error:
        raise ValueError(f"invalid sync entry payload: {text!r}") from error
    return SyncEntry(path, total, index)


def receive_sync_dir_files(sock) -> list[str]:
    """Receive a directory transfer, writing each file at the path it names.

    Stops at the last announced file or at the first non-data packet.
    Returns the paths written.
    """
    received: list[str] = []
    while True:
        packet = Packet.receive(sock)
        if packet.type != PacketType.DATA_PACKET:
            _log.info("server directories are empty")
            break
        entry = parse_sync_entry(packet.payload)
        receive_file(entry.path, sock)
        received.append(entry.path)
        if entry.index + 1 == entry.total:
            break
    return received


class ServerFileManager:
    """Owns the directory that holds one sync directory per user."""

    def __init__(self, base_dir=DEFAULT_BASE_DIR) -> None:
        self.base_dir = Path(base_dir)

    def user_dir(self, username: str) -> Path:
        return self.base_dir / f"sync_dir_{username}"

    def create_sync_dir(self, username: str) -> bool:
        """Create the user's sync directory; False if it already existed."""
        try:
            self.user_dir(username).mkdir()
        except FileExistsError:
            return False
        return True

    def get_sync_dir_paths(self, username: str) -> list[str]:
        """Every regular file in the user's sync directory, recursively."""
        base = self.user_dir(username)
        if not base.is_dir():
            _log.error("directory does not exist: %s", base)
            return []
        return sorted(str(path) for path in base.rglob("*") if path.is_file())

    def all_files(self) -> list[str]:
        """Every file of every user, as sent to a joining backup server."""
        return files_in_directory(self.base_dir)