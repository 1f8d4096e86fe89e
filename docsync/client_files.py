"""The client's synchronised directory and the watcher that pushes its changes."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .commands import Command
from .file_transfer import send_file
from .packet import Packet, PacketType

DEFAULT_SYNC_DIR = Path("sync_dir")
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_log = logging.getLogger(__name__)


def _stamp(seconds: float) -> str:
    return time.strftime(_TIME_FORMAT, time.localtime(seconds))


class ClientFileManager:
    """Owns the local sync directory.

    `paths` holds "/name" entries for changes the client made itself on the
    server's behalf; the watcher skips one event for each such entry instead
    of echoing it back to the server.
    """

    def __init__(self, sync_dir=DEFAULT_SYNC_DIR) -> None:
        self.sync_dir = Path(sync_dir)
        self.paths: list[str] = []
        self._paths_lock = threading.Lock()
        self.cmd_socket = None
        self.upload_socket = None
        self.fetch_socket = None

    def create_sync_dir(self) -> bool:
        """Create the sync directory; False if it already existed."""
        try:
            self.sync_dir.mkdir()
        except FileExistsError:
            return False
        return True

    def list_files(self) -> list[str]:
        """Names of the regular files in the sync directory, sorted."""
        return sorted(entry.name for entry in self.sync_dir.iterdir() if entry.is_file())

    def describe_files(self) -> str:
        """A listing of each file with its modification, access and change times."""
        lines = []
        for name in self.list_files():
            info = (self.sync_dir / name).stat()
            lines.append(f"- {name}")
            lines.append(f"  mtime (Modification Time): {_stamp(info.st_mtime)}")
            lines.append(f"  atime (Access Time): {_stamp(info.st_atime)}")
            lines.append(f"  ctime (Change Time): {_stamp(info.st_ctime)}")
        return "".join(line + "\n" for line in lines)

    def erase_dir(self) -> list[str]:
        """Delete every regular file, marking each so its deletion is not echoed."""
        removed = []
        for entry in sorted(self.sync_dir.iterdir()):
            if entry.is_file():
                self.add_path("/" + entry.name)
                entry.unlink()
                removed.append(entry.name)
        return removed

    def delete_file(self, file_path) -> bool:
        """Delete a file; False if it did not exist."""
        try:
            Path(file_path).unlink()
        except FileNotFoundError:
            return False
        return True

    def add_path(self, path: str) -> None:
        with self._paths_lock:
            self.paths.append(path)

    def remove_path(self, path: str) -> None:
        """Remove the first occurrence of path, if any."""
        with self._paths_lock:
            if path in self.paths:
                self.paths.remove(path)

    def contains_path(self, path: str) -> bool:
        with self._paths_lock:
            return path in self.paths

    def set_sockets(self, cmd, upload, fetch) -> None:
        self.cmd_socket = cmd
        self.upload_socket = upload
        self.fetch_socket = fetch

    def _consume_marker(self, marker: str) -> bool:
        with self._paths_lock:
            if marker in self.paths:
                self.paths.remove(marker)
                return True
        return False

    def _require_sockets(self) -> None:
        if self.cmd_socket is None or self.upload_socket is None:
            raise RuntimeError("sockets are not set")

    def handle_closed_write(self, file_name: str) -> bool:
        """Upload a file written locally; False if the change came from the server."""
        if self._consume_marker("/" + file_name):
            return False
        self._require_sockets()
        file_path = str(self.sync_dir / file_name)
        Packet(PacketType.CMD_PACKET, Command.UPLOAD, 1, file_path + "\n").send(self.cmd_socket)
        send_file(file_path, self.upload_socket)
        return True

    def handle_deleted(self, file_name: str) -> bool:
        """Ask the server to delete a file removed locally; False if it was the server's doing."""
        marker = "/" + file_name
        if self._consume_marker(marker):
            return False
        self._require_sockets()
        Packet(PacketType.CMD_PACKET, Command.DELETE, 1, marker + "\n").send(self.cmd_socket)
        return True

    def watch(self, stop_event: threading.Event) -> None:
        """Watch the sync directory and push changes until stop_event is set."""
        observer = Observer()
        observer.schedule(_SyncHandler(self), str(self.sync_dir), recursive=False)
        observer.start()
        try:
            stop_event.wait()
        finally:
            observer.stop()
            observer.join()


class _SyncHandler(FileSystemEventHandler):
    def __init__(self, manager: ClientFileManager) -> None:
        super().__init__()
        self._manager = manager

    def on_closed(self, event) -> None:
        if not event.is_directory:
            self._dispatch_to(self._manager.handle_closed_write, event)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._dispatch_to(self._manager.handle_deleted, event)

    @staticmethod
    def _dispatch_to(handler, event) -> None:
        name = Path(os.fsdecode(event.src_path)).name
        try:
            handler(name)
        except (OSError, RuntimeError) as error:
            _log.error("could not sync %s: %s", name, error)