"""The client side of a session: commands to the server and sync from it."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .client_files import ClientFileManager
from .client_list import ClientFullError
from .commands import Command
from .file_transfer import receive_file, send_file
from .packet import Packet, PacketType
from .server_files import parse_sync_entry

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileTimes:
    """Times of one server file, as reported by list_server."""

    path: str
    mtime: str
    atime: str
    ctime: str
    total: int
    index: int

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name


def parse_file_times(payload) -> FileTimes:
    """Parse "path\\nmtime\\natime\\nctime\\ntotal\\nindex"; ValueError if malformed."""
    if isinstance(payload, (bytes, bytearray)):
        text = bytes(payload).split(b"\0", 1)[0].decode("utf-8", "surrogateescape")
    else:
        text = str(payload)
    parts = text.split("\n", 4)
    if len(parts) < 5:
        raise ValueError(f"invalid file times payload: {text!r}")
    path, mtime, atime, ctime, rest = parts
    tokens = rest.split()
    if len(tokens) < 2:
        raise ValueError(f"invalid file times payload: {text!r}")
    try:
        total, index = int(tokens[0]), int(tokens[1])
    except ValueError as error:
        raise ValueError(f"invalid file times payload: {text!r}") from error
    return FileTimes(path, mtime, atime, ctime, total, index)


def _last_component(path: str) -> str:
    for separator in ("/", "\\"):
        path = path.rsplit(separator, 1)[-1]
    return path


class ClientComManager:
    """Holds the command, upload and fetch sockets of one client device."""

    def __init__(self, file_manager: ClientFileManager, username: str = "", hostname: str = "") -> None:
        self.file_manager = file_manager
        self.username = username
        self.hostname = hostname
        self.cmd_socket = None
        self.upload_socket = None
        self.fetch_socket = None
        self.upload_lock = threading.Lock()

    # Sockets

    def start_sockets(self) -> None:
        """Open fresh, unconnected TCP sockets for the three channels."""
        self.cmd_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.upload_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.fetch_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    def connect(self, username: str, host: str, port: int) -> list[str]:
        """Connect to the server, announce this device and fetch the sync directory.

        Returns the names of the files received.
        """
        self.username = username
        self.hostname = socket.gethostname()
        address = socket.gethostbyname(host)
        self.start_sockets()
        self.cmd_socket.connect((address, port))
        handshake = Packet.receive(self.cmd_socket)
        if handshake.type == PacketType.COMM_PACKET:
            self.upload_socket.connect((address, port))
            self.fetch_socket.connect((address, port))
        Packet(PacketType.COMM_PACKET, 1, 1, b"").send(self.cmd_socket)
        received = self.execute_command(Command.GET_SYNC_DIR)
        self.file_manager.set_sockets(self.cmd_socket, self.upload_socket, self.fetch_socket)
        return received

    def set_sockets(self, cmd, upload, fetch) -> None:
        self.cmd_socket = cmd
        self.upload_socket = upload
        self.fetch_socket = fetch

    def close_sockets(self) -> None:
        for sock in (self.cmd_socket, self.fetch_socket, self.upload_socket):
            if sock is not None:
                sock.close()

    # Commands

    def execute_command(self, command, argument=None):
        """Run one command; UPLOAD, DOWNLOAD and DELETE need an argument."""
        command = Command(command)
        needs_argument = (Command.UPLOAD, Command.DOWNLOAD, Command.DELETE)
        if command in needs_argument and argument is None:
            raise ValueError(f"{command.name} needs a file argument")
        if command is Command.UPLOAD:
            return self.upload(argument)
        if command is Command.DOWNLOAD:
            return self.download(argument)
        if command is Command.DELETE:
            return self.delete_file(argument)
        if command is Command.LIST_SERVER:
            return self.list_server()
        if command is Command.LIST_CLIENT:
            return self.list_client()
        if command is Command.EXIT:
            return self.exit()
        if command is Command.GET_SYNC_DIR:
            return self.get_sync_dir()
        return None

    def upload(self, file_path) -> int:
        """Ask the server to store a file and send it; returns packets sent."""
        file_path = str(file_path)
        with self.upload_lock:
            Packet(PacketType.CMD_PACKET, Command.UPLOAD, 1, file_path + "\n").send(self.cmd_socket)
            return send_file(file_path, self.upload_socket)

    def download(self, file_name: str, destination_dir=".") -> Path:
        """Fetch an unsynchronised copy of a server file into destination_dir."""
        Packet(PacketType.CMD_PACKET, Command.DOWNLOAD, 1, f"/{file_name}\n").send(self.cmd_socket)
        target = Path(destination_dir) / file_name
        receive_file(target, self.cmd_socket)
        return target

    def delete_file(self, file_name: str) -> bool:
        """Delete a file from the local sync directory; the watcher propagates it."""
        return self.file_manager.delete_file(self.file_manager.sync_dir / file_name)

    def list_server(self) -> list[FileTimes]:
        """Ask the server for the times of this user's files."""
        info = f"{self.username}\n{self._cmd_label()}"
        Packet(PacketType.CMD_PACKET, Command.LIST_SERVER, 1, info).send(self.cmd_socket)
        times: list[FileTimes] = []
        while True:
            packet = Packet.receive(self.cmd_socket)
            if packet.type != PacketType.DATA_PACKET:
                _log.info("%s received all file times information", self.username)
                break
            entry = parse_file_times(packet.payload)
            times.append(entry)
            if entry.index + 1 == entry.total:
                break
        return times

    def list_client(self) -> list[str]:
        return self.file_manager.list_files()

    def exit(self) -> None:
        """Tell the server this device leaves and close the sockets."""
        Packet(PacketType.CMD_PACKET, Command.EXIT, 1, b"").send(self.cmd_socket)
        self.close_sockets()

    def get_sync_dir(self) -> list[str]:
        """Replace the local sync directory with the user's files on the server.

        Raises ClientFullError, after leaving, when the user already has two devices.
        """
        self.file_manager.erase_dir()
        info = f"{self.username}\n{self.hostname}\n"
        Packet(PacketType.CMD_PACKET, Command.GET_SYNC_DIR, 1, info).send(self.cmd_socket)
        received: list[str] = []
        while True:
            packet = Packet.receive(self.cmd_socket)
            if packet.type == PacketType.ERR and packet.seqn == Command.EXIT:
                self.exit()
                raise ClientFullError(f"client full: {self.username}")
            if packet.type != PacketType.DATA_PACKET:
                _log.info("%s sync dir is empty", self.username)
                break
            entry = parse_sync_entry(packet.payload)
            name = _last_component(entry.path)
            self.file_manager.add_path("/" + name)
            receive_file(self.file_manager.sync_dir / name, self.cmd_socket)
            received.append(name)
            if entry.index + 1 == entry.total:
                break
        return received

    def get_response(self) -> bool:
        """Wait for the server's acknowledgement; True only on SUCCESS."""
        packet = Packet.receive(self.cmd_socket)
        if packet.type == PacketType.SUCCESS:
            return True
        if packet.type != PacketType.ERR:
            _log.error("unexpected response packet type %d", packet.type)
        return False

    def await_sync(self) -> str | None:
        """Apply one change pushed by the server; returns the "/name" it touched."""
        packet = Packet.receive(self.fetch_socket)
        if packet.type not in (PacketType.CMD_PACKET, PacketType.DATA_PACKET):
            return None
        fields = packet.fields()
        if not fields:
            return None
        file_name = fields[0]
        self.file_manager.add_path(file_name)
        target = self.file_manager.sync_dir / file_name.lstrip("/")
        if packet.type == PacketType.CMD_PACKET:
            self.file_manager.delete_file(target)
        else:
            receive_file(target, self.fetch_socket)
        return file_name

    def send_delete_request(self, file_name: str) -> None:
        Packet(PacketType.CMD_PACKET, Command.DELETE, 1, file_name).send(self.cmd_socket)

    def _cmd_label(self) -> str:
        try:
            return str(self.cmd_socket.fileno())
        except (AttributeError, OSError):
            return "-1"