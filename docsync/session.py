"""The main server's side of one client device session."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .client_list import ClientFullError, ClientList
from .commands import Command, ServerSetupError, ServerStatus
from .file_transfer import TransferError, receive_file, send_file
from .packet import Packet, PacketType
from .server_files import ServerFileManager, delete_file
from .server_list import ServerList

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_RETRY_SECONDS = 0.5

_connect_lock = threading.Lock()
_log = logging.getLogger(__name__)


@dataclass
class ServerState:
    """What every session of one server shares: devices, backups and files."""

    clients: ClientList = field(default_factory=ClientList)
    servers: ServerList = field(default_factory=ServerList)
    files: ServerFileManager = field(default_factory=ServerFileManager)

    def broadcast(self, packet: Packet) -> int:
        """Send a packet to every connected backup server; returns how many got it."""
        sent = 0
        with self.servers.lock:
            for node in self.servers:
                if node.socket is None:
                    continue
                try:
                    packet.send(node.socket)
                except OSError as error:
                    _log.error("could not reach backup %s: %s", node.hostname, error)
                    continue
                sent += 1
        return sent


def format_file_times(path) -> str:
    """"path\\nmtime\\natime\\nctime\\n" for a file; OSError if it cannot be read."""
    info = os.stat(path)
    stamps = (
        time.strftime(_TIME_FORMAT, time.localtime(seconds))
        for seconds in (info.st_mtime, info.st_atime, info.st_ctime)
    )
    return "".join(f"{part}\n" for part in (str(path), *stamps))


def _connect_retrying(hostname: str, port: int) -> socket.socket:
    address = socket.gethostbyname(hostname)
    while True:
        try:
            return socket.create_connection((address, port))
        except OSError as error:
            _log.error("ERROR connecting to %s: %s", hostname, error)
            time.sleep(_RETRY_SECONDS)


class ClientSession:
    """The command, upload and fetch sockets of one connected device."""

    def __init__(self, state: ServerState, cmd_socket=None, upload_socket=None, fetch_socket=None) -> None:
        self.state = state
        self.username = ""
        self.hostname = ""
        self.cmd_socket = cmd_socket
        self.upload_socket = upload_socket
        self.fetch_socket = fetch_socket

    @property
    def sockets(self) -> tuple:
        return (self.cmd_socket, self.upload_socket, self.fetch_socket)

    # Session set-up

    def bind_client_sockets(self, server_socket, cmd_socket) -> bool:
        """Accept the device's upload and fetch connections and start the session."""
        self.cmd_socket = cmd_socket
        try:
            self.upload_socket, _ = server_socket.accept()
        except OSError as error:
            raise ServerSetupError(ServerStatus.FAILED_TO_ACCEPT_UPLOAD_SOCKET, str(error)) from error
        try:
            self.fetch_socket, _ = server_socket.accept()
        except OSError as error:
            raise ServerSetupError(ServerStatus.FAILED_TO_ACCEPT_FETCH_SOCKET, str(error)) from error
        return self.start_communications()

    def start_communications(self) -> bool:
        """Register the device and send it the user's files.

        Returns False, after telling the device to exit, when the user already
        has two devices connected.
        """
        starter = Packet.receive(self.cmd_socket)
        fields = starter.fields()
        if len(fields) < 2:
            raise ValueError("session start packet lacks username and hostname")
        self.username, self.hostname = fields[0], fields[1]

        with self.state.clients.lock:
            try:
                self.state.clients.add_device(self.username, self.hostname, self.sockets)
            except ClientFullError:
                Packet(PacketType.ERR, Command.EXIT, 1, b"").send(self.cmd_socket)
                return False

        self.state.files.base_dir.mkdir(parents=True, exist_ok=True)
        self.state.files.create_sync_dir(self.username)
        _log.info("%s", self.state.clients.format())
        self.state.broadcast(
            Packet(PacketType.CLIENTINFO_PACKET, 1, 1, f"{self.username}\n{self.hostname}\n")
        )
        self.get_sync_dir()
        return True

    def connect_to_client(self, hostname: str, username: str, port: int) -> None:
        """Connect back to a device after taking over as main server, then serve it."""
        with _connect_lock:
            self.cmd_socket = _connect_retrying(hostname, port)
            self.upload_socket = _connect_retrying(hostname, port)
            self.fetch_socket = _connect_retrying(hostname, port)
        self.username = username
        self.hostname = hostname
        with self.state.clients.lock:
            try:
                self.state.clients.add_device(username, hostname, self.sockets)
            except ClientFullError as error:
                _log.error("%s", error)
                self._close_sockets()
                return
        self.await_command_packet()

    # Command loop

    def await_command_packet(self) -> None:
        """Serve commands until the device exits or its connection is lost."""
        handlers = {
            Command.UPLOAD: self.upload,
            Command.DOWNLOAD: self.download,
            Command.DELETE: self.delete_server_file,
        }
        while True:
            packet = Packet.receive(self.cmd_socket)
            if packet.is_empty():
                _log.info("connection lost with user: %s", self.username)
                self.end_communications()
                return
            try:
                command = Command(packet.seqn)
            except ValueError:
                command = Command.NO_COMMAND
            _log.info("received %s command from user: %s", command.name.lower(), self.username)
            if command is Command.EXIT:
                self.end_communications()
                return
            try:
                if command in handlers:
                    handlers[command](packet)
                elif command is Command.LIST_SERVER:
                    self.list_server()
                elif command is Command.GET_SYNC_DIR:
                    self.get_sync_dir()
            except (OSError, TransferError, ValueError) as error:
                _log.error("%s failed for user %s: %s", command.name, self.username, error)
            try:
                Packet(PacketType.SUCCESS, 1, 1, b"").send(self.cmd_socket)
            except OSError:
                self.end_communications()
                return

    # Commands

    def _push_to_devices(self, packet_type, seqn, payload: str, file_path=None) -> int:
        node = self.state.clients.get_client(self.username)
        if node is None:
            return 0
        pushed = 0
        for device in node.devices:
            sock = device.download_socket
            if sock is None:
                continue
            Packet(packet_type, seqn, 1, payload).send(sock)
            if file_path is not None:
                send_file(file_path, sock)
            pushed += 1
        return pushed

    def upload(self, packet: Packet) -> Path:
        """Store a file sent by the device and push it to its devices and backups."""
        fields = packet.fields()
        if not fields:
            raise ValueError("upload packet names no file")
        name = Path(fields[0]).name
        local_path = self.state.files.user_dir(self.username) / name
        receive_file(local_path, self.upload_socket)

        self._push_to_devices(PacketType.DATA_PACKET, 1, f"/{name}\n", local_path)
        with self.state.servers.lock:
            for node in self.state.servers:
                if node.socket is None:
                    continue
                Packet(PacketType.DATA_PACKET, 1, 1, f"{local_path}\n").send(node.socket)
                send_file(local_path, node.socket)
        return local_path

    def download(self, packet: Packet) -> Path:
        """Send a file of the user's sync directory over the command socket."""
        fields = packet.fields()
        if not fields:
            raise ValueError("download packet names no file")
        path = self.state.files.user_dir(self.username) / fields[0].lstrip("/")
        send_file(path, self.cmd_socket)
        return path

    def delete_server_file(self, packet: Packet) -> bool:
        """Delete a file and propagate it; False if it was already gone."""
        fields = packet.fields()
        if not fields:
            raise ValueError("delete packet names no file")
        file_name = fields[0]
        path = self.state.files.user_dir(self.username) / file_name.lstrip("/")
        if not delete_file(path):
            return False
        self._push_to_devices(PacketType.CMD_PACKET, Command.DELETE, f"{file_name}\n")
        self.state.broadcast(Packet(PacketType.CMD_PACKET, Command.DELETE, 1, f"{path}\n"))
        return True

    def list_server(self) -> list[str]:
        """Send the times of each of the user's files; returns the paths listed."""
        paths = self.state.files.get_sync_dir_paths(self.username)
        if not paths:
            Packet(PacketType.ERR, 1, 1, b"").send(self.cmd_socket)
            return []
        listed = []
        for index, path in enumerate(paths):
            try:
                info = format_file_times(path)
            except OSError:
                Packet(PacketType.ERR, 1, 1, f"Error retrieving times for file: {path}").send(self.cmd_socket)
                continue
            Packet(PacketType.DATA_PACKET, 1, 1, f"{info}{len(paths)}\n{index}").send(self.cmd_socket)
            listed.append(path)
        return listed

    def end_communications(self) -> None:
        """Unregister the device, tell the backups and close its sockets."""
        with self.state.clients.lock:
            try:
                self.state.clients.remove_device_by_sockets(self.username, self.sockets)
            except KeyError as error:
                _log.info("%s", error)
        self.state.broadcast(
            Packet(PacketType.DELETEDEVICE_PACKET, 1, 1, f"{self.username}\n{self.hostname}\n")
        )
        self._close_sockets()
        _log.info("All sockets closed for user: %s", self.username)

    def get_sync_dir(self) -> list[str]:
        """Send every file of the user's sync directory over the command socket."""
        paths = self.state.files.get_sync_dir_paths(self.username)
        if not paths:
            Packet(PacketType.ERR, 1, 1, b"").send(self.cmd_socket)
            return []
        for index, path in enumerate(paths):
            payload = f"{path}\n{len(paths)}\n{index}\n"
            Packet(PacketType.DATA_PACKET, 1, 1, payload).send(self.cmd_socket)
            send_file(path, self.cmd_socket)
        return paths

    def _close_sockets(self) -> None:
        for sock in self.sockets:
            if sock is not None:
                sock.close()