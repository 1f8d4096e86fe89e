"""Keeping backup servers in step with the main server."""

from __future__ import annotations

import logging
import threading
import time

from .client_list import ClientFullError
from .file_transfer import receive_file, send_file
from .packet import Packet, PacketType
from .server_files import ServerFileManager, delete_file
from .session import ServerState

EMPTY_DEVICE_1 = "EMPTY_DEVICE_1"
EMPTY_DEVICE_2 = "EMPTY_DEVICE_2"
HEARTBEAT_SECONDS = 5.0

_log = logging.getLogger(__name__)


def add_backup_server(state: ServerState, files: ServerFileManager, sock, hostname: str) -> None:
    """Register a joining backup server and send it the lists and every file.

    The backups already known are told about the new one first.
    """
    with state.servers.lock:
        state.broadcast(Packet(PacketType.SERVERINFO_PACKET, 1, 1, f"{hostname}\n"))
        state.servers.add_server(sock, hostname)
        backup_server_list(state, sock)
        _log.info("%s", state.servers.format())
    backup_client_list(state, sock)
    backup_sync_dir(files, sock)


def backup_server_list(state: ServerState, sock) -> list[str]:
    """Send every backup hostname in one packet whose sequence field is the count."""
    hostnames = [node.hostname for node in state.servers]
    payload = "".join(f"{name}\n" for name in hostnames)
    Packet(PacketType.SERVERINFO_PACKET, len(hostnames), 1, payload).send(sock)
    return hostnames


def backup_client_list(state: ServerState, sock) -> int:
    """Send one packet per user with both device hostnames, then end of transmission."""
    sent = 0
    with state.clients.lock:
        for node in state.clients:
            first = node.device1.hostname or EMPTY_DEVICE_1
            second = node.device2.hostname or EMPTY_DEVICE_2
            payload = f"{node.username}\n{first}\n{second}\n"
            Packet(PacketType.CLIENTINFO_PACKET, 1, 1, payload).send(sock)
            sent += 1
    Packet(PacketType.EOT_PACKET, 1, 1, b"").send(sock)
    return sent


def backup_sync_dir(files: ServerFileManager, sock) -> list[str]:
    """Send every user file, each preceded by "path\\ntotal\\nindex\\n".

    With no files an ERR packet tells the backup not to wait.
    """
    paths = files.all_files()
    if not paths:
        Packet(PacketType.ERR, 1, 1, b"").send(sock)
        return []
    for index, path in enumerate(paths):
        payload = f"{path}\n{len(paths)}\n{index}\n"
        Packet(PacketType.DATA_PACKET, 1, 1, payload).send(sock)
        send_file(path, sock)
    return paths


def heartbeat_protocol(state: ServerState, interval: float = HEARTBEAT_SECONDS,
                       stop_event: threading.Event | None = None) -> int:
    """Send a heartbeat to every backup each interval until stop_event is set.

    Returns the number of rounds sent.
    """
    stop_event = stop_event or threading.Event()
    rounds = 0
    while not stop_event.wait(interval):
        state.broadcast(Packet(PacketType.HEARTBEAT_PACKET, 1, 1, b"\0"))
        rounds += 1
    return rounds


class BackupReplica:
    """A backup server's copy of the main server's lists and files."""

    def __init__(self, state: ServerState) -> None:
        self.state = state
        self.last_heartbeat = time.monotonic()

    def receive_server_list(self, sock) -> list[str]:
        """Read the list of backup hostnames and add each without a socket."""
        packet = Packet.receive(sock)
        hostnames = packet.fields()[:packet.seqn]
        with self.state.servers.lock:
            for hostname in hostnames:
                self.state.servers.add_server(None, hostname)
            _log.info("%s", self.state.servers.format())
        return hostnames

    def receive_client_list(self, sock) -> list[str]:
        """Read user packets until end of transmission; returns the usernames.

        Raises ConnectionError if the connection ends first.
        """
        usernames: list[str] = []
        with self.state.clients.lock:
            while True:
                packet = Packet.receive(sock)
                if packet.type == PacketType.EOT_PACKET:
                    break
                if packet.is_empty():
                    raise ConnectionError("connection closed before end of client list")
                if packet.type != PacketType.CLIENTINFO_PACKET:
                    continue
                fields = packet.fields()
                if len(fields) < 3:
                    raise ValueError(f"invalid client info payload: {packet.text()!r}")
                username, first, second = fields[:3]
                for hostname, marker in ((first, EMPTY_DEVICE_1), (second, EMPTY_DEVICE_2)):
                    if hostname != marker:
                        self._add_device(username, hostname)
                usernames.append(username)
            _log.info("%s", self.state.clients.format())
        return usernames

    def apply(self, packet: Packet, sock) -> bool:
        """Apply one change sent by the main server; False for an empty packet."""
        if packet.is_empty():
            return False
        self.last_heartbeat = time.monotonic()
        fields = packet.fields()
        ptype = packet.type

        if ptype == PacketType.CMD_PACKET and fields:
            delete_file(fields[0])
        elif ptype == PacketType.DATA_PACKET and fields:
            receive_file(fields[0], sock)
        elif ptype == PacketType.CLIENTINFO_PACKET and len(fields) >= 2:
            with self.state.clients.lock:
                self._add_device(fields[0], fields[1])
        elif ptype == PacketType.DELETEDEVICE_PACKET and len(fields) >= 2:
            with self.state.clients.lock:
                try:
                    self.state.clients.remove_device_by_hostname(fields[0], fields[1])
                except KeyError as error:
                    _log.info("%s", error)
        elif ptype == PacketType.SERVERINFO_PACKET and fields:
            with self.state.servers.lock:
                self.state.servers.add_server(None, fields[0])
        elif ptype == PacketType.DELETESERVER_PACKET and fields:
            with self.state.servers.lock:
                try:
                    self.state.servers.remove_server(fields[0])
                except KeyError as error:
                    _log.info("%s", error)
        return True

    def _add_device(self, username: str, hostname: str) -> None:
        try:
            self.state.clients.add_device(username, hostname, None)
        except ClientFullError as error:
            _log.info("%s", error)