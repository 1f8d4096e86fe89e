"""Registry of connected users, each with at most two devices."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterator

EMPTY_SOCKETS: tuple[Any, Any, Any] = (None, None, None)


class ClientFullError(Exception):
    """Raised when a user already has two connected devices."""


def _normalise(sockets: tuple[Any, Any, Any] | None) -> tuple[Any, Any, Any]:
    """Map the (cmd, upload, download) triple so that 0 and None both mean 'no socket'."""
    if sockets is None:
        return EMPTY_SOCKETS
    cmd, upload, download = sockets
    return tuple(
        None if s is None or (isinstance(s, int) and s == 0) else s
        for s in (cmd, upload, download)
    )


def _socket_label(sock: Any) -> str:
    if sock is None:
        return "0"
    if isinstance(sock, int):
        return str(sock)
    fileno = getattr(sock, "fileno", None)
    if fileno is not None:
        try:
            return str(fileno())
        except OSError:
            return "-1"
    return str(sock)


@dataclass
class Device:
    """One device slot: its hostname and its (cmd, upload, download) sockets."""

    hostname: str = ""
    sockets: tuple[Any, Any, Any] = EMPTY_SOCKETS

    def __post_init__(self) -> None:
        self.sockets = _normalise(self.sockets)

    @property
    def cmd_socket(self) -> Any:
        return self.sockets[0]

    @property
    def upload_socket(self) -> Any:
        return self.sockets[1]

    @property
    def download_socket(self) -> Any:
        return self.sockets[2]

    def has_sockets(self) -> bool:
        return self.sockets != EMPTY_SOCKETS

    def is_empty(self) -> bool:
        """True when the slot holds neither sockets nor a hostname."""
        return not self.has_sockets() and not self.hostname

    def assign(self, hostname: str, sockets: tuple[Any, Any, Any] | None) -> None:
        self.hostname = hostname
        self.sockets = _normalise(sockets)

    def clear(self) -> None:
        self.hostname = ""
        self.sockets = EMPTY_SOCKETS

    def format(self, number: int) -> str:
        cmd, upload, download = (_socket_label(s) for s in self.sockets)
        return (
            f" Device {number}: HOSTNAME={self.hostname}, CMD={cmd}, "
            f"UPLOAD={upload}, DOWNLOAD={download}"
        )


@dataclass
class ClientNode:
    """A user and its two device slots."""

    username: str
    device1: Device = field(default_factory=Device)
    device2: Device = field(default_factory=Device)

    @property
    def devices(self) -> tuple[Device, Device]:
        return (self.device1, self.device2)

    def format(self) -> str:
        lines = [f"Client: {self.username}"]
        lines.extend(device.format(n) for n, device in enumerate(self.devices, 1))
        return "\n".join(lines) + "\n"


class ClientList:
    """Users in the order they first connected. Callers hold `lock` when sharing it."""

    def __init__(self) -> None:
        self._nodes: list[ClientNode] = []
        self.lock = threading.RLock()

    def __iter__(self) -> Iterator[ClientNode]:
        return iter(list(self._nodes))

    def __len__(self) -> int:
        return len(self._nodes)

    def add_device(self, username: str, hostname: str, sockets) -> Device:
        """Place a device in the user's first free slot and return that slot.

        A slot is free when it holds no sockets and has no hostname or the
        same hostname. Raises ClientFullError when both slots are taken.
        """
        node = self.get_client(username)
        if node is None:
            node = ClientNode(username, Device(hostname, sockets))
            self._nodes.append(node)
            return node.device1
        for device in node.devices:
            if not device.has_sockets() and device.hostname in ("", hostname):
                device.assign(hostname, sockets)
                return device
        raise ClientFullError(f"client full: {username}")

    def remove_device_by_sockets(self, username: str, sockets) -> bool:
        """Clear the device holding these sockets.

        Returns True when the user had no sockets left and was dropped.
        Raises KeyError if the user or the device is unknown.
        """
        node = self._require(username)
        target = _normalise(sockets)
        for device in node.devices:
            if device.sockets == target:
                device.clear()
                break
        else:
            raise KeyError(f"device not found for user: {username}")
        if not any(device.has_sockets() for device in node.devices):
            self._nodes.remove(node)
            return True
        return False

    def remove_device_by_hostname(self, username: str, hostname: str) -> bool:
        """Clear the device with this hostname.

        Returns True when both slots are empty and the user was dropped.
        Raises KeyError if the user or the device is unknown.
        """
        node = self._require(username)
        for device in node.devices:
            if device.hostname == hostname:
                device.clear()
                break
        else:
            raise KeyError(f"device not found for user: {username}")
        if all(device.is_empty() for device in node.devices):
            self._nodes.remove(node)
            return True
        return False

    def get_client(self, username: str) -> ClientNode | None:
        return next((n for n in self._nodes if n.username == username), None)

    def format(self) -> str:
        return "".join(node.format() for node in self._nodes)

    def _require(self, username: str) -> ClientNode:
        node = self.get_client(username)
        if node is None:
            raise KeyError(f"client not found: {username}")
        return node