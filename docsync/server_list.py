"""Ordered list of backup servers, keyed by hostname."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterator


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
class ServerNode:
    """A backup server; socket is None while no connection is held."""

    socket: Any = None
    hostname: str = ""
    is_leader: bool = False


class ServerList:
    """Backup servers in the order they joined. Callers hold `lock` when sharing it."""

    def __init__(self) -> None:
        self._nodes: list[ServerNode] = []
        self.lock = threading.RLock()

    def __iter__(self) -> Iterator[ServerNode]:
        return iter(list(self._nodes))

    def __len__(self) -> int:
        return len(self._nodes)

    def add_server(self, socket: Any, hostname: str) -> ServerNode:
        """Add a server, or replace the socket of the one with this hostname."""
        for node in self._nodes:
            if node.hostname == hostname:
                node.socket = socket
                return node
        node = ServerNode(socket, hostname)
        self._nodes.append(node)
        return node

    def remove_server(self, hostname: str) -> ServerNode:
        """Remove and return the server with this hostname; KeyError if absent."""
        for position, node in enumerate(self._nodes):
            if node.hostname == hostname:
                del self._nodes[position]
                return node
        raise KeyError(f"server not found: {hostname}")

    def find_server(self, socket: Any) -> ServerNode | None:
        return next((n for n in self._nodes if n.socket == socket), None)

    def find_current_server(self, hostname: str) -> ServerNode | None:
        return next((n for n in self._nodes if n.hostname == hostname), None)

    def find_next_server(self, hostname: str) -> ServerNode | None:
        """The server after `hostname`, wrapping round to the first one."""
        for position, node in enumerate(self._nodes):
            if node.hostname == hostname:
                return self._nodes[(position + 1) % len(self._nodes)]
        return None

    def get_server_id(self, hostname: str) -> int:
        """Position of the server in the list; KeyError if absent."""
        for position, node in enumerate(self._nodes):
            if node.hostname == hostname:
                return position
        raise KeyError(f"hostname not found: {hostname}")

    def format(self) -> str:
        lines = [""]
        lines.extend(
            f"Server Socket: {_socket_label(node.socket)}, Hostname: {node.hostname}"
            for node in self._nodes
        )
        return "\n".join(lines) + "\n"