"""Ring election among backup servers and a backup's take-over as main server."""

from __future__ import annotations

import logging
import socket
import threading
import time
from enum import Enum
from typing import NamedTuple

from .file_transfer import TransferError
from .packet import Packet, PacketType
from .replication import BackupReplica
from .session import ClientSession, ServerState

ELECTION_PORT = 3999
BACKUP_PORT = 4001
CLIENT_PORT = 4008
HEARTBEAT_TIMEOUT = 6.0
RECEIVE_TIMEOUT = 15.0

_CONNECT_ATTEMPTS = 40
_RETRY_SECONDS = 0.25
_POLL_SECONDS = 0.05

_log = logging.getLogger(__name__)


class ElectionAction(Enum):
    """What a ring member does with an election message it received."""

    IGNORE = "ignore"
    FORWARD_ELECTION = "forward_election"
    ANNOUNCE_ELECTED = "announce_elected"
    FORWARD_ELECTED = "forward_elected"
    BECOME_MAIN = "become_main"


class Decision(NamedTuple):
    action: ElectionAction
    id: int | None


def decide(my_id: int, packet_type, received_id: int, participant: bool) -> Decision:
    """Apply the ring election rules to one received message.

    Raises ValueError for a packet that is neither an election nor an elected message.
    """
    if packet_type == PacketType.ELECTED_PACKET:
        if received_id == my_id:
            return Decision(ElectionAction.BECOME_MAIN, received_id)
        return Decision(ElectionAction.FORWARD_ELECTED, received_id)
    if packet_type != PacketType.ELECTION_PACKET:
        raise ValueError(f"wrong packet type during election: {packet_type}")
    if received_id > my_id:
        return Decision(ElectionAction.FORWARD_ELECTION, received_id)
    if received_id < my_id:
        if participant:
            return Decision(ElectionAction.IGNORE, None)
        return Decision(ElectionAction.FORWARD_ELECTION, my_id)
    return Decision(ElectionAction.ANNOUNCE_ELECTED, my_id)


def _reusable_listener(port: int, backlog: int) -> socket.socket:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        listener.bind(("", port))
        listener.listen(backlog)
    except OSError:
        listener.close()
        raise
    return listener


class RingElection:
    """One server's place in the election ring: a link in and a link out."""

    def __init__(self, servers, hostname: str | None = None) -> None:
        self.servers = servers
        self.hostname = hostname or socket.gethostname()
        self.id = -1
        self.participant = False
        self.listening_socket = None
        self.outgoing_socket = None
        self.incoming_socket = None
        self._incoming_ready = threading.Event()

    @property
    def port(self) -> int | None:
        if self.listening_socket is None:
            return None
        return self.listening_socket.getsockname()[1]

    def bind_incoming(self, port: int = ELECTION_PORT) -> int:
        """Listen for the previous server's link; returns this server's election id."""
        self.listening_socket = _reusable_listener(port, 1)
        self.id = self._own_id()
        _log.info("election id: %d", self.id)
        return self.id

    def accept_incoming(self):
        """Accept the link from the previous server in the ring."""
        if self.listening_socket is None:
            raise RuntimeError("incoming election socket is not bound")
        try:
            conn, _ = self.listening_socket.accept()
        except OSError:
            return None
        self.incoming_socket = conn
        self._incoming_ready.set()
        return conn

    def build_ring(self, port: int = ELECTION_PORT) -> str:
        """Link to the next server and wait for the previous one; returns the next hostname."""
        next_host = self._next_hostname()
        address = socket.gethostbyname(next_host)
        self.outgoing_socket = self._connect((address, port))
        self._incoming_ready.wait()
        return next_host

    def start(self) -> bool:
        """Send this server's id around the ring unless already taking part."""
        if self.participant:
            return False
        self._send(PacketType.ELECTION_PACKET, self.id)
        self.participant = True
        return True

    def handle(self) -> ElectionAction:
        """Receive one election message, act on it and return what was done."""
        self.participant = True
        if self.incoming_socket is None:
            raise RuntimeError("ring is not built")
        packet = Packet.receive(self.incoming_socket)
        if packet.is_empty():
            raise ConnectionError("election link closed")
        fields = packet.fields()
        if not fields:
            raise ValueError("election packet carries no id")
        received_id = int(fields[0])
        decision = decide(self.id, packet.type, received_id, self.participant)
        action = decision.action
        if action is ElectionAction.BECOME_MAIN:
            self.close()
        elif action is ElectionAction.FORWARD_ELECTED:
            self._send(PacketType.ELECTED_PACKET, received_id)
            self.close()
        elif action is ElectionAction.ANNOUNCE_ELECTED:
            _log.info("%s was elected", self.hostname)
            self._send(PacketType.ELECTED_PACKET, self.id)
        elif action is ElectionAction.FORWARD_ELECTION:
            self._send(PacketType.ELECTION_PACKET, decision.id)
        return action

    def close(self) -> None:
        """Close every election socket."""
        for name in ("incoming_socket", "outgoing_socket", "listening_socket"):
            sock = getattr(self, name)
            if sock is not None:
                sock.close()
                setattr(self, name, None)
        self._incoming_ready.clear()

    def _own_id(self) -> int:
        try:
            position = self.servers.get_server_id(self.hostname)
        except KeyError:
            return -1
        return -1 if position is None else position

    def _next_hostname(self) -> str:
        try:
            node = self.servers.find_next_server(self.hostname)
        except KeyError:
            node = None
        if node is None:
            raise LookupError(f"{self.hostname} is not in the server list")
        return node.hostname

    @staticmethod
    def _connect(address) -> socket.socket:
        last_error: OSError | None = None
        for _ in range(_CONNECT_ATTEMPTS):
            try:
                return socket.create_connection(address)
            except OSError as error:
                last_error = error
                time.sleep(_RETRY_SECONDS)
        raise ConnectionError(f"could not link to next server at {address}: {last_error}")

    def _send(self, packet_type, value) -> None:
        if self.outgoing_socket is None:
            raise RuntimeError("ring is not built")
        Packet(packet_type, 1, 1, f"{value}\n").send(self.outgoing_socket)


class BackupServer:
    """A backup server: mirrors the main server and takes over when it goes silent."""

    def __init__(self, state: ServerState, hostname: str | None = None, *,
                 election_port: int = ELECTION_PORT, backup_port: int = BACKUP_PORT,
                 client_port: int = CLIENT_PORT,
                 heartbeat_timeout: float = HEARTBEAT_TIMEOUT) -> None:
        self.state = state
        self.hostname = hostname or socket.gethostname()
        self.election_port = election_port
        self.backup_port = backup_port
        self.client_port = client_port
        self.heartbeat_timeout = heartbeat_timeout
        self.replica = BackupReplica(state)
        self.connection = None

    def run(self, sock) -> bool:
        """Apply the main server's changes until this server is elected; returns True then."""
        self.connection = sock
        election = self._open_election()
        self.replica.last_heartbeat = time.monotonic()
        while True:
            remaining = self.heartbeat_timeout - (time.monotonic() - self.replica.last_heartbeat)
            if remaining <= 0:
                _log.warning("more than %.1f seconds since the last heartbeat", self.heartbeat_timeout)
                self.connection.close()
                if self._hold_election(election):
                    self.evolve_into_main()
                    return True
                election = self._open_election()
                continue
            packet = Packet.receive(self.connection, min(remaining, RECEIVE_TIMEOUT))
            if packet.is_empty():
                time.sleep(min(_POLL_SECONDS, max(remaining, 0.0)))
                continue
            try:
                self.replica.apply(packet, self.connection)
            except (OSError, TransferError, ValueError) as error:
                _log.error("could not apply change from main server: %s", error)

    def evolve_into_main(self) -> int:
        """Leave the backup list, reconnect to devices and backups, and tell the backups."""
        with self.state.servers.lock:
            try:
                self.state.servers.remove_server(self.hostname)
            except KeyError as error:
                _log.info("%s", error)
        self.reconnect_to_clients()
        self.reconnect_to_servers()
        return self.state.broadcast(
            Packet(PacketType.DELETESERVER_PACKET, 1, 1, f"{self.hostname}\n")
        )

    def reconnect_to_clients(self) -> list[tuple[str, str]]:
        """Start serving every known device in its own thread; returns (user, host) pairs."""
        with self.state.clients.lock:
            targets = [
                (node.username, device.hostname)
                for node in self.state.clients
                for device in node.devices
                if device.hostname
            ]
        for username, hostname in targets:
            threading.Thread(
                target=self._serve_client, args=(hostname, username), daemon=True
            ).start()
        return targets

    def reconnect_to_servers(self) -> list[str]:
        """Connect to every backup server's waiting port; returns their hostnames."""
        hostnames = [node.hostname for node in self.state.servers]
        for hostname in hostnames:
            sock = self._connect_retrying(hostname, self.backup_port)
            with self.state.servers.lock:
                self.state.servers.add_server(sock, hostname)
        return hostnames

    def await_main_server_connection(self):
        """Wait for the newly elected main server to connect; returns the socket."""
        with _reusable_listener(self.backup_port, 6) as listener:
            conn, _ = listener.accept()
        return conn

    def _open_election(self) -> RingElection:
        election = RingElection(self.state.servers, self.hostname)
        election.bind_incoming(self.election_port)
        threading.Thread(target=election.accept_incoming, daemon=True).start()
        return election

    def _hold_election(self, election: RingElection) -> bool:
        election.build_ring(self.election_port or election.port)
        election.start()
        while True:
            action = election.handle()
            if action is ElectionAction.BECOME_MAIN:
                return True
            if action is ElectionAction.FORWARD_ELECTED:
                self.connection = self.await_main_server_connection()
                self.replica.last_heartbeat = time.monotonic()
                return False

    def _serve_client(self, hostname: str, username: str) -> None:
        try:
            ClientSession(self.state).connect_to_client(hostname, username, self.client_port)
        except (OSError, TransferError, ValueError) as error:
            _log.error("could not serve %s on %s: %s", username, hostname, error)

    @staticmethod
    def _connect_retrying(hostname: str, port: int) -> socket.socket:
        address = socket.gethostbyname(hostname)
        while True:
            try:
                return socket.create_connection((address, port))
            except OSError as error:
                _log.error("ERROR connecting to backup %s: %s", hostname, error)
                time.sleep(_RETRY_SECONDS)