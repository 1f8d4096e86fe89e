"""The server program: a main server, or a backup that can take over."""

from __future__ import annotations

import argparse
import logging
import socket
import sys
import threading
from enum import Enum
from pathlib import Path

from .commands import ServerSetupError, ServerStatus
from .election import BackupServer
from .file_transfer import TransferError
from .packet import Packet, PacketType
from .replication import add_backup_server, heartbeat_protocol
from .server_files import DEFAULT_BASE_DIR, ServerFileManager, receive_sync_dir_files
from .session import ClientSession, ServerState

MAIN_PORT = 4000

_log = logging.getLogger(__name__)


class PeerKind(Enum):
    """What connected to the main server."""

    CLIENT = "client"
    BACKUP = "backup"


def bind_main_server_socket(port: int) -> socket.socket:
    """Create and bind the main listening socket; ServerSetupError on failure."""
    try:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as error:
        raise ServerSetupError(ServerStatus.FAILED_TO_CREATE_SOCKET, str(error)) from error
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        server.bind(("", port))
    except OSError as error:
        server.close()
        raise ServerSetupError(ServerStatus.FAILED_TO_BIND_SOCKET, str(error)) from error
    return server


def handle_connection(state: ServerState, files: ServerFileManager, server_socket, sock,
                      accept_lock) -> PeerKind:
    """Greet a new connection and serve it as a client device or a backup server.

    accept_lock is released once the peer's connections have all been accepted.
    """
    released = False

    def release() -> None:
        nonlocal released
        if not released:
            released = True
            accept_lock.release()

    try:
        Packet(PacketType.COMM_PACKET).send(sock)
        ack = Packet.receive(sock)
        if ack.is_empty():
            raise ConnectionError("peer closed the connection during the handshake")
        if ack.seqn:
            session = ClientSession(state)
            started = session.bind_client_sockets(server_socket, sock)
            release()
            if started:
                session.await_command_packet()
            else:
                for peer in session.sockets:
                    if peer is not None:
                        peer.close()
            _log.info("ending session for user: %s", session.username)
            return PeerKind.CLIENT
        release()
        fields = ack.fields()
        if not fields:
            raise ValueError("backup server did not send its hostname")
        add_backup_server(state, files, sock, fields[0])
        return PeerKind.BACKUP
    finally:
        release()


def setup_backup_server_socket(host: str, port: int, hostname: str) -> socket.socket:
    """Connect to the main server and announce this backup by hostname."""
    try:
        address = socket.gethostbyname(host)
        sock = socket.create_connection((address, port))
    except OSError as error:
        raise ServerSetupError(ServerStatus.FAILED_TO_CREATE_SOCKET, str(error)) from error
    _log.info("backup server socket connected")
    Packet.receive(sock)
    Packet(PacketType.COMM_PACKET, 0, 1, f"{hostname}\n").send(sock)
    return sock


def _run_handler(state, files, server_socket, sock, accept_lock) -> None:
    try:
        handle_connection(state, files, server_socket, sock, accept_lock)
    except (OSError, TransferError, ValueError, ServerSetupError) as error:
        _log.error("connection failed: %s", error)


def serve(state: ServerState, files: ServerFileManager, port: int = MAIN_PORT) -> None:
    """Listen as the main server and serve every connection in its own thread."""
    server_socket = bind_main_server_socket(port)
    threading.Thread(target=heartbeat_protocol, args=(state,), daemon=True).start()
    server_socket.listen(6)
    print(f"================================\n SERVER LISTENING ON PORT {port}\n"
          "================================")
    accept_lock = threading.Lock()
    with server_socket:
        while True:
            accept_lock.acquire()
            try:
                conn, _ = server_socket.accept()
            except OSError:
                accept_lock.release()
                raise
            threading.Thread(
                target=_run_handler,
                args=(state, files, server_socket, conn, accept_lock),
                daemon=True,
            ).start()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="docsync-server",
        description="Run a main server (optionally on PORT) or a backup of HOST PORT.",
    )
    parser.add_argument("target", nargs="?", help="port of a main server, or host of the main server")
    parser.add_argument("port", nargs="?", type=int, help="port of the main server to back up")
    parser.add_argument("--base-dir", default=str(DEFAULT_BASE_DIR))
    args = parser.parse_args(argv)

    files = ServerFileManager(Path(args.base_dir))
    state = ServerState(files=files)
    try:
        if args.port is None:
            port = MAIN_PORT
            if args.target is not None:
                try:
                    port = int(args.target)
                except ValueError:
                    parser.error(f"invalid port: {args.target}")
            print("Starting main server...")
            serve(state, files, port)
            return 0

        print("Starting backup server...")
        hostname = socket.gethostname()
        sock = setup_backup_server_socket(args.target, args.port, hostname)
        backup = BackupServer(state, hostname)
        backup.replica.receive_server_list(sock)
        backup.replica.receive_client_list(sock)
        receive_sync_dir_files(sock)
        backup.run(sock)
        serve(state, files, MAIN_PORT)
    except ServerSetupError as error:
        print(error.status.describe(), end="", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())