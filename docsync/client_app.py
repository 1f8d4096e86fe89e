"""The client program: command prompt, directory watcher, sync receiver and reconnection."""

from __future__ import annotations

import argparse
import logging
import select
import socket
import sys
import threading
from pathlib import Path

from .client_com import ClientComManager
from .client_files import DEFAULT_SYNC_DIR, ClientFileManager
from .client_list import ClientFullError
from .commands import Command
from .file_transfer import TransferError

CLIENT_PORT = 4008
_POLL_SECONDS = 0.2

_log = logging.getLogger(__name__)

_OPTIONS = {
    1: Command.UPLOAD,
    2: Command.DOWNLOAD,
    3: Command.DELETE,
    4: Command.LIST_SERVER,
    5: Command.LIST_CLIENT,
    6: Command.EXIT,
    7: Command.GET_SYNC_DIR,
}

_PROMPTS = {
    Command.UPLOAD: "\nPath of the file to upload: ",
    Command.DOWNLOAD: "\nName of the file to download: ",
    Command.DELETE: "\nName of the file to delete: ",
}

# Commands after which the server sends an acknowledgement on the command socket.
_ACKNOWLEDGED = {
    Command.UPLOAD,
    Command.DOWNLOAD,
    Command.DELETE,
    Command.LIST_SERVER,
    Command.GET_SYNC_DIR,
}

_MENU = """

Choose one of the options below:
1. upload <path/filename.ext> - send the file to the server and sync it to your devices.
2. download <filename.ext> - download an unsynchronised copy of a file from the server.
3. delete <filename.ext> - delete the file from the local sync_dir.
4. list_server - list the files stored on the server for this user.
5. list_client - list the files in the local sync_dir.
6. exit - close the session with the server."""


def command_from_option(option) -> Command:
    """Map a menu number to its command; anything else is NO_COMMAND."""
    try:
        number = int(str(option).strip())
    except ValueError:
        return Command.NO_COMMAND
    return _OPTIONS.get(number, Command.NO_COMMAND)


def _bind_listening_socket(port: int) -> socket.socket:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        listener.bind(("", port))
    except OSError:
        listener.close()
        raise
    return listener


def _report(command: Command, result) -> None:
    if command is Command.LIST_SERVER:
        for entry in result or []:
            print(f"Received file times for: {entry.name}")
            print(f"Modification time (MTime): {entry.mtime}")
            print(f"Access time (ATime): {entry.atime}")
            print(f"Change/Creation time (CTime): {entry.ctime}\n")
    elif command is Command.LIST_CLIENT:
        if result:
            print("Files in sync_dir:")
            for name in result:
                print(f"- {name}")
        else:
            print("The sync_dir directory is empty.")
    elif command is Command.DOWNLOAD:
        print(f"Downloaded to {result}")
    elif command is Command.DELETE:
        print("File deleted." if result else "File not found or unable to delete.")
    elif command is Command.GET_SYNC_DIR:
        for name in result or []:
            print(f"- {name}")


class Client:
    """One device: ties the file manager and the communication manager together."""

    def __init__(self, sync_dir=DEFAULT_SYNC_DIR, listen_port: int = CLIENT_PORT) -> None:
        self.file_manager = ClientFileManager(sync_dir)
        self.communication = ClientComManager(self.file_manager)
        self.listen_port = listen_port
        self.stop_event = threading.Event()

    def start(self, username: str, host: str, port: int) -> None:
        """Connect to the server and run until the user exits."""
        if self.file_manager.create_sync_dir():
            print("Directory created")
        else:
            print("Directory already exists")
        self.communication.connect(username, host, port)

        workers = [
            threading.Thread(target=self.file_manager.watch, args=(self.stop_event,), daemon=True),
            threading.Thread(target=self._download_loop, daemon=True),
        ]
        listener = None
        try:
            listener = _bind_listening_socket(self.listen_port)
        except OSError as error:
            _log.error("could not bind reconnection socket: %s", error)
        else:
            workers.append(
                threading.Thread(target=self.accept_connections, args=(listener,), daemon=True)
            )
        for worker in workers:
            worker.start()
        try:
            self.command_loop()
        finally:
            self.stop_event.set()
            for worker in workers:
                worker.join(timeout=2)
            if listener is not None:
                listener.close()

    def command_loop(self, input_func=input) -> list[Command]:
        """Read menu options until exit or end of input; returns the commands run."""
        executed: list[Command] = []
        while not self.stop_event.is_set():
            print(_MENU)
            try:
                command = command_from_option(input_func("\nEnter the number of the option: "))
                argument = input_func(_PROMPTS[command]) if command in _PROMPTS else None
            except EOFError:
                break
            executed.append(command)
            result = None
            failed = False
            try:
                result = self.communication.execute_command(command, argument)
            except (OSError, TransferError, ValueError, ClientFullError) as error:
                failed = True
                print(f"Error: {error}", file=sys.stderr)
            else:
                _report(command, result)
            if command is Command.EXIT:
                print(" shutting down... bye bye")
                self.stop_event.set()
                break
            if command in _ACKNOWLEDGED and not (command is Command.DELETE and (failed or not result)):
                if self.communication.get_response():
                    print("All good.")
                else:
                    print("Error processing request.", file=sys.stderr)
        return executed

    def _download_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                touched = self.communication.await_sync()
            except (OSError, TransferError, ValueError) as error:
                _log.error("sync from server failed: %s", error)
                touched = None
            if touched is None:
                self.stop_event.wait(_POLL_SECONDS)

    def accept_connections(self, listening_socket) -> None:
        """Accept a new server's three connections and switch the sockets to them."""
        listening_socket.listen(3)
        while not self.stop_event.is_set():
            try:
                ready, _, _ = select.select([listening_socket], [], [], _POLL_SECONDS)
            except (OSError, ValueError):
                return
            if not ready:
                continue
            try:
                first, _ = listening_socket.accept()
            except OSError:
                return
            self.communication.close_sockets()
            try:
                second, _ = listening_socket.accept()
                third, _ = listening_socket.accept()
            except OSError as error:
                _log.error("reconnection failed: %s", error)
                first.close()
                continue
            self.communication.set_sockets(first, second, third)
            self.file_manager.set_sockets(first, second, third)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="docsync-client", description="Synchronise a directory with a server.")
    parser.add_argument("username")
    parser.add_argument("host")
    parser.add_argument("port", type=int)
    parser.add_argument("--sync-dir", default=str(DEFAULT_SYNC_DIR))
    parser.add_argument("--listen-port", type=int, default=CLIENT_PORT)
    args = parser.parse_args(argv)

    client = Client(Path(args.sync_dir), args.listen_port)
    try:
        client.start(args.username, args.host, args.port)
    except ClientFullError as error:
        print(f"Connection refused: {error}", file=sys.stderr)
        return 1
    except OSError as error:
        print(f"ERROR connecting to server: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())