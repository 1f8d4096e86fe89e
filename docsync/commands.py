"""Command codes exchanged between client and server, and server set-up statuses."""

from __future__ import annotations

from enum import Enum, IntEnum


class Command(IntEnum):
    """Commands a client sends in the sequence field of a command packet."""

    UPLOAD = 0x0001
    DOWNLOAD = 0x0002
    DELETE = 0x0003
    LIST_SERVER = 0x0004
    LIST_CLIENT = 0x0005
    EXIT = 0x0006
    GET_SYNC_DIR = 0x0007
    NO_COMMAND = 0x0008


class ServerStatus(Enum):
    """Outcome of setting up a server socket; the value is its message."""

    OK = "OK"
    FAILED_TO_CREATE_SOCKET = "FAILED TO CREATE SOCKET\n"
    FAILED_TO_BIND_SOCKET = "FAILED TO BIND SOCKET\n"
    FAILED_TO_ACCEPT_CMD_SOCKET = "FAILED TO ACCEPT CMD SOCKET\n"
    FAILED_TO_ACCEPT_UPLOAD_SOCKET = "FAILED TO ACCEPT UPLOAD SOCKET\n"
    FAILED_TO_ACCEPT_FETCH_SOCKET = "FAILED TO ACCEPT FETCH SOCKET\n"

    def describe(self) -> str:
        """Return the human readable message for this status."""
        return self.value


class ServerSetupError(Exception):
    """Raised when a server socket cannot be created, bound or accepted."""

    def __init__(self, status: ServerStatus, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        message = status.describe().strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)