"""Sending and receiving whole files as a sequence of data packets."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from .packet import MAX_PAYLOAD_SIZE, Packet, PacketType


class TransferError(Exception):
    """Raised when the peer aborts a file transfer."""


def send_file(file_path, sock) -> int:
    """Send a file in payload-sized fragments and return the packet count.

    If the file cannot be opened, an ERR packet tells the peer not to wait
    for it and the OSError is raised.
    """
    try:
        handle = open(file_path, "rb")
    except OSError as error:
        print(f"Error: Cannot open file {file_path}", file=sys.stderr)
        Packet().send(sock)
        raise error
    with handle:
        size = os.fstat(handle.fileno()).st_size
        total = max(1, -(-size // MAX_PAYLOAD_SIZE))
        sent = 0
        for seq, chunk in enumerate(iter(lambda: handle.read(MAX_PAYLOAD_SIZE), b"")):
            Packet(PacketType.DATA_PACKET, seq, total, chunk).send(sock)
            sent += 1
        if sent == 0:
            # An empty file still needs one packet so the receiver can finish.
            Packet(PacketType.DATA_PACKET, 0, total, b"").send(sock)
            sent = 1
    return sent


def receive_file(output_path, sock) -> int:
    """Receive a file into output_path and return the number of bytes written.

    Parent directories are created as needed. If an ERR packet arrives the
    partial file is removed and TransferError is raised.
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    received = 0
    aborted = False
    with open(path, "wb") as out:
        while True:
            packet = Packet.receive(sock)
            if packet.type == PacketType.ERR:
                aborted = True
                break
            out.write(packet.payload)
            written += packet.length
            received += 1
            if received >= packet.total_size:
                break
    if aborted:
        path.unlink(missing_ok=True)
        raise TransferError(
            f"received error packet, transfer of {output_path} aborted"
        )
    return written