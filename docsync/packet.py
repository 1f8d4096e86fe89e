"""Fixed-size packets: a 10-byte header followed by a 1024-byte payload area."""

from __future__ import annotations

import select
import struct
from dataclasses import dataclass
from enum import IntEnum

MAX_PAYLOAD_SIZE = 1024

_HEADER = struct.Struct("<HHIH")
HEADER_SIZE = _HEADER.size
PACKET_SIZE = HEADER_SIZE + MAX_PAYLOAD_SIZE


class PacketType(IntEnum):
    ERR = 0x0000
    DATA_PACKET = 0x0001
    CMD_PACKET = 0x0002
    COMM_PACKET = 0x0003
    CLIENTINFO_PACKET = 0x0004
    DELETEDEVICE_PACKET = 0x0005
    SERVERINFO_PACKET = 0x0006
    DELETESERVER_PACKET = 0x0007
    HEARTBEAT_PACKET = 0x0008
    ELECTION_PACKET = 0x0009
    EOT_PACKET = 0x000A
    SUCCESS = 0x000B
    ELECTED_PACKET = 0x000C


@dataclass
class Packet:
    """One protocol packet. A default packet is an empty ERR packet."""

    type: int = PacketType.ERR
    seqn: int = 0
    total_size: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        if isinstance(self.payload, str):
            self.payload = self.payload.encode("utf-8")
        self.payload = bytes(self.payload[:MAX_PAYLOAD_SIZE])

    @property
    def length(self) -> int:
        return len(self.payload)

    def to_bytes(self) -> bytes:
        """Serialise into exactly PACKET_SIZE bytes, zero padded."""
        header = _HEADER.pack(
            int(self.type) & 0xFFFF,
            int(self.seqn) & 0xFFFF,
            int(self.total_size) & 0xFFFFFFFF,
            self.length,
        )
        return (header + self.payload).ljust(PACKET_SIZE, b"\0")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Packet":
        """Parse a full packet; an oversized length field yields an empty packet."""
        if len(data) != PACKET_SIZE:
            raise ValueError(f"packet must be {PACKET_SIZE} bytes, got {len(data)}")
        ptype, seqn, total_size, length = _HEADER.unpack_from(data)
        if length > MAX_PAYLOAD_SIZE:
            return cls()
        payload = data[HEADER_SIZE:HEADER_SIZE + length]
        return cls(ptype, seqn, total_size, payload)

    def send(self, sock) -> None:
        """Write the whole packet to the socket."""
        sock.sendall(self.to_bytes())

    @classmethod
    def receive(cls, sock, timeout: float | None = None) -> "Packet":
        """Read one packet; on timeout, error or a closed peer return an empty packet."""
        try:
            ready, _, _ = select.select([sock], [], [], timeout)
        except (OSError, ValueError):
            return cls()
        if not ready:
            return cls()
        buffer = bytearray()
        while len(buffer) < PACKET_SIZE:
            try:
                chunk = sock.recv(PACKET_SIZE - len(buffer))
            except OSError:
                return cls()
            if not chunk:
                return cls()
            buffer += chunk
        return cls.from_bytes(bytes(buffer))

    def is_empty(self) -> bool:
        return self.type == PacketType.ERR

    def text(self) -> str:
        """Payload as text, up to the first NUL byte."""
        raw = self.payload.split(b"\0", 1)[0]
        return raw.decode("utf-8", "surrogateescape")

    def fields(self) -> list[str]:
        """Non-empty newline separated fields of the payload."""
        return [part for part in self.text().split("\n") if part]