import re
import socket
import threading

import pytest

from docsync.client_com import ClientComManager
from docsync.client_files import ClientFileManager
from docsync.client_list import ClientFullError
from docsync.commands import Command, ServerSetupError, ServerStatus
from docsync.file_transfer import receive_file
from docsync.packet import Packet, PacketType
from docsync.server_files import ServerFileManager
from docsync.session import ClientSession, ServerState, format_file_times

STAMP = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


@pytest.fixture
def state(tmp_path):
    return ServerState(files=ServerFileManager(tmp_path / "server"))


@pytest.fixture
def channels():
    pairs = [socket.socketpair() for _ in range(3)]
    yield pairs
    for a, b in pairs:
        a.close()
        b.close()


@pytest.fixture
def session(state, channels):
    (_, s_cmd), (_, s_up), (_, s_fetch) = channels
    current = ClientSession(state, s_cmd, s_up, s_fetch)
    current.username = "alice"
    current.hostname = "laptop"
    state.clients.add_device("alice", "laptop", current.sockets)
    return current


@pytest.fixture
def backup():
    pair = socket.socketpair()
    yield pair
    for sock in pair:
        sock.close()


def client_for(tmp_path, channels):
    manager = ClientFileManager(tmp_path / "client")
    manager.create_sync_dir()
    com = ClientComManager(manager, "alice", "laptop")
    (c_cmd, _), (c_up, _), (c_fetch, _) = channels
    com.set_sockets(c_cmd, c_up, c_fetch)
    return com


def test_format_file_times(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("a")
    lines = format_file_times(path).split("\n")
    assert lines[0] == str(path)
    assert all(STAMP.match(line) for line in lines[1:4])
    assert lines[4:] == [""]


def test_format_file_times_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        format_file_times(tmp_path / "missing.txt")


def test_broadcast_skips_unconnected(state, backup):
    state.servers.add_server(None, "b1")
    state.servers.add_server(backup[0], "b2")
    assert state.broadcast(Packet(PacketType.HEARTBEAT_PACKET, 1, 1, b"x")) == 1
    received = Packet.receive(backup[1], timeout=5)
    assert received.type == PacketType.HEARTBEAT_PACKET
    assert received.payload == b"x"


def test_start_communications_sends_sync_dir(state, channels, tmp_path):
    user_dir = state.files.user_dir("alice")
    user_dir.mkdir(parents=True)
    (user_dir / "a.txt").write_bytes(b"first")
    (user_dir / "b.txt").write_bytes(b"second" * 400)
    (_, s_cmd), (_, s_up), (_, s_fetch) = channels
    current = ClientSession(state, s_cmd, s_up, s_fetch)
    client = client_for(tmp_path, channels)
    outcome = []
    worker = threading.Thread(target=lambda: outcome.append(current.start_communications()))
    worker.start()
    received = client.get_sync_dir()
    worker.join(5)
    assert outcome == [True]
    assert sorted(received) == ["a.txt", "b.txt"]
    assert (client.file_manager.sync_dir / "b.txt").read_bytes() == b"second" * 400
    node = state.clients.get_client("alice")
    assert node.device1.hostname == "laptop"
    assert node.device1.download_socket is s_fetch


def test_start_communications_full_client(state, channels, tmp_path):
    state.clients.add_device("alice", "desk", (1, 2, 3))
    state.clients.add_device("alice", "phone", (4, 5, 6))
    (_, s_cmd), (_, s_up), (_, s_fetch) = channels
    current = ClientSession(state, s_cmd, s_up, s_fetch)
    client = client_for(tmp_path, channels)
    outcome = []
    worker = threading.Thread(target=lambda: outcome.append(current.start_communications()))
    worker.start()
    with pytest.raises(ClientFullError):
        client.get_sync_dir()
    worker.join(5)
    assert outcome == [False]
    hostnames = [d.hostname for d in state.clients.get_client("alice").devices]
    assert hostnames == ["desk", "phone"]


def test_upload_stores_and_propagates(session, state, channels, tmp_path, backup):
    state.servers.add_server(backup[0], "backup1")
    client = client_for(tmp_path, channels)
    data = bytes(range(256)) * 12
    source = tmp_path / "notes.txt"
    source.write_bytes(data)

    client.upload(source)
    stored = session.upload(Packet.receive(session.cmd_socket, timeout=5))

    assert stored == state.files.user_dir("alice") / "notes.txt"
    assert stored.read_bytes() == data
    assert client.await_sync() == "/notes.txt"
    assert (client.file_manager.sync_dir / "notes.txt").read_bytes() == data
    announce = Packet.receive(backup[1], timeout=5)
    assert announce.type == PacketType.DATA_PACKET
    assert announce.fields() == [str(stored)]
    copy = tmp_path / "copy.bin"
    receive_file(copy, backup[1])
    assert copy.read_bytes() == data


def test_download_sends_file(session, state, channels, tmp_path):
    user_dir = state.files.user_dir("alice")
    user_dir.mkdir(parents=True)
    (user_dir / "notes.txt").write_bytes(b"content")
    request = Packet(PacketType.CMD_PACKET, Command.DOWNLOAD, 1, "/notes.txt\n")
    assert session.download(request) == user_dir / "notes.txt"
    out = tmp_path / "out.txt"
    receive_file(out, channels[0][0])
    assert out.read_bytes() == b"content"


def test_download_missing_file(session, channels):
    request = Packet(PacketType.CMD_PACKET, Command.DOWNLOAD, 1, "/missing.txt\n")
    with pytest.raises(FileNotFoundError):
        session.download(request)
    assert Packet.receive(channels[0][0], timeout=5).type == PacketType.ERR


def test_delete_server_file(session, state, channels, backup):
    state.servers.add_server(backup[0], "backup1")
    user_dir = state.files.user_dir("alice")
    user_dir.mkdir(parents=True)
    target = user_dir / "notes.txt"
    target.write_bytes(b"gone soon")
    request = Packet(PacketType.CMD_PACKET, Command.DELETE, 1, "/notes.txt\n")

    assert session.delete_server_file(request) is True
    assert not target.exists()
    pushed = Packet.receive(channels[2][0], timeout=5)
    assert (pushed.type, pushed.seqn) == (PacketType.CMD_PACKET, Command.DELETE)
    assert pushed.fields() == ["/notes.txt"]
    assert Packet.receive(backup[1], timeout=5).fields() == [str(target)]
    assert session.delete_server_file(request) is False


def test_list_server(session, state, channels, tmp_path):
    user_dir = state.files.user_dir("alice")
    user_dir.mkdir(parents=True)
    (user_dir / "a.txt").write_text("a")
    (user_dir / "b.txt").write_text("b")
    listed = session.list_server()
    assert listed == [str(user_dir / "a.txt"), str(user_dir / "b.txt")]
    times = client_for(tmp_path, channels).list_server()
    assert [t.name for t in times] == ["a.txt", "b.txt"]
    assert [(t.total, t.index) for t in times] == [(2, 0), (2, 1)]
    assert all(STAMP.match(t.mtime) for t in times)


def test_list_server_empty(session, channels):
    assert session.list_server() == []
    assert Packet.receive(channels[0][0], timeout=5).type == PacketType.ERR


def test_await_command_packet_until_exit(session, state, channels, backup):
    state.servers.add_server(backup[0], "backup1")
    c_cmd = channels[0][0]
    Packet(PacketType.CMD_PACKET, Command.GET_SYNC_DIR, 1, "alice\nlaptop\n").send(c_cmd)
    Packet(PacketType.CMD_PACKET, Command.EXIT, 1, b"").send(c_cmd)

    session.await_command_packet()

    assert Packet.receive(c_cmd, timeout=5).type == PacketType.ERR
    assert Packet.receive(c_cmd, timeout=5).type == PacketType.SUCCESS
    notice = Packet.receive(backup[1], timeout=5)
    assert notice.type == PacketType.DELETEDEVICE_PACKET
    assert notice.fields() == ["alice", "laptop"]
    assert len(state.clients) == 0
    assert session.cmd_socket.fileno() == -1


def test_await_command_packet_lost_connection(session, state, channels):
    channels[0][0].close()
    session.await_command_packet()
    assert state.clients.get_client("alice") is None


def test_bind_client_sockets(state, channels):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(3)
    address = listener.getsockname()
    c_cmd, s_cmd = channels[0]
    peers = [socket.create_connection(address) for _ in range(2)]
    Packet(PacketType.CMD_PACKET, Command.GET_SYNC_DIR, 1, "alice\nlaptop\n").send(c_cmd)
    current = ClientSession(state)
    try:
        assert current.bind_client_sockets(listener, s_cmd) is True
        device = state.clients.get_client("alice").device1
        assert device.hostname == "laptop"
        assert device.download_socket is current.fetch_socket
        assert Packet.receive(c_cmd, timeout=5).type == PacketType.ERR
    finally:
        for sock in (*peers, listener, current.upload_socket, current.fetch_socket):
            if sock is not None:
                sock.close()


def test_bind_client_sockets_closed_listener(state, channels):
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.close()
    with pytest.raises(ServerSetupError) as excinfo:
        ClientSession(state).bind_client_sockets(listener, channels[0][1])
    assert excinfo.value.status is ServerStatus.FAILED_TO_ACCEPT_UPLOAD_SOCKET


def test_connect_to_client(state, tmp_path):
    user_dir = state.files.user_dir("alice")
    user_dir.mkdir(parents=True)
    (user_dir / "a.txt").write_text("a")
    state.clients.add_device("alice", "127.0.0.1", None)
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(3)
    port = listener.getsockname()[1]
    current = ClientSession(state)
    worker = threading.Thread(target=current.connect_to_client, args=("127.0.0.1", "alice", port))
    worker.start()
    accepted = [listener.accept()[0] for _ in range(3)]
    try:
        cmd = accepted[0]
        Packet(PacketType.CMD_PACKET, Command.LIST_SERVER, 1, "alice\n0").send(cmd)
        listing = Packet.receive(cmd, timeout=5)
        assert listing.type == PacketType.DATA_PACKET
        assert listing.fields()[0] == str(user_dir / "a.txt")
        assert Packet.receive(cmd, timeout=5).type == PacketType.SUCCESS
        Packet(PacketType.CMD_PACKET, Command.EXIT, 1, b"").send(cmd)
        worker.join(5)
    finally:
        for sock in (*accepted, listener):
            sock.close()
    assert not worker.is_alive()
    assert len(state.clients) == 0