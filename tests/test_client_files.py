import os
import socket
import time

import pytest

from docsync.client_files import ClientFileManager
from docsync.commands import Command
from docsync.file_transfer import receive_file
from docsync.packet import Packet, PacketType


@pytest.fixture
def manager(tmp_path):
    files = ClientFileManager(tmp_path / "sync_dir")
    files.create_sync_dir()
    return files


@pytest.fixture
def pairs():
    cmd_local, cmd_remote = socket.socketpair()
    up_local, up_remote = socket.socketpair()
    yield (cmd_local, cmd_remote), (up_local, up_remote)
    for sock in (cmd_local, cmd_remote, up_local, up_remote):
        sock.close()


def test_create_sync_dir_reports_existing(tmp_path):
    files = ClientFileManager(tmp_path / "fresh")
    assert files.create_sync_dir() is True
    assert files.create_sync_dir() is False
    assert (tmp_path / "fresh").is_dir()


def test_list_files_only_regular_files_sorted(manager):
    (manager.sync_dir / "b.txt").write_text("b")
    (manager.sync_dir / "a.txt").write_text("a")
    (manager.sync_dir / "sub").mkdir()
    assert manager.list_files() == ["a.txt", "b.txt"]


def test_describe_files_lists_times(manager):
    target = manager.sync_dir / "notes.txt"
    target.write_text("x")
    stamp = time.mktime((2021, 3, 4, 5, 6, 7, 0, 0, -1))
    os.utime(target, (stamp, stamp))
    text = manager.describe_files()
    assert text.startswith("- notes.txt\n")
    assert "  mtime (Modification Time): 2021-03-04 05:06:07\n" in text
    assert "  atime (Access Time): 2021-03-04 05:06:07\n" in text
    assert "  ctime (Change Time): " in text


def test_erase_dir_removes_files_and_marks_them(manager):
    (manager.sync_dir / "one").write_bytes(b"1")
    (manager.sync_dir / "two").write_bytes(b"2")
    assert manager.erase_dir() == ["one", "two"]
    assert manager.list_files() == []
    assert manager.contains_path("/one")
    assert manager.contains_path("/two")


def test_delete_file(manager):
    target = manager.sync_dir / "gone.txt"
    target.write_text("bye")
    assert manager.delete_file(target) is True
    assert not target.exists()
    assert manager.delete_file(target) is False


def test_remove_path_drops_only_first_occurrence(manager):
    manager.add_path("/f")
    manager.add_path("/f")
    manager.remove_path("/f")
    assert manager.paths == ["/f"]
    manager.remove_path("/missing")
    assert manager.paths == ["/f"]
    manager.remove_path("/f")
    assert not manager.contains_path("/f")


def test_closed_write_uploads_file(manager, pairs):
    (cmd_local, cmd_remote), (up_local, up_remote) = pairs
    manager.set_sockets(cmd_local, up_local, None)
    content = b"hello sync"
    (manager.sync_dir / "doc.txt").write_bytes(content)
    assert manager.handle_closed_write("doc.txt") is True

    command = Packet.receive(cmd_remote, 1)
    assert command.type == PacketType.CMD_PACKET
    assert command.seqn == Command.UPLOAD
    assert command.text() == str(manager.sync_dir / "doc.txt") + "\n"

    out = manager.sync_dir.parent / "received" / "doc.txt"
    receive_file(out, up_remote)
    assert out.read_bytes() == content


def test_closed_write_of_marked_file_is_skipped(manager, pairs):
    (cmd_local, cmd_remote), (up_local, _) = pairs
    manager.set_sockets(cmd_local, up_local, None)
    manager.add_path("/doc.txt")
    assert manager.handle_closed_write("doc.txt") is False
    assert not manager.contains_path("/doc.txt")
    assert Packet.receive(cmd_remote, 0.1).is_empty()


def test_deleted_sends_delete_request(manager, pairs):
    (cmd_local, cmd_remote), (up_local, _) = pairs
    manager.set_sockets(cmd_local, up_local, None)
    assert manager.handle_deleted("old.txt") is True
    packet = Packet.receive(cmd_remote, 1)
    assert packet.type == PacketType.CMD_PACKET
    assert packet.seqn == Command.DELETE
    assert packet.text() == "/old.txt\n"


def test_deleted_of_marked_file_is_skipped(manager, pairs):
    (cmd_local, cmd_remote), (up_local, _) = pairs
    manager.set_sockets(cmd_local, up_local, None)
    manager.add_path("/old.txt")
    assert manager.handle_deleted("old.txt") is False
    assert Packet.receive(cmd_remote, 0.1).is_empty()


def test_handlers_need_sockets(manager):
    with pytest.raises(RuntimeError):
        manager.handle_deleted("x.txt")