# docsync

docsync keeps a user's sync directory the same across up to two devices. It
does this through a central server. Any number of backup servers copy the main
server's state. When the main server stops sending heartbeats, the backups
hold a ring election, and the winner takes over as the main server.

## Installation

```
pip install .
```

To run the tests, install the test extra and run pytest:

```
pip install .[test]
pytest
```

## Running a server

Start the main server. It listens on port 4000 unless you give it another port:

```
docsync-server
docsync-server 5000
```

The server keeps one directory per user, named `sync_dir_<username>`, under
`userDirectories` in the current directory. Use `--base-dir` to choose another
location:

```
docsync-server --base-dir /srv/docsync
```

Start a backup server by giving it the main server's host and port:

```
docsync-server main-host 4000
```

A backup server first receives the main server's list of backup servers, its
list of client devices and every stored file. After that it applies each
change as the main server sends it: file writes and deletions, devices that
join or leave, and backups that join or leave.

The main server sends a heartbeat to every backup every 5 seconds. If a backup
goes more than 6 seconds without hearing from the main server, the backups
link into a ring on port 3999 and elect a new leader. The elected backup then:

- leaves the backup list and tells the other backups so,
- connects back to every known client device on port 4008,
- connects to the other backups, which wait on port 4001,
- binds port 4000 and serves as the main server.

## Running a client

```
docsync-client <username> <server-host> <port>
```

Options:

- `--sync-dir DIR` – the local directory to keep in sync (default `sync_dir`)
- `--listen-port PORT` – the port on which a newly elected server reconnects
  (default 4008)

When the client connects, it empties its local sync directory and then
downloads the user's files from the server. From then on, changes go both ways:

- Files you write or delete in the sync directory are sent to the server.
- Changes the server pushes from your other device are applied locally.

An interactive menu offers these options:

1. `upload` – send a file to the server, which stores it and pushes it to your devices
2. `download` – fetch an unsynchronised copy of a server file into the current directory
3. `delete` – remove a file from the local sync directory; the watcher then tells the server
4. `list_server` – show the server's files with their modification, access and change times
5. `list_client` – show the names of the files in the local sync directory
6. `exit` – close the session

Entering `7` fetches the whole sync directory from the server again.

Each user can have at most two devices connected at once. A third device is
refused, and the client exits with status 1.

## Library use

The pieces can also be used on their own:

- `docsync.packet.Packet` is the fixed-size wire frame: a 10-byte header and a
  1024-byte payload area. `Packet.to_bytes` and `Packet.from_bytes` convert it,
  and `Packet.send` and `Packet.receive` move it over a socket.
- `docsync.file_transfer.send_file` and `docsync.file_transfer.receive_file`
  move a file as a sequence of data packets. `receive_file` raises
  `TransferError` when the sender aborts.
- `docsync.client_list.ClientList` and `docsync.server_list.ServerList` hold
  the registries of client devices and backup servers.
- `docsync.server_files.ServerFileManager` and
  `docsync.client_files.ClientFileManager` manage the directories on each side.
- `docsync.election.decide` is the pure decision step of the ring election.

## What it does not do

There is no authentication and no encryption: a device is identified only by
the username it sends, and files travel over plain TCP. Only files directly
inside the client's sync directory are watched; subdirectories are not synced.