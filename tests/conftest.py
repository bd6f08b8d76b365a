import socket
import time
import threading
import dataclasses

import pytest

from smtp_config import Settings
from smtp_registry import SessionRegistry
from smtp_session import SMTPSession


class SMTPClient:
    def __init__(self, sock):
        self.sock = sock
        self.sock.settimeout(5)
        self.buf = b""

    def send(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.sock.sendall(data)

    def read_line(self):
        while b"\n" not in self.buf:
            chunk = self.sock.recv(4096)
            if not chunk:
                return None
            self.buf += chunk
        line, self.buf = self.buf.split(b"\n", 1)
        return line.rstrip(b"\r").decode("utf-8")

    def reply(self):
        lines = []
        while True:
            line = self.read_line()
            if line is None:
                break
            lines.append(line)
            if line[3:4] != "-":
                break
        return "\n".join(lines) if lines else None

    def cmd(self, line):
        self.send(line + "\r\n")
        return self.reply()

    def closed(self):
        return self.read_line() is None


@pytest.fixture
def settings(tmp_path):
    return Settings(
        host_name="mx.test",
        receive_timeout=2.0,
        store_path=str(tmp_path / "store"),
    )


@pytest.fixture
def make_settings(settings):
    def _make(**kw):
        return dataclasses.replace(settings, **kw)
    return _make


@pytest.fixture
def start_session(settings):
    started = []

    def _start(cfg=None, addr=("127.0.0.1", 40000), resolve=None,
               registry=None, preload=None, session_log=None, sleep=None):
        server_sock, client_sock = socket.socketpair()
        client = SMTPClient(client_sock)
        if preload:
            client.send(preload)
        session = SMTPSession(
            server_sock, addr, cfg or settings, registry or SessionRegistry(),
            resolve=resolve, session_log=session_log, sleep=sleep or time.sleep,
        )
        thread = threading.Thread(target=session.handle, daemon=True)
        thread.start()
        started.append((client_sock, thread))
        return client, session, thread

    yield _start

    for sock, thread in started:
        sock.close()
        thread.join(5)
