import dataclasses
import logging
import socket
import threading

import fake_smtp
from smtp_registry import SessionRegistry


def test_handle_client_runs_a_session(settings):
    server_sock, client_sock = socket.socketpair()
    registry = SessionRegistry()
    t = threading.Thread(
        target=fake_smtp.handle_client,
        args=(server_sock, ("127.0.0.1", 1025), settings, registry, None),
    )
    t.start()
    client_sock.settimeout(5)
    f = client_sock.makefile("rwb")
    assert f.readline().startswith(b"220 mx.test ")
    f.write(b"QUIT\r\n")
    f.flush()
    assert f.readline() == b"221 Closing connection.\r\n"
    t.join(5)
    client_sock.close()
    assert registry.active == 0


def test_dump_settings(settings, caplog):
    caplog.set_level(logging.INFO, logger="fake-smtp")
    fake_smtp.dump_settings(settings)
    text = caplog.text
    assert "Host name" in text and "mx.test" in text
    assert "Max parallel sessions" in text


def test_configure_logging_writes_session_file(settings, tmp_path):
    cfg = dataclasses.replace(settings, log_path=str(tmp_path / "logs"))
    sessions = logging.getLogger("fake-smtp.sessions")
    app = logging.getLogger("fake-smtp")
    before = (list(sessions.handlers), list(app.handlers), sessions.propagate)
    try:
        fake_smtp.configure_logging(cfg)
        sessions.info("a|b|c")
        for h in sessions.handlers:
            h.flush()
        with open(tmp_path / "logs" / "smtpsess.log", encoding="utf-8") as fp:
            assert fp.read() == "a|b|c\n"
    finally:
        for h in sessions.handlers[len(before[0]):]:
            h.close()
        for h in app.handlers[len(before[1]):]:
            h.close()
        sessions.handlers[:] = before[0]
        app.handlers[:] = before[1]
        sessions.propagate = before[2]
