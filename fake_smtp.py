# fake_smtp.py
import os
import socket
import logging
import threading
import signal
import sys

from smtp_config import PRODUCT, __version__, load_settings
from smtp_registry import SessionRegistry
from smtp_reputation import DnsResolver
from smtp_session import SMTPSession

log = logging.getLogger("fake-smtp")

LOG_FORMAT = "%(asctime)s %(levelname)s [fake-smtp] %(message)s"


def configure_logging(settings):
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    if not settings.log_path:
        return
    os.makedirs(settings.log_path, exist_ok=True)

    app = logging.FileHandler(os.path.join(settings.log_path, "fakesmtp.log"), encoding="utf-8")
    app.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(app)

    # session records only go to their own file
    sessions = logging.getLogger("fake-smtp.sessions")
    handler = logging.FileHandler(os.path.join(settings.log_path, "smtpsess.log"), encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    sessions.addHandler(handler)
    sessions.setLevel(logging.INFO)
    sessions.propagate = False


def dump_settings(settings):
    rows = [
        ("Host name", settings.host_name),
        ("Listen IP", settings.bind_ip),
        ("Listen port", settings.port),
        ("Receive timeout", settings.receive_timeout),
        ("Max errors", settings.max_errors),
        ("Max NOOP", settings.max_noop),
        ("Max VRFY/EXPN", settings.max_vrfy),
        ("Max RCPT TO", settings.max_rcpt),
        ("Max messages per session", settings.max_messages),
        ("Max parallel sessions", settings.max_sessions),
        ("Store message data", settings.store_data),
        ("Storage path", settings.store_path),
        ("Max message size", settings.max_data_size),
        ("Logfiles path", settings.log_path),
        ("Verbose logging", settings.verbose),
        ("Initial banner delay", settings.banner_delay),
        ("Error delay", settings.error_delay),
        ("Do tempfail (4xx) on DATA", settings.do_tempfail),
        ("Check for early talkers", settings.early_talk),
        ("DNS whitelists", len(settings.whitelists)),
        ("DNS blacklists", len(settings.blacklists)),
        ("Local domains", len(settings.local_domains)),
        ("Local mailboxes", len(settings.local_mailboxes)),
    ]
    for name, value in rows:
        log.info("%s: %s", name.ljust(27, "."), value)


def handle_client(conn: socket.socket, addr, settings, registry, resolve):
    try:
        SMTPSession(conn, addr, settings, registry, resolve).handle()
    except Exception as e:
        log.exception("error in client handler: %s", e)
        try:
            conn.close()
        except OSError:
            pass


def serve_forever(settings, registry=None, resolve=None, stop=None):
    registry = registry or SessionRegistry()
    stop = stop or threading.Event()

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as srv:
        srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        srv.bind((settings.bind_ip, settings.port))
        srv.listen(64)
        log.info("Listening for connections on %s:%s", settings.bind_ip, settings.port)

        srv.settimeout(1.0)
        while not stop.is_set():
            try:
                conn, addr = srv.accept()
            except socket.timeout:
                continue
            # accept() failing for any other reason is fatal
            threading.Thread(
                target=handle_client,
                args=(conn, addr, settings, registry, resolve),
                daemon=True,
            ).start()

        log.info("server exiting")


def main():
    settings = load_settings()
    configure_logging(settings)
    log.info("%s %s starting up (Python %s)", PRODUCT, __version__, sys.version.split()[0])
    if settings.verbose:
        dump_settings(settings)

    resolve = DnsResolver() if (settings.whitelists or settings.blacklists) else None

    stop = threading.Event()

    def _stop(*_):
        stop.set()
        log.info("shutdown requested…")

    # Note: SIGTERM may not be delivered on Windows; Ctrl-C (SIGINT) works.
    try:
        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
    except (ValueError, OSError):
        pass

    try:
        serve_forever(settings, resolve=resolve, stop=stop)
    except Exception as e:
        log.exception("fatal: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
