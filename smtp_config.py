# smtp_config.py
import os
import socket
import logging
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

__version__ = "0.2.0"
PRODUCT = "FakeSMTP"

log = logging.getLogger("fake-smtp")

TRUE_WORDS = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    bind_ip: str = "127.0.0.1"
    port: int = 25
    receive_timeout: float = 60.0
    host_name: str = "localhost"
    do_tempfail: bool = False
    store_data: bool = False
    max_data_size: int = 10 * 1024 * 1024
    max_messages: int = 10
    store_path: str = tempfile.gettempdir()
    max_sessions: int = 16
    log_path: Optional[str] = None
    log_level: str = "INFO"
    verbose: bool = False
    early_talk: bool = False
    whitelists: List[str] = field(default_factory=list)
    blacklists: List[str] = field(default_factory=list)
    max_errors: int = 5
    max_noop: int = 7
    max_vrfy: int = 10
    max_rcpt: int = 100
    banner_delay: float = 0.0
    error_delay: float = 0.0
    local_domains: List[str] = field(default_factory=list)
    local_mailboxes: List[str] = field(default_factory=list)


def _int(env, name, default, minimum=None, maximum=None):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("bad %s=%r, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def _float(env, name, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("bad %s=%r, using %s", name, raw, default)
        return default
    return value if value >= 0 else default


def _bool(env, name, default=False):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in TRUE_WORDS


def split_providers(raw):
    """Comma separated DNS list zones, blanks dropped."""
    if not raw:
        return []
    return [p.strip().strip(".") for p in raw.split(",") if p.strip().strip(".")]


def load_list_file(path):
    # one entry per line, blank lines and "#" comments skipped
    entries = []
    try:
        with open(path, "r", encoding="utf-8") as fp:
            for line in fp:
                line = line.strip()
                if line and not line.startswith("#"):
                    entries.append(line.lower())
    except OSError as e:
        log.warning("cannot read list file %s: %s", path, e)
        return []
    return entries


def load_settings(env=None) -> Settings:
    env = os.environ if env is None else env

    host_name = env.get("BANNER_HOST") or socket.getfqdn()
    local_domains = env.get("LOCAL_DOMAINS")
    local_mailboxes = env.get("LOCAL_MAILBOXES")

    receive_timeout = _float(env, "RECEIVE_TIMEOUT", 60.0)
    if receive_timeout <= 0:
        receive_timeout = 60.0

    return Settings(
        bind_ip=env.get("BIND_IP") or "127.0.0.1",
        port=_int(env, "PORT", 25, 1, 65535),
        receive_timeout=receive_timeout,
        host_name=host_name.lower(),
        do_tempfail=_bool(env, "DO_TEMPFAIL"),
        store_data=_bool(env, "STORE_DATA"),
        max_data_size=_int(env, "MAX_DATA_SIZE", 10 * 1024 * 1024, 1),
        max_messages=_int(env, "MAX_MESSAGES", 10, 1),
        store_path=env.get("STORE_PATH") or tempfile.gettempdir(),
        max_sessions=_int(env, "MAX_SESSIONS", 16, 1),
        log_path=env.get("LOG_PATH") or None,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        verbose=_bool(env, "VERBOSE_LOGGING"),
        early_talk=_bool(env, "DO_EARLY_TALK"),
        whitelists=split_providers(env.get("RWL_PROVIDERS")),
        blacklists=split_providers(env.get("RBL_PROVIDERS")),
        max_errors=_int(env, "MAX_SMTP_ERRORS", 5, 1),
        max_noop=_int(env, "MAX_SMTP_NOOP", 7, 1),
        max_vrfy=_int(env, "MAX_SMTP_VRFY", 10, 1),
        max_rcpt=_int(env, "MAX_SMTP_RCPT", 100, 1),
        banner_delay=_float(env, "BANNER_DELAY", 0.0),
        error_delay=_float(env, "ERROR_DELAY", 0.0),
        local_domains=load_list_file(local_domains) if local_domains else [],
        local_mailboxes=load_list_file(local_mailboxes) if local_mailboxes else [],
    )
