# smtp_session.py
import time
import select
import socket
import logging
import email.utils
from datetime import datetime, timezone

from smtp_config import PRODUCT, __version__
from smtp_parser import match_verb, split_command, help_text, clean_line
from smtp_address import check_address, is_local_domain, is_local_mailbox
from smtp_reputation import ReputationChecker
from smtp_limits import PolicyLimiter, MSG_EARLY_TALKER
from smtp_store import MessageStore

log = logging.getLogger("fake-smtp")
records = logging.getLogger("fake-smtp.sessions")

DIR_TX = "SND"
DIR_RX = "RCV"

REPLY_DELAY = 0.025
MAX_LINE = 64 * 1024
DRAIN_TIME = 0.2

TEMPFAIL_MSG = "421 Service temporarily unavailable, closing transmission channel."
DNSBL_MSG = "442 Connection from {0} temporarily refused, host listed by {1}"
TIMEOUT_MSG = "442 Connection timed out."
OVERSIZED_MSG = "422 Recipient mailbox exceeded quota limit."
QUEUED_MSG = "250 Queued mail for delivery"

DATE_FMT = "%Y-%m-%d %H:%M:%SZ"


class ReadTimeout(Exception):
    pass


class ConnectionClosed(Exception):
    pass


class LineIO:
    """CRLF line reader/writer over a blocking socket with a receive timeout."""

    def __init__(self, sock: socket.socket, timeout):
        self.sock = sock
        self.buf = b""
        self.sock.settimeout(timeout)

    def send_line(self, line):
        self.sock.sendall(line.encode("utf-8") + b"\r\n")

    def _fill(self):
        try:
            chunk = self.sock.recv(4096)
        except socket.timeout:
            raise ReadTimeout()
        if not chunk:
            raise ConnectionClosed()
        self.buf += chunk

    def recv_bytes(self, limit=MAX_LINE):
        """Read one raw line; returns (bytes without CRLF, full length).

        Only the first ``limit`` bytes are kept. The rest of an overlong
        line is still read up to its real end and counted, then dropped.
        """
        kept = b""
        size = 0
        ends_cr = False
        while True:
            pos = self.buf.find(b"\n")
            if pos >= 0:
                part, self.buf = self.buf[:pos], self.buf[pos + 1:]
            else:
                part, self.buf = self.buf, b""
            if part:
                size += len(part)
                kept += part[:max(limit - len(kept), 0)]
                ends_cr = part.endswith(b"\r")
            if pos >= 0:
                break
            self._fill()
        if ends_cr:
            size -= 1
            kept = kept[:size]
        return kept, size

    def recv_line(self):
        line, _ = self.recv_bytes(MAX_LINE)
        return line.decode("utf-8", errors="replace")

    def pending(self):
        # input already buffered, or waiting on the socket
        if self.buf:
            return True
        try:
            readable, _, _ = select.select([self.sock], [], [], 0)
            if not readable:
                return False
            return bool(self.sock.recv(1, socket.MSG_PEEK))
        except (OSError, ValueError):
            return False


class SMTPSession:
    def __init__(self, conn, addr, settings, registry, resolve=None,
                 session_log=None, sleep=time.sleep):
        self.conn = conn
        self.settings = settings
        self.registry = registry
        self.sleep = sleep
        self.session_log = session_log or records
        self.client_ip = addr[0] if isinstance(addr, (tuple, list)) else str(addr)

        self.reputation = None
        if resolve is not None:
            self.reputation = ReputationChecker(resolve, settings.whitelists, settings.blacklists)
        self.store = MessageStore(settings.store_path, settings.host_name)
        self.limits = PolicyLimiter.from_settings(settings)

        self.io = None
        self.ordinal = 0
        self.session_id = None
        self.start_time = datetime.now(timezone.utc)
        self.listing = None
        self.early_talker = False
        self.helo = None
        self.mail_from = None
        self.rcpt_to = []
        self.message_count = 0
        self.message_file = None
        self.last_logged = -1
        self.last_command = None
        self.closing = False
        self._admitted = False
        self._closed = False

        self.handlers = {
            "helo": self.cmd_helo,
            "ehlo": self.cmd_helo,
            "mail": self.cmd_mail,
            "rcpt": self.cmd_rcpt,
            "data": self.cmd_data,
            "rset": self.cmd_rset,
            "quit": self.cmd_quit,
            "vrfy": self.cmd_vrfy,
            "expn": self.cmd_vrfy,
            "help": self.cmd_help,
            "noop": self.cmd_noop,
        }

    # ---- counters, exposed for logging and tests ----
    @property
    def error_count(self):
        return self.limits.errors

    @property
    def noop_count(self):
        return self.limits.noops

    @property
    def vrfy_count(self):
        return self.limits.vrfys

    # ---- lifecycle ----
    def handle(self):
        """Run the whole dialogue; always releases the registry slot."""
        self.ordinal = self.registry.add_session()
        self._admitted = True
        try:
            self.session_id = self.registry.next_session_id()
            self.io = LineIO(self.conn, self.settings.receive_timeout)
            log.info("client %s connected, sess=%s, ID=%s.", self.client_ip, self.ordinal, self.session_id)
            self._dialogue()
        except (ConnectionClosed, OSError) as e:
            log.debug("session %s transport error: %s", self.session_id, e)
        except Exception as e:
            log.exception("error in session %s: %s", self.session_id, e)
        finally:
            self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._linger()
        try:
            self.conn.close()
        except OSError:
            pass
        if self._admitted:
            self.registry.remove_session()
            log.info("client %s disconnected, sess=%s, ID=%s.", self.client_ip, self.ordinal, self.session_id)
        self.reset_transaction()

    def _linger(self):
        # half-close and swallow unread input, otherwise close() resets
        # the peer before it reads our last reply
        try:
            self.conn.shutdown(socket.SHUT_WR)
            deadline = time.monotonic() + DRAIN_TIME
            while True:
                left = deadline - time.monotonic()
                if left <= 0:
                    break
                self.conn.settimeout(left)
                if not self.conn.recv(4096):
                    break
        except OSError:
            pass

    def _dialogue(self):
        settings = self.settings

        if self.ordinal > settings.max_sessions:
            self.send(TEMPFAIL_MSG)
            return

        if self.reputation is not None:
            listing = self.reputation.check(self.client_ip)
            if listing is not None:
                self.listing = listing
                if listing.kind == "black" and not settings.store_data:
                    self.send(DNSBL_MSG.format(self.client_ip, listing.name))
                    return

        self.sleep(settings.banner_delay)
        self.early_talker = self.is_early_talker()
        if self.early_talker:
            self.send(MSG_EARLY_TALKER)
            return

        if not self.send(self.banner()):
            return

        while True:
            if self.last_command == "data":
                try:
                    body = self.receive_data()
                except ReadTimeout:
                    self.send(TIMEOUT_MSG)
                    return
                if body is None:
                    response = OVERSIZED_MSG
                else:
                    self.store_message(body)
                    if settings.do_tempfail:
                        self.send(TEMPFAIL_MSG)
                        return
                    response = QUEUED_MSG
                self.last_command = "noop"
                self.reset_transaction()
            else:
                try:
                    line = self.io.recv_line()
                except ReadTimeout:
                    self.limits.add_error()
                    response = TIMEOUT_MSG
                    self.closing = True
                else:
                    self.transcript(DIR_RX, line)
                    response = self.dispatch(line)

            self.pace()
            self.early_talker = self.is_early_talker()
            if not self.send(response) or self.closing:
                return

            breach = self.limits.breach(self.message_count, len(self.rcpt_to), self.early_talker)
            if breach is not None:
                self.send(breach)
                return

    def dispatch(self, line):
        tag = match_verb(line)
        handler = self.handlers.get(tag, self.cmd_unknown)
        return handler(line)

    def pace(self):
        # tarpit: the delay grows with the error count, except on the way out
        if self.limits.errors > 0 and not self.closing:
            self.sleep(self.settings.error_delay * self.limits.errors)
        else:
            self.sleep(REPLY_DELAY)

    def is_early_talker(self):
        if not self.settings.early_talk or self.io is None:
            return False
        if self.io.pending():
            self.limits.add_error()
            return True
        return False

    def send(self, line):
        try:
            self.transcript(DIR_TX, line)
            self.io.send_line(line)
            return True
        except OSError as e:
            log.debug("send to %s failed: %s", self.client_ip, e)
            return False

    def transcript(self, direction, line):
        if self.settings.verbose:
            log.info("%s:%s %s: %s", self.client_ip, self.session_id, direction, line)

    def banner(self):
        return f"220 {self.settings.host_name} {PRODUCT} {__version__}; {email.utils.formatdate(usegmt=True)}"

    # ---- commands ----
    def _fail(self, response):
        self.limits.add_error()
        return response

    def cmd_helo(self, line):
        tag = match_verb(line)
        cmd = split_command(tag, line)
        if not cmd.has_argument:
            return self._fail(f"501 {cmd.verb} needs argument")
        if self.helo:
            return self._fail(f"503 you already sent {cmd.verb} ...")
        self.helo = cmd.argument
        self.last_command = tag
        greeting = f"Hello {cmd.argument} ([{self.client_ip}]), nice to meet you."
        if tag == "helo":
            return f"250 {greeting}"
        return "\r\n".join([f"250-{greeting}", "250-HELP", "250-VRFY", "250-EXPN", "250 NOOP"])

    def cmd_mail(self, line):
        if not self.helo:
            return self._fail("503 HELO/EHLO Command not issued")
        if self.mail_from:
            return self._fail("503 Nested MAIL command")
        cmd = split_command("mail", line)
        if not cmd.has_argument:
            return self._fail(f"501 {cmd.verb} needs argument")
        addr = check_address(cmd.argument)
        if not addr.valid:
            return self._fail(f"553 Invalid address {cmd.argument}")
        self.mail_from = addr.address
        self.last_command = "mail"
        return f"250 {addr.address}... Sender ok"

    def cmd_rcpt(self, line):
        if not self.mail_from:
            return self._fail("503 Need MAIL before RCPT")
        cmd = split_command("rcpt", line)
        if not cmd.has_argument:
            return self._fail(f"501 {cmd.verb} needs argument")
        addr = check_address(cmd.argument)
        if not addr.valid:
            return self._fail(f"553 Invalid address {cmd.argument}")
        if not is_local_domain(addr.domain, self.settings.local_domains):
            return self._fail("530 Relaying not allowed for policy reasons")
        if not is_local_mailbox(addr.mailbox, addr.domain, self.settings.local_mailboxes):
            return self._fail(f"553 Unknown email address {addr.address}")
        self.rcpt_to.append(addr.address)
        self.last_command = "rcpt"
        return f"250 {addr.address}... Recipient ok"

    def cmd_data(self, line):
        if self.settings.do_tempfail and not self.settings.store_data:
            self.closing = True
            self.last_command = "quit"
            return TEMPFAIL_MSG
        if not self.rcpt_to:
            return self._fail("471 Bad or missing RCPT command")
        self.last_command = "data"
        return "354 Start mail input; end with <CRLF>.<CRLF>"

    def cmd_rset(self, line):
        self.reset_transaction()
        self.last_command = "rset"
        return "250 Reset Ok"

    def cmd_quit(self, line):
        self.closing = True
        self.last_command = "quit"
        return "221 Closing connection."

    def cmd_vrfy(self, line):
        tag = match_verb(line)
        self.limits.add_vrfy()
        cmd = split_command(tag, line)
        if not cmd.has_argument:
            return self._fail(f"501 {cmd.verb} needs argument")
        addr = check_address(cmd.argument)
        if not addr.valid:
            return self._fail(f"553 Invalid address {cmd.argument}")
        self.last_command = tag
        if tag == "vrfy":
            return "252 Cannot VRFY user; try RCPT to attempt delivery (or try finger)"
        return f"250 {addr.address}"

    def cmd_noop(self, line):
        self.limits.add_noop()
        cmd = split_command("noop", line)
        if cmd.has_argument:
            return f"250 ({cmd.argument}) OK"
        return "250 OK"

    def cmd_help(self, line):
        return help_text()

    def cmd_unknown(self, line):
        self.last_command = None
        line = clean_line(line)
        if not line:
            return self._fail("500 Command unrecognized")
        return self._fail(f"500 Command unrecognized ({line})")

    # ---- DATA ----
    def receive_data(self):
        """Read body lines up to a lone ".".

        Returns the captured raw lines (empty when storage is off), or None
        when the message went over max_data_size. Lines past the limit are
        read and dropped until the terminator shows up.
        """
        lines = []
        size = 0
        oversized = False
        max_size = self.settings.max_data_size
        while True:
            # never keep more than what still fits in the message
            line, length = self.io.recv_bytes(max(max_size - size, 0) + 1)
            if length == 1 and line == b".":
                break
            size += length + 2
            if size > max_size:
                oversized = True
            elif self.settings.store_data:
                lines.append(line)
        if oversized:
            return None
        return lines

    def envelope(self):
        return {
            "ordinal": self.ordinal,
            "session_id": self.session_id,
            "message_count": self.message_count,
            "start_time": self.start_time,
            "client_ip": self.client_ip,
            "listing": self.listing,
            "helo": self.helo,
            "mail_from": self.mail_from,
            "rcpt_to": list(self.rcpt_to),
            "noops": self.limits.noops,
            "vrfys": self.limits.vrfys,
            "errors": self.limits.errors,
        }

    def store_message(self, lines):
        self.message_count += 1
        if self.settings.store_data:
            self.message_file = self.store.save(self.envelope(), lines)

    # ---- transactions ----
    def reset_transaction(self):
        self.log_transaction()
        self.mail_from = None
        self.rcpt_to = []
        self.message_file = None
        self.limits.reset()

    def log_transaction(self):
        if self.last_logged == self.message_count:
            return
        self.last_logged = self.message_count

        if self.listing is not None:
            listing = [self.listing.kind, self.listing.name, self.listing.value]
        else:
            listing = ["-not-listed-", "-none-", "0.0.0.0"]
        cols = [
            datetime.now(timezone.utc).strftime(DATE_FMT),
            self.start_time.strftime(DATE_FMT),
            str(self.session_id),
            self.client_ip,
            self.helo or "-no-helo-",
            self.mail_from or "-no-from-",
            str(len(self.rcpt_to)),
            ",".join(self.rcpt_to) or "-no-rcpt-",
            str(self.message_count),
            self.message_file or "-no-file-",
        ] + listing + [
            "1" if self.early_talker else "0",
            str(self.limits.noops),
            str(self.limits.vrfys),
            str(self.limits.errors),
        ]
        self.session_log.info("|".join(cols))
