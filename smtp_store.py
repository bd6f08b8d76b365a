# smtp_store.py
import os
import uuid
import logging

log = logging.getLogger("fake-smtp")

WRITE_ERROR = "write_error"


def envelope_headers(host_name, envelope):
    """X-FakeSMTP-* lines describing the session and the envelope."""
    listing = envelope.get("listing")
    lines = [
        f"X-FakeSMTP-HostName: {host_name}",
        f"X-FakeSMTP-Sessions: count={envelope['ordinal']}, id={envelope['session_id']}",
        f"X-FakeSMTP-MsgCount: {envelope['message_count']}",
        f"X-FakeSMTP-SessDate: {envelope['start_time']:%Y-%m-%d %H:%M:%SZ}",
        f"X-FakeSMTP-ClientIP: {envelope['client_ip']}",
    ]
    if listing is not None:
        lines.append(f"X-FakeSMTP-DnsList: type={listing.kind}, list={listing.name}, result={listing.value}")
    else:
        lines.append("X-FakeSMTP-DnsList: type=notlisted, list=none, result=0.0.0.0")
    lines.append(f"X-FakeSMTP-Helo: {envelope['helo']}")
    lines.append(f"X-FakeSMTP-MailFrom: {envelope['mail_from']}")
    rcpt_to = envelope["rcpt_to"]
    lines.append(f"X-FakeSMTP-RcptCount: {len(rcpt_to)}")
    for i, rcpt in enumerate(rcpt_to, 1):
        lines.append(f"X-FakeSMTP-RcptTo-{i}: {rcpt}")
    lines.append(
        "X-FakeSMTP-Counters: noop={noops}, vrfy={vrfys}, err={errors}".format(**envelope)
    )
    return lines


class MessageStore:
    def __init__(self, path, host_name):
        self.path = path
        self.host_name = host_name

    def save(self, envelope, body_lines):
        """Write one message file; returns its name or WRITE_ERROR.

        ``body_lines`` are the raw captured lines (bytes, no CRLF) and are
        written back untouched after the headers.
        """
        name = f"mailmsg-{uuid.uuid4().hex[:12]}.txt"
        try:
            os.makedirs(self.path, exist_ok=True)
            with open(os.path.join(self.path, name), "wb") as fp:
                for line in envelope_headers(self.host_name, envelope):
                    fp.write(line.encode("utf-8") + b"\r\n")
                for line in body_lines:
                    fp.write(line + b"\r\n")
        except OSError as e:
            log.error("cannot store message for %s: %s", envelope.get("session_id"), e)
            return WRITE_ERROR
        return name
