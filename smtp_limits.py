# smtp_limits.py

MSG_MESSAGES = "451 Session messages count exceeded"
MSG_ERRORS = "550 Max errors exceeded"
MSG_VRFY = "451 Max recipient verification exceeded"
MSG_NOOP = "451 Max NOOP count exceeded"
MSG_RCPT = "452 Too many recipients"
MSG_EARLY_TALKER = "554 Misbehaved SMTP session (EarlyTalker)"


class PolicyLimiter:
    """Per-session counters checked against the configured hard limits.

    The error, NOOP and VRFY/EXPN counters cover one transaction and are
    cleared by reset(); the message count lives on the session.
    """

    def __init__(self, max_messages, max_errors, max_noop, max_vrfy, max_rcpt):
        self.max_messages = max_messages
        self.max_errors = max_errors
        self.max_noop = max_noop
        self.max_vrfy = max_vrfy
        self.max_rcpt = max_rcpt
        self.reset()

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.max_messages,
            settings.max_errors,
            settings.max_noop,
            settings.max_vrfy,
            settings.max_rcpt,
        )

    def reset(self):
        self.errors = 0
        self.noops = 0
        self.vrfys = 0

    def add_error(self):
        self.errors += 1
        return self.errors > self.max_errors

    def add_noop(self):
        self.noops += 1
        return self.noops > self.max_noop

    def add_vrfy(self):
        self.vrfys += 1
        return self.vrfys > self.max_vrfy

    def breach(self, messages, recipients, early_talker=False):
        """Closing reply for the first exceeded limit, else None."""
        if messages > self.max_messages:
            return MSG_MESSAGES
        if self.errors > self.max_errors:
            return MSG_ERRORS
        if self.vrfys > self.max_vrfy:
            return MSG_VRFY
        if self.noops > self.max_noop:
            return MSG_NOOP
        if recipients > self.max_rcpt:
            return MSG_RCPT
        if early_talker:
            return MSG_EARLY_TALKER
        return None
