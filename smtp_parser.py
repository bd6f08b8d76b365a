# smtp_parser.py
import re
from typing import NamedTuple, Optional

# runs of whitespace/control chars collapse to a single space
_JUNK = re.compile(r"[\s\x00-\x1f\x7f-\x9f]+")

# verb keyword -> handler tag, matched in this order
COMMANDS = (
    ("HELO", "helo"),
    ("EHLO", "ehlo"),
    ("MAIL FROM:", "mail"),
    ("RCPT TO:", "rcpt"),
    ("DATA", "data"),
    ("RSET", "rset"),
    ("QUIT", "quit"),
    ("VRFY", "vrfy"),
    ("EXPN", "expn"),
    ("HELP", "help"),
    ("NOOP", "noop"),
)

KEYWORDS = dict((tag, verb) for verb, tag in COMMANDS)


class Command(NamedTuple):
    verb: str
    # None: no separator at all; "": separator but nothing after it
    argument: Optional[str]

    @property
    def has_argument(self):
        return bool(self.argument)


def clean_line(text):
    if not text:
        return ""
    return _JUNK.sub(" ", text).strip()


def match_verb(line):
    """Return the handler tag for a command line, or None if unrecognized."""
    upper = clean_line(line).upper()
    for verb, tag in COMMANDS:
        if upper.startswith(verb):
            return tag
    return None


def split_command(tag, line) -> Command:
    text = clean_line(line)
    if ":" in KEYWORDS.get(tag, ""):
        pos = text.find(":")
    else:
        pos = text.find(" ")
    if pos < 0:
        return Command(text.upper(), None)
    return Command(clean_line(text[:pos]).upper(), clean_line(text[pos + 1:]))


def help_text():
    return "211 " + " ".join(verb.split(" ")[0] for verb, _ in COMMANDS)
