# smtp_address.py
from typing import NamedTuple, Optional

from smtp_parser import clean_line


class AddressCheck(NamedTuple):
    valid: bool
    address: Optional[str] = None
    mailbox: Optional[str] = None
    domain: Optional[str] = None


INVALID = AddressCheck(False)


def check_address(raw) -> AddressCheck:
    """Coarse RFC-ish mailbox check.

    Accepts ``user@example.com`` or ``<user@example.com>``. On success the
    result carries the lower-cased address with brackets stripped, plus the
    mailbox and domain parts for the local-domain/local-mailbox policy.
    """
    email = clean_line(raw).lower()

    if not email or "@" not in email or "." not in email:
        return INVALID

    if email.startswith("<") or email.endswith(">"):
        if not (email.startswith("<") and email.endswith(">")) or len(email) < 2:
            return INVALID
        email = clean_line(email[1:-1])
        if not email or "<" in email or ">" in email:
            return INVALID

    if " " in email:
        return INVALID

    parts = email.split("@")
    if len(parts) != 2:
        return INVALID
    mailbox, domain = (clean_line(p) for p in parts)
    if not mailbox or not domain:
        return INVALID

    if "." not in domain or domain.startswith(".") or domain.endswith("."):
        return INVALID
    labels = domain.split(".")
    for label in labels:
        if not label or label.startswith("-"):
            return INVALID
    if len(labels[-1]) < 2:
        return INVALID

    return AddressCheck(True, f"{mailbox}@{domain}", mailbox, domain)


def is_local_domain(domain, local_domains):
    # no configured domains means every domain is ours
    if not local_domains:
        return True
    domain = (domain or "").lower()
    return any(domain == d.lower() for d in local_domains)


def is_local_mailbox(mailbox, domain, local_mailboxes):
    if not local_mailboxes:
        return True
    address = f"{mailbox}@{domain}".lower()
    return any(address == m.lower() for m in local_mailboxes)
