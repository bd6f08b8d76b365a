# smtp_reputation.py
import ipaddress
import logging
from typing import NamedTuple, Optional

import dns.exception
import dns.resolver

log = logging.getLogger("fake-smtp")

# loopback, RFC 1918, link-local, RFC 5737 TEST-NET-1
PRIVATE_NETS = [
    ipaddress.ip_network(n)
    for n in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "192.0.2.0/24",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    )
]

NOT_FOUND = (
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
    dns.exception.Timeout,
)


class Listing(NamedTuple):
    kind: str   # "white" or "black"
    name: str   # provider zone
    value: str  # "+"-joined answer


def _ipv4(ip):
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if addr.version == 6 and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def is_private_ip(ip):
    addr = _ipv4(ip)
    if addr is None:
        return False
    return any(addr in net for net in PRIVATE_NETS if net.version == addr.version)


def build_query(ip, provider):
    """``a.b.c.d`` + ``zone`` -> ``d.c.b.a.zone``"""
    octets = str(ip).split(".")
    return ".".join(list(reversed(octets)) + [provider.strip(".")])


class DnsResolver:
    """Resolve a DNS list query name to its A records with dnspython."""

    def __init__(self, timeout=5.0, resolver=None):
        self.resolver = resolver or dns.resolver.Resolver()
        self.resolver.lifetime = timeout

    def __call__(self, name) -> Optional[str]:
        try:
            answers = self.resolver.resolve(name, "A")
        except NOT_FOUND:
            return None
        except dns.exception.DNSException as e:
            log.debug("DNS list query %s failed: %s", name, e)
            return None
        values = [a.address for a in answers]
        return "+".join(values) if values else None


class ReputationChecker:
    def __init__(self, resolve, whitelists=(), blacklists=()):
        self.resolve = resolve
        self.whitelists = list(whitelists or [])
        self.blacklists = list(blacklists or [])

    def _lookup(self, ip, providers, kind):
        for provider in providers:
            query = build_query(ip, provider)
            result = self.resolve(query)
            if result:
                log.debug("%s listed by %s (%s): %s", ip, provider, kind, result)
                return Listing(kind, provider, result)
        return None

    def check(self, ip) -> Optional[Listing]:
        """First whitelist hit wins; otherwise the first blacklist hit."""
        if is_private_ip(ip):
            return None
        addr = _ipv4(ip)
        if addr is None or addr.version != 4:
            # DNS lists are queried by reversed IPv4 octets only
            return None
        return (self._lookup(addr, self.whitelists, "white")
                or self._lookup(addr, self.blacklists, "black"))
