#!/usr/bin/env python3
"""Classify raw list lines into domain / IPv4 / IPv6 entries.

Supported line formats:
- example.com             domain (suffix match, also covers subdomains)
- *.example.com           wildcard, subdomains only
- 10.0.0.0/8, 1.2.3.4     IPv4 CIDR or literal (literal becomes /32)
- 2001:db8::/32, ::1      IPv6 CIDR or literal (literal becomes /128)
- # comment               comment marker is configurable

Anything else is skipped and counted, never raised.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

KIND_DOMAIN = "domain"
KIND_IPV4 = "ipv4"
KIND_IPV6 = "ipv6"

MAX_DOMAIN_LEN = 253
WILDCARD_PREFIX = "*."

_LABEL_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")

# Only the first few malformed lines of a list are logged individually
_SKIP_LOG_LIMIT = 5


@dataclass(frozen=True)
class Entry:
    """A classified list entry; IP entries always carry a prefix length"""
    kind: str
    value: str
    prefix_length: Optional[int] = None

    @property
    def is_ip(self) -> bool:
        return self.kind != KIND_DOMAIN

    def canonical(self) -> str:
        if self.kind == KIND_DOMAIN:
            return self.value
        return f"{self.value}/{self.prefix_length}"

    def network(self) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
        if not self.is_ip:
            raise ValueError(f"{self.value} is not an IP entry")
        return ipaddress.ip_network(self.canonical())


@dataclass
class ParseResult:
    entries: List[Entry] = field(default_factory=list)
    skipped: int = 0

    @property
    def domains(self) -> List[Entry]:
        return [e for e in self.entries if e.kind == KIND_DOMAIN]

    @property
    def networks(self) -> List[Entry]:
        return [e for e in self.entries if e.is_ip]

    def count(self, kind: str) -> int:
        return sum(1 for e in self.entries if e.kind == kind)


def is_dns_name(value: str) -> bool:
    """Check the domain grammar: alnum/hyphen labels, no edge hyphens, non-numeric TLD."""
    if not value or len(value) > MAX_DOMAIN_LEN:
        return False
    if value.startswith(WILDCARD_PREFIX):
        value = value[len(WILDCARD_PREFIX):]
    labels = value.lower().split(".")
    if not all(_LABEL_PATTERN.match(label) for label in labels):
        return False
    return not labels[-1].isdigit()


def classify_token(token: str) -> Optional[Entry]:
    """Classify a single whitespace-free token."""
    if "/" in token or ":" in token or token[:1].isdigit():
        try:
            net = ipaddress.ip_network(token, strict=False)
        except ValueError:
            net = None
        if net is not None:
            kind = KIND_IPV4 if net.version == 4 else KIND_IPV6
            return Entry(kind, str(net.network_address), net.prefixlen)

    domain = token.rstrip(".").lower()
    if is_dns_name(domain):
        return Entry(KIND_DOMAIN, domain)
    return None


def classify_line(line: str, comment_marker: str = "#") -> Optional[Entry]:
    """Turn one raw line into an Entry, or None for blank/comment/malformed lines."""
    line = line.strip()
    if not line or (comment_marker and line.startswith(comment_marker)):
        return None
    if comment_marker and comment_marker in line:
        line = line.split(comment_marker, 1)[0].strip()
    if not line or any(ch.isspace() for ch in line):
        return None
    return classify_token(line)


def parse_lines(
    lines: Iterable[str],
    comment_marker: str = "#",
    source: str = "",
) -> ParseResult:
    """Classify and deduplicate lines in a single pass.

    Args:
        lines: Raw lines (any iterable, read lazily)
        comment_marker: Lines starting with this marker are ignored
        source: List name used in log messages

    Returns:
        ParseResult with entries in first-seen order and the skipped count
    """
    seen = {}
    skipped = 0
    for raw in lines:
        stripped = raw.strip()
        if not stripped or (comment_marker and stripped.startswith(comment_marker)):
            continue
        entry = classify_line(stripped, comment_marker)
        if entry is None:
            skipped += 1
            if skipped <= _SKIP_LOG_LIMIT:
                logger.debug(f"[list {source}] skipping malformed line: {stripped[:80]!r}")
            continue
        key = entry.canonical()
        if key not in seen:
            seen[key] = entry

    if skipped:
        logger.info(f"[list {source}] skipped {skipped} malformed line(s)")
    return ParseResult(entries=list(seen.values()), skipped=skipped)


def match_domain(host: str, pattern: str) -> Optional[int]:
    """Suffix-match ``host`` against a list domain.

    Returns the number of matched labels (the specificity) or None.
    "a.b.example.com" matches "example.com" with 2 and "*.example.com" with 2;
    "example.com" does not match "*.example.com".
    """
    host = host.rstrip(".").lower()
    pattern = pattern.lower()
    wildcard = pattern.startswith(WILDCARD_PREFIX)
    if wildcard:
        pattern = pattern[len(WILDCARD_PREFIX):]
    elif host == pattern:
        return pattern.count(".") + 1
    if host.endswith("." + pattern):
        return pattern.count(".") + 1
    return None


def best_domain_match(host: str, entries: Iterable[Entry]) -> Optional[Entry]:
    """Return the most specific domain entry matching ``host``."""
    best, best_score = None, 0
    for entry in entries:
        if entry.kind != KIND_DOMAIN:
            continue
        score = match_domain(host, entry.value)
        if score is not None and score > best_score:
            best, best_score = entry, score
    return best


def ip_in_entries(ip: str, entries: Iterable[Entry]) -> Optional[Entry]:
    """Return the first IP/CIDR entry that contains ``ip``."""
    addr = ipaddress.ip_address(ip)
    for entry in entries:
        if entry.is_ip and entry.prefix_length is not None:
            if (entry.kind == KIND_IPV4) != (addr.version == 4):
                continue
            if addr in entry.network():
                return entry
    return None


def sanitize_domain(domain: str) -> str:
    """Domain form accepted by dnsmasq (dnsmasq already matches subdomains)."""
    if domain.startswith(WILDCARD_PREFIX):
        return domain[len(WILDCARD_PREFIX):]
    return domain
