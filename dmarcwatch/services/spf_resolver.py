"""
SPF include resolution.

Expands an SPF include domain into the flat list of ip4/ip6 ranges it
authorizes, following nested includes. The walk is bounded by a shared DNS
lookup counter (RFC 7208 section 4.6.4), a depth cap and a visited set, so it
terminates on cyclic or oversized chains and reports partial results.
"""

import dns.resolver
import dns.exception
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set, Tuple

from dmarcwatch.config import get_settings
from dmarcwatch.metrics import record_spf_lookup

logger = logging.getLogger(__name__)

TxtLookup = Callable[[str], List[str]]

QUALIFIERS = "+-~?"


class DnsLookupError(Exception):
    """Raised by a TXT lookup primitive when a domain cannot be queried"""
    pass


@dataclass
class SpfResolution:
    """Outcome of resolving one SPF include"""
    domain: str
    ip_ranges: List[str] = field(default_factory=list)
    includes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    lookups: int = 0

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "ip_ranges": self.ip_ranges,
            "includes": self.includes,
            "errors": self.errors,
            "lookups": self.lookups,
        }


def _build_resolver() -> dns.resolver.Resolver:
    settings = get_settings()
    resolver = dns.resolver.Resolver()
    resolver.timeout = settings.dns_timeout
    resolver.lifetime = settings.dns_lifetime
    if settings.dns_nameservers:
        resolver.nameservers = settings.dns_nameservers
    return resolver


def dns_txt_lookup(domain: str, resolver: Optional[dns.resolver.Resolver] = None) -> List[str]:
    """
    Fetch TXT records for a domain.

    Multi-string TXT values are joined into one string per record.

    Raises:
        DnsLookupError: NXDOMAIN, no answer, no nameservers or timeout
    """
    resolver = resolver or _build_resolver()
    try:
        answers = resolver.resolve(domain, 'TXT')
    except dns.resolver.NXDOMAIN:
        raise DnsLookupError(f"Domain {domain} does not exist")
    except dns.resolver.NoAnswer:
        raise DnsLookupError(f"No TXT records for {domain}")
    except dns.resolver.NoNameservers as e:
        raise DnsLookupError(f"No nameservers answered for {domain}: {e}")
    except dns.exception.Timeout:
        raise DnsLookupError(f"DNS timeout looking up {domain}")
    except dns.exception.DNSException as e:
        raise DnsLookupError(f"DNS lookup failed for {domain}: {e}")

    values = []
    for rdata in answers:
        values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
    return values


def normalize_include(token: str) -> str:
    """Strip whitespace and a leading 'include:' from an include token"""
    value = (token or "").strip()
    if value.lower().startswith("include:"):
        value = value[len("include:"):].strip()
    return value.rstrip(".").lower()


def _default_prefix(mechanism: str, value: str) -> str:
    if "/" in value:
        return value
    return f"{value}/32" if mechanism == "ip4" else f"{value}/128"


class SpfResolver:
    """
    Bounded depth-first resolver for SPF include chains.

    A single instance can be reused; every resolve_include call starts with
    fresh counters.
    """

    def __init__(
        self,
        lookup_txt: Optional[TxtLookup] = None,
        max_lookups: Optional[int] = None,
        max_depth: Optional[int] = None,
    ):
        settings = get_settings()
        self.lookup_txt = lookup_txt or dns_txt_lookup
        self.max_lookups = max_lookups if max_lookups is not None else settings.spf_max_dns_lookups
        self.max_depth = max_depth if max_depth is not None else settings.spf_max_depth

    def resolve_include(self, token: str) -> SpfResolution:
        """
        Resolve an include token ("include:_spf.example.com" or a bare domain).

        Never raises for DNS problems; every failed branch adds an entry to
        `errors` and the remaining branches are still walked.
        """
        root = normalize_include(token)
        result = SpfResolution(domain=root)
        if not root:
            result.errors.append("No domain provided")
            return result

        ranges: List[str] = []
        seen_ranges: Set[str] = set()
        visited: Set[str] = set()

        stack: List[Tuple[str, int]] = [(root, 0)]
        while stack:
            domain, depth = stack.pop()

            if domain in visited:
                result.errors.append(f"Skipped {domain}: already expanded (include loop or repeated include)")
                continue
            if depth > self.max_depth:
                result.errors.append(
                    f"Include depth limit ({self.max_depth}) exceeded at {domain}"
                )
                continue
            if result.lookups >= self.max_lookups:
                result.errors.append(
                    f"DNS lookup limit ({self.max_lookups}) reached before {domain}"
                )
                continue

            visited.add(domain)
            result.lookups += 1
            record = self._fetch_spf(domain, result.errors)
            if record is None:
                continue

            children = []
            for mechanism, value in self._parse_mechanisms(record):
                if mechanism in ("ip4", "ip6") and value:
                    cidr = _default_prefix(mechanism, value)
                    if cidr not in seen_ranges:
                        seen_ranges.add(cidr)
                        ranges.append(cidr)
                elif mechanism == "include" and value:
                    child = value.rstrip(".").lower()
                    if child not in result.includes:
                        result.includes.append(child)
                    children.append(child)

            # Reversed so the stack pops includes in record order
            for child in reversed(children):
                stack.append((child, depth + 1))

        result.ip_ranges = ranges
        logger.debug(
            "Resolved SPF include",
            extra={
                "spf_domain": root,
                "ranges": len(ranges),
                "lookups": result.lookups,
                "errors": len(result.errors),
            },
        )
        return result

    def _fetch_spf(self, domain: str, errors: List[str]) -> Optional[str]:
        """First v=spf1 TXT value for a domain, recording an error when absent"""
        try:
            values = self.lookup_txt(domain)
        except DnsLookupError as e:
            record_spf_lookup("error")
            errors.append(f"{domain}: {e}")
            return None

        for value in values:
            if value.strip().lower().startswith("v=spf1"):
                record_spf_lookup("found")
                return value.strip()

        record_spf_lookup("no_spf")
        errors.append(f"{domain}: no SPF record found")
        return None

    @staticmethod
    def _parse_mechanisms(record: str) -> List[Tuple[str, str]]:
        """Split an SPF record into (mechanism, value) pairs, qualifiers dropped"""
        mechanisms = []
        for part in record.split()[1:]:  # Skip v=spf1
            if part[0] in QUALIFIERS:
                part = part[1:]
            if not part:
                continue
            if ":" in part:
                mtype, value = part.split(":", 1)
            elif "=" in part:
                mtype, value = part.split("=", 1)
            else:
                mtype, value = part, ""
            mechanisms.append((mtype.lower(), value.strip()))
        return mechanisms


def resolve_spf_include(token: str, lookup_txt: Optional[TxtLookup] = None) -> SpfResolution:
    return SpfResolver(lookup_txt=lookup_txt).resolve_include(token)


def preview_spf_include(token: str, lookup_txt: Optional[TxtLookup] = None) -> SpfResolution:
    """Resolve an include for an operator preview; nothing is stored"""
    return resolve_spf_include(token, lookup_txt=lookup_txt)


def validate_spf_include(token: str, lookup_txt: Optional[TxtLookup] = None) -> Tuple[bool, Optional[str]]:
    """
    Check that an include resolves to at least one range.

    Returns:
        (valid, error). Partial failures with some ranges still count as valid.
    """
    resolution = resolve_spf_include(token, lookup_txt=lookup_txt)
    if resolution.ip_ranges:
        return True, None
    if resolution.errors:
        return False, "; ".join(resolution.errors)
    return False, f"No ip4/ip6 ranges found in SPF chain of {resolution.domain}"
