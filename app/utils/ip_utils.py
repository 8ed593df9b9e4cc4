"""Client IP extraction and normalization.

The usage limiter keys every record by the caller's address, so this module
has two jobs:

- pick the most plausible client address out of the forwarding headers set
  by reverse proxies and CDNs, then the transport peer, then fallbacks;
- turn it into a stable key (lower-case, expanded IPv6, dual-stack IPv4
  collapsed) and classify it.

Header values are attacker-controlled whenever ``trust_proxy`` is enabled
without an edge that strips/overwrites them. Nothing here can verify them;
the deployment must.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Mapping, Sequence

logger = logging.getLogger(__name__)

SENTINEL_IP = "0.0.0.0"

_IPV4_PORT_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):\d{1,5}$")
_BRACKETED_RE = re.compile(r"^\[([^\]]+)\](?::\d{1,5})?$")

_LOCAL_IPV4_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in ("127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "0.0.0.0/32")
)
_LOCAL_IPV6_NETWORKS = tuple(
    ipaddress.ip_network(net) for net in ("::1/128", "::/128", "fe80::/10", "fc00::/7")
)


class IPAddressType(str, Enum):
    """Address family as seen by the limiter."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    LOCALHOST = "localhost"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class IPAddressInfo:
    """Resolved client address.

    Attributes:
        original: Raw value as received.
        normalized: Canonical form; never empty.
        family: Address classification.
        is_valid: Whether ``normalized`` may be used as a limiter key.
        source: Where the value came from (header name, ``connection``, ...).
    """

    original: str
    normalized: str
    family: IPAddressType
    is_valid: bool
    source: str = "unknown"

    @property
    def limit_key(self) -> str:
        """Key for the usage limiter; unusable addresses share the sentinel bucket."""
        return self.normalized if self.is_valid else SENTINEL_IP


@dataclass(frozen=True)
class IPExtractionOptions:
    """Knobs for :func:`resolve_client_ip` (see ``IPSettings``)."""

    trust_proxy: bool = True
    allow_localhost: bool = True
    map_ipv6_to_ipv4: bool = True
    dev_fallback_ip: str | None = None


HeaderExtractor = Callable[[Mapping[str, str]], "str | None"]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _first_in_chain(value: str | None) -> str | None:
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def forwarded_for(headers: Mapping[str, str]) -> str | None:
    """Left-most ``X-Forwarded-For`` entry (the originating client)."""
    return _first_in_chain(_header(headers, "x-forwarded-for"))


def _single_value(name: str) -> HeaderExtractor:
    def extract(headers: Mapping[str, str]) -> str | None:
        return _header(headers, name)

    extract.__name__ = name.replace("-", "_")
    return extract


# Tried in order when proxy trust is enabled; first non-empty value wins.
PROXY_HEADER_EXTRACTORS: tuple[tuple[str, HeaderExtractor], ...] = (
    ("x-forwarded-for", forwarded_for),
    ("x-real-ip", _single_value("x-real-ip")),
    ("cf-connecting-ip", _single_value("cf-connecting-ip")),
    ("true-client-ip", _single_value("true-client-ip")),
    ("x-client-ip", _single_value("x-client-ip")),
    ("x-cluster-client-ip", _single_value("x-cluster-client-ip")),
    ("fastly-client-ip", _single_value("fastly-client-ip")),
)

_GEO_HEADERS = ("x-vercel-ip-country", "cf-ipcountry")


def geo_resolved_ip(headers: Mapping[str, str]) -> str | None:
    """Address already resolved upstream, signalled by a geolocation header."""
    if not any(_header(headers, name) for name in _GEO_HEADERS):
        return None
    return _first_in_chain(_header(headers, "x-vercel-forwarded-for")) or forwarded_for(headers)


def _lower_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _strip_port_and_zone(value: str) -> str:
    bracketed = _BRACKETED_RE.match(value)
    if bracketed:
        value = bracketed.group(1)
    else:
        ipv4_with_port = _IPV4_PORT_RE.match(value)
        if ipv4_with_port:
            value = ipv4_with_port.group(1)
    return value.split("%", 1)[0]


def _is_local(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    networks = _LOCAL_IPV4_NETWORKS if address.version == 4 else _LOCAL_IPV6_NETWORKS
    return any(address in net for net in networks)


def _embedded_ipv4(address: ipaddress.IPv6Address) -> ipaddress.IPv4Address | None:
    """IPv4 inside ``::ffff:a.b.c.d`` (mapped) or ``::a.b.c.d`` (compatible)."""
    if address.ipv4_mapped is not None:
        return address.ipv4_mapped
    packed = address.packed
    if packed[:12] == bytes(12) and int.from_bytes(packed[12:], "big") > 1:
        return ipaddress.IPv4Address(packed[12:])
    return None


def _unknown(original: str, source: str) -> IPAddressInfo:
    return IPAddressInfo(
        original=original,
        normalized=SENTINEL_IP,
        family=IPAddressType.UNKNOWN,
        is_valid=False,
        source=source,
    )


def _classified(
    original: str,
    address: ipaddress.IPv4Address | ipaddress.IPv6Address,
    *,
    allow_localhost: bool,
    source: str,
) -> IPAddressInfo:
    local = _is_local(address)
    if local:
        family = IPAddressType.LOCALHOST
    elif address.version == 4:
        family = IPAddressType.IPV4
    else:
        family = IPAddressType.IPV6
    normalized = str(address) if address.version == 4 else address.exploded
    return IPAddressInfo(
        original=original,
        normalized=normalized,
        family=family,
        is_valid=allow_localhost or not local,
        source=source,
    )


def normalize_ip_address(
    value: str | None,
    *,
    allow_localhost: bool = True,
    map_ipv6_to_ipv4: bool = True,
    source: str = "unknown",
) -> IPAddressInfo:
    """Validate and canonicalize a single address.

    IPv4 stays dotted-quad; IPv6 is expanded to eight 4-digit groups so the
    same client always maps to the same key. With ``map_ipv6_to_ipv4`` the
    IPv4 embedded in ``::ffff:a.b.c.d`` / ``::a.b.c.d`` is used instead, so a
    dual-stack client cannot double its quota by switching families.

    Private/loopback/link-local/unique-local ranges are classified as
    ``LOCALHOST``; they stay valid keys unless ``allow_localhost`` is off.

    Args:
        value: Raw address, possibly with port, brackets or IPv6 zone.
        allow_localhost: Whether ``LOCALHOST`` addresses are valid keys.
        map_ipv6_to_ipv4: Collapse embedded IPv4 addresses.
        source: Provenance recorded on the result.

    Returns:
        IPAddressInfo. Unparseable input yields ``UNKNOWN`` with the
        ``0.0.0.0`` sentinel; this function never raises.
    """

    original = value if value is not None else ""
    cleaned = original.strip().lower()
    if not cleaned:
        return _unknown(original, source)

    if cleaned == "localhost":
        return IPAddressInfo(
            original=original,
            normalized="127.0.0.1",
            family=IPAddressType.LOCALHOST,
            is_valid=allow_localhost,
            source=source,
        )

    try:
        address = ipaddress.ip_address(_strip_port_and_zone(cleaned))
    except ValueError:
        return _unknown(original, source)

    if address.version == 6 and map_ipv6_to_ipv4:
        embedded = _embedded_ipv4(address)
        if embedded is not None:
            address = embedded

    return _classified(original, address, allow_localhost=allow_localhost, source=source)


def _candidates(
    lowered: Mapping[str, str],
    connection_address: str | None,
    opts: IPExtractionOptions,
) -> Iterator[tuple[str, str | None]]:
    if opts.trust_proxy:
        for name, extractor in PROXY_HEADER_EXTRACTORS:
            yield name, extractor(lowered)
    yield "connection", connection_address
    yield "geo", geo_resolved_ip(lowered)
    yield "dev_fallback", opts.dev_fallback_ip


def resolve_client_ip(
    headers: Mapping[str, str] | None,
    connection_address: str | None,
    options: IPExtractionOptions | None = None,
) -> IPAddressInfo:
    """Derive the limiter address for a request.

    Order (first candidate that parses as an address wins):

    1. forwarding headers, when ``trust_proxy`` is on
       (see ``PROXY_HEADER_EXTRACTORS``);
    2. the transport peer address;
    3. an address implied by upstream geolocation headers;
    4. ``dev_fallback_ip`` (only set outside production);
    5. the ``0.0.0.0`` sentinel.

    Unparseable values (``unknown``, ``_hidden``) are skipped. If every
    candidate present was unparseable, the first one is returned as
    ``UNKNOWN`` so callers can log it.

    Args:
        headers: Request headers (any casing).
        connection_address: Peer address from the transport, if known.
        options: Extraction options; defaults when omitted.

    Returns:
        IPAddressInfo; never raises.
    """

    opts = options or IPExtractionOptions()
    try:
        lowered = _lower_headers(headers)
        rejected: IPAddressInfo | None = None

        for source, candidate in _candidates(lowered, connection_address, opts):
            if not candidate or not candidate.strip():
                continue
            info = normalize_ip_address(
                candidate.strip(),
                allow_localhost=opts.allow_localhost,
                map_ipv6_to_ipv4=opts.map_ipv6_to_ipv4,
                source=source,
            )
            if info.family is not IPAddressType.UNKNOWN:
                return info
            if rejected is None:
                rejected = info

        if rejected is not None:
            return rejected
        return normalize_ip_address(
            SENTINEL_IP,
            allow_localhost=opts.allow_localhost,
            map_ipv6_to_ipv4=opts.map_ipv6_to_ipv4,
            source="sentinel",
        )
    except Exception as exc:  # noqa: BLE001 - resolution must never break a request
        logger.error(
            "ip.resolve_failed",
            extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
        )
        return _unknown("unknown", "error")


def hash_ip_address(ip: str) -> str:
    """Short, stable digest of an address for logs (raw IPs are never logged)."""
    return hashlib.sha256(ip.encode()).hexdigest()[:16]


def format_ip_for_log(info: IPAddressInfo) -> str:
    """Human-readable one-liner without the raw address."""
    return (
        f"IP: {hash_ip_address(info.normalized)} "
        f"({info.family.value}, valid: {info.is_valid}, source: {info.source})"
    )


def extract_region_info(headers: Mapping[str, str] | None) -> str | None:
    """Country code supplied by the edge (Vercel or Cloudflare), if any."""
    lowered = _lower_headers(headers)
    return _header(lowered, "x-vercel-ip-country") or _header(lowered, "cf-ipcountry")


def header_extractor_names() -> Sequence[str]:
    """Header names consulted under proxy trust, in priority order."""
    return tuple(name for name, _ in PROXY_HEADER_EXTRACTORS)
