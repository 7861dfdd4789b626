import asyncio
import ipaddress
import logging
import re
import socket
from typing import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import dns.asyncresolver
import dns.exception

from screenshotter.errors import InvalidURL, PrivateNetworkBlocked, SchemeNotAllowed, ScreenshotError
from screenshotter.models.capture import ValidatedTarget

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}
DNS_TIMEOUT = 5.0  # seconds

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
]

CLOUD_METADATA_ADDRESSES = {ipaddress.ip_address("169.254.169.254")}

PRIVATE_NETWORK_MESSAGE = "Access to private/internal network addresses is not allowed"

# Every label decimal, octal or hex, at most four of them (2130706433, 0x7f.1, 0177.0.0.1)
SHORTHAND_IPV4 = re.compile(r"^(0x[0-9a-f]*|\d+)(\.(0x[0-9a-f]*|\d+)){0,3}$", re.IGNORECASE)

Resolver = Callable[[str], Awaitable[set[str]]]


def is_blocked_address(address: str) -> bool:
    """Return True if the address must never be contacted.

    Anything that does not parse as an IP address is treated as blocked.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return is_blocked_address(str(ip.ipv4_mapped))

    if ip in CLOUD_METADATA_ADDRESSES:
        return True

    return any(ip in network for network in BLOCKED_NETWORKS)


def parse_ip_literal(hostname: str) -> str | None:
    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        return None


def shorthand_ip_kind(hostname: str) -> str | None:
    """Classify a non-canonical IPv4 spelling that browsers would expand.

    Only hosts made entirely of numeric labels qualify, so names such as
    ``01.org`` or ``0xc0ffee.com`` are left to DNS.
    """
    if not SHORTHAND_IPV4.match(hostname):
        return None
    labels = hostname.lower().split(".")
    if any(label.startswith("0x") for label in labels):
        return "Hexadecimal"
    if any(len(label) > 1 and label.startswith("0") for label in labels):
        return "Octal"
    return "Numeric"


async def _resolve_records(hostname: str, rdtype: str) -> set[str]:
    answer = await dns.asyncresolver.resolve(hostname, rdtype, lifetime=DNS_TIMEOUT)
    return {rdata.address for rdata in answer}


async def _lookup_system(hostname: str) -> set[str]:
    # getaddrinfo honours /etc/hosts and nsswitch, which plain DNS queries skip
    loop = asyncio.get_running_loop()
    infos = await asyncio.wait_for(
        loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM),
        timeout=DNS_TIMEOUT,
    )
    return {sockaddr[0] for _family, _type, _proto, _canonname, sockaddr in infos}


async def resolve_host(hostname: str) -> set[str]:
    """Union of authoritative A/AAAA answers and the system resolver's answers."""
    results = await asyncio.gather(
        _resolve_records(hostname, "A"),
        _resolve_records(hostname, "AAAA"),
        _lookup_system(hostname),
        return_exceptions=True,
    )

    addresses: set[str] = set()
    for result in results:
        if isinstance(result, BaseException):
            if not isinstance(result, (dns.exception.DNSException, OSError, asyncio.TimeoutError)):
                raise result
            logger.debug("Resolution path failed for %s: %r", hostname, result)
            continue
        addresses.update(result)

    if not addresses:
        raise InvalidURL(f"Could not resolve host '{hostname}'")
    return addresses


def _canonical_url(scheme: str, hostname: str, port: int | None, path: str, query: str, fragment: str) -> str:
    netloc = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    return urlunsplit((scheme, netloc, path or "/", query, fragment))


class TargetValidator:
    """Resolves a requested URL and refuses anything that reaches private networks."""

    def __init__(self, resolver: Resolver = resolve_host) -> None:
        self._resolver = resolver

    async def validate(self, url_string: str) -> ValidatedTarget:
        try:
            parsed = urlsplit(url_string.strip())
            port = parsed.port
        except ValueError:
            raise InvalidURL("Invalid URL format") from None

        scheme = parsed.scheme.lower()
        if not scheme:
            raise InvalidURL("Invalid URL format")

        if scheme not in ALLOWED_SCHEMES:
            raise SchemeNotAllowed(
                f'Scheme "{scheme}:" is not allowed. Only http and https are permitted.'
            )

        hostname = (parsed.hostname or "").rstrip(".")
        if not hostname:
            raise InvalidURL("Invalid URL format")

        if parsed.username or parsed.password:
            raise InvalidURL("URLs with embedded credentials are not allowed.")

        literal = parse_ip_literal(hostname)
        if literal is not None:
            addresses = {literal}
        else:
            kind = shorthand_ip_kind(hostname)
            if kind is not None:
                raise InvalidURL(f"{kind} IP addresses are not allowed.")
            addresses = await self._resolver(hostname)

        blocked = sorted(address for address in addresses if is_blocked_address(address))
        if blocked:
            logger.warning("Blocked %s: resolves to %s", hostname, ", ".join(blocked))
            raise PrivateNetworkBlocked(PRIVATE_NETWORK_MESSAGE)

        canonical = _canonical_url(scheme, hostname, port, parsed.path, parsed.query, parsed.fragment)
        return ValidatedTarget(url=canonical, hostname=hostname)

    async def is_redirect_allowed(self, url_string: str) -> bool:
        """Run the full validation for a redirect hop, reduced to allow/deny."""
        try:
            await self.validate(url_string)
        except ScreenshotError as e:
            logger.warning("Redirect to %s denied: %s", url_string, e)
            return False
        except Exception:
            logger.exception("Redirect validation error for %s", url_string)
            return False
        return True
