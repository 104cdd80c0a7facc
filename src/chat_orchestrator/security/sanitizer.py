"""Input sanitization and network destination checks."""

from __future__ import annotations

import ipaddress
import logging
import re
from urllib import parse

logger = logging.getLogger(__name__)

_DANGEROUS_PATTERNS = (
    re.compile(r"\x00"),
    re.compile(r"<script\b[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
)

_PRIVATE_HOST_PATTERNS = (
    re.compile(r"^127\."),
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^::1$"),
    re.compile(r"^fc00:", re.IGNORECASE),
    re.compile(r"^fe80:", re.IGNORECASE),
)

DEFAULT_MAX_TEXT_LENGTH = 10_000


def sanitize_text(value: str, max_length: int = DEFAULT_MAX_TEXT_LENGTH) -> str:
    if len(value) > max_length:
        logger.warning("sanitize event=truncated length=%d max_length=%d", len(value), max_length)
        value = value[:max_length]
    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(value):
            logger.warning("sanitize event=pattern_removed pattern=%s", pattern.pattern)
            value = pattern.sub("", value)
    return value.strip()


def sanitize_url(url: str) -> str | None:
    try:
        parsed = parse.urlsplit(url)
    except ValueError:
        logger.warning("sanitize event=invalid_url url=%s", url)
        return None
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        logger.warning("sanitize event=invalid_url_scheme url=%s scheme=%s", url, parsed.scheme)
        return None
    return parse.urlunsplit(parsed)


def is_private_ip(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if host == "localhost":
        return True
    if any(pattern.search(host) for pattern in _PRIVATE_HOST_PATTERNS):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def validate_domain(hostname: str, allowed_domains: list[str]) -> bool:
    host = hostname.lower().rstrip(".")
    allowed = any(
        host == domain.lower() or host.endswith(f".{domain.lower()}") for domain in allowed_domains
    )
    if not allowed:
        logger.warning("sanitize event=domain_not_allowed hostname=%s", hostname)
    return allowed
