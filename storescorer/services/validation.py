from __future__ import annotations

import re

from storescorer.core.errors import InvalidInputError


MAX_DOMAIN_LENGTH = 255

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_domain(raw: str) -> str:
    # Accept pasted URLs: drop scheme, path and a leading "www." before matching.
    value = (raw or "").strip()
    if not value:
        raise InvalidInputError("Domain is required")
    domain = _SCHEME_RE.sub("", value).split("/", 1)[0]
    if domain.lower().startswith("www."):
        domain = domain[4:]
    domain = domain.lower().strip()
    # The limit applies to the host only; pasted paths may be arbitrarily long.
    if len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidInputError("Domain is too long")
    if not _DOMAIN_RE.match(domain):
        raise InvalidInputError("Please enter a valid domain")
    return domain


def normalize_email(raw: str) -> str:
    email = (raw or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise InvalidInputError("Invalid email address")
    return email


def client_ip(forwarded_for: str | None, real_ip: str | None) -> str:
    # First hop of X-Forwarded-For is the original client behind our proxy.
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"
