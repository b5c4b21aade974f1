"""Hostname policy for custom subdomains.

Hostnames live in one namespace shared by every organization.  This
module only decides what a *well-formed* hostname is; uniqueness is
enforced by the reservation table in the state layer.
"""

from __future__ import annotations

import re

from deploy_core.errors import InvalidFormat

DEFAULT_MAX_LENGTH = 30

# Names the platform keeps for itself.
RESERVED_HOSTNAMES: frozenset[str] = frozenset(
    {
        "www",
        "api",
        "app",
        "admin",
        "mail",
        "smtp",
        "ftp",
        "staging",
        "dev",
        "test",
        "beta",
        "dashboard",
        "status",
        "docs",
        "help",
        "support",
        "blog",
        "store",
        "shop",
    }
)

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def normalize_hostname(candidate: str) -> str:
    """Comparison form of a hostname: surrounding whitespace removed, lowercased."""
    return candidate.strip().lower()


def validate_hostname(candidate: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Normalize *candidate* and check it against the hostname rules.

    Parameters
    ----------
    candidate:
        User-supplied subdomain label.
    max_length:
        Upper bound on the label length.

    Returns
    -------
    str
        The normalized hostname.

    Raises
    ------
    InvalidFormat
        If the label is empty, too long, contains characters outside
        ``[a-z0-9-]``, or is on the reserved list.
    """
    hostname = normalize_hostname(candidate)
    if not re.fullmatch(rf"[a-z0-9-]{{1,{max_length}}}", hostname):
        raise InvalidFormat(
            f"Subdomain must be 1-{max_length} characters of lowercase letters, numbers, and hyphens"
        )
    if hostname in RESERVED_HOSTNAMES:
        raise InvalidFormat(f"'{hostname}' is a reserved subdomain")
    return hostname


def slugify(text: str) -> str:
    """Collapse *text* to lowercase alphanumerics separated by single hyphens."""
    return _NON_SLUG_CHARS.sub("-", text.lower()).strip("-")


def suggest_hostname(app_title: str, org_slug: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Propose ``{app-slug}-{org-slug}`` trimmed to *max_length*.

    The result never ends in a hyphen.  It may still collide with an
    existing reservation or the reserved list; callers check availability.
    """
    parts = [p for p in (slugify(app_title), slugify(org_slug)) if p]
    suggestion = "-".join(parts) or "app"
    return suggestion[:max_length].rstrip("-")


def hostname_url(hostname: str, base_domain: str) -> str:
    return f"https://{hostname}.{base_domain}"
