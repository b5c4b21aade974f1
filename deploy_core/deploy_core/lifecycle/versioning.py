"""Version drift detection and publish-time version bumping.

Versions are opaque strings.  Drift is literal inequality between the
deployed and latest published versions; no ordering is assumed beyond
what :func:`bump_version` produces.
"""

from __future__ import annotations

import re

_TRAILING_NUMBER = re.compile(r"^(.*?)(\d+)$")


def needs_update(deployed_version: str | None, latest_version: str) -> bool:
    """Return True when a deployed instance lags the latest published version.

    An instance that has never been deployed has nothing to update, so
    ``deployed_version=None`` always yields False.
    """
    return deployed_version is not None and deployed_version != latest_version


def bump_version(current: str) -> str:
    """Return the next published version after *current*.

    A trailing integer component is incremented (``"3"`` -> ``"4"``,
    ``"1.2.9"`` -> ``"1.2.10"``).  Versions without a trailing number get
    a ``.1`` suffix.
    """
    match = _TRAILING_NUMBER.match(current.strip())
    if match is None:
        return f"{current.strip()}.1" if current.strip() else "1"
    prefix, number = match.groups()
    return f"{prefix}{int(number) + 1}"
