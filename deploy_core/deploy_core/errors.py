"""Error kinds raised by the deployment lifecycle control plane.

Every error carries a stable ``kind`` string and a human-readable message
suitable for display.  The API layer maps ``kind`` to an HTTP status code
in a single exception handler, so services raise these directly instead
of building HTTP responses.
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all lifecycle errors."""

    kind: str = "LifecycleError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFound(LifecycleError):
    """The referenced organization, application, OrgApp, or draft does not exist."""

    kind = "NotFound"


class AlreadyInProgress(LifecycleError):
    """A deployment attempt is already live for the target."""

    kind = "AlreadyInProgress"


class AccessRequired(LifecycleError):
    """Launch attempted while the OrgApp has no members with access."""

    kind = "AccessRequired"


class AlreadyTaken(LifecycleError):
    """The requested hostname is reserved by a different OrgApp."""

    kind = "AlreadyTaken"


class InvalidFormat(LifecycleError):
    """The requested hostname is malformed or reserved by the platform."""

    kind = "InvalidFormat"


class InvalidMember(LifecycleError):
    """An access grant referenced a user who is not a member of the organization."""

    kind = "InvalidMember"

    def __init__(self, message: str, invalid_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.invalid_ids = sorted(invalid_ids or [])


class InvalidTransition(LifecycleError):
    """The requested action is not permitted from the OrgApp's current status."""

    kind = "InvalidTransition"


class Conflict(LifecycleError):
    """Optimistic concurrency violation: the stored version moved underneath the caller."""

    kind = "Conflict"


class ProviderError(LifecycleError):
    """The compute provider call failed or returned an error payload."""

    kind = "ProviderError"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Timeout(LifecycleError):
    """A deployment made no progress within the watchdog window."""

    kind = "Timeout"


class NotForkable(LifecycleError):
    """Modify was requested on an OrgApp with no generated-app lineage."""

    kind = "NotForkable"
