from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WatchTarget:
    """The Secret whose updates trigger a restart."""

    namespace: str
    secret_name: str


@dataclass(frozen=True)
class MutationTarget:
    """The Deployment that is rolled when the watched Secret changes."""

    namespace: str
    deployment_name: str


@dataclass(frozen=True)
class ChangeEvent:
    """Notification that the watched Secret was updated.

    Only the occurrence matters to the restart loop.  ``observed_at`` is a
    ``time.monotonic()`` reading taken when the feed saw the event, so the
    scheduler can time its delay from the first event of a burst.
    """

    namespace: str
    secret_name: str
    resource_version: str | None
    observed_at: float


@dataclass(frozen=True)
class RestartOutcome:
    """Emitted exactly once per completed restart cycle."""

    namespace: str
    secret_name: str
    deployment_name: str
    succeeded: bool
