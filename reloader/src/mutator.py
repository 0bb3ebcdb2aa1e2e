from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import AppsV1Api

from reloader.src.kube import stamp_restart_annotation
from reloader.src.metrics import ReloaderMetrics
from reloader.src.models import MutationTarget
from reloader.src.retry import Backoff, RetryResult, retry_on_conflict

DEFAULT_ANNOTATION_KEY = "kubectl.kubernetes.io/restartedAt"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as RFC 3339 with microseconds (e.g. ``2024-01-15T08:30:00.123456Z``)."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class DeploymentFetchError(Exception):
    """Reading the target Deployment failed; never retried."""


class ConflictSafeMutator:
    """Roll a Deployment by bumping its restart annotation with read-modify-write.

    Each attempt reads the latest Deployment, stamps the annotation and writes
    the whole object back with ``replace``.  The write carries the
    ``resourceVersion`` that was read, so a concurrent writer makes the API
    server answer ``409 Conflict`` and the attempt starts over from the read.

    Read failures and non-conflict write failures end the cycle at once.
    Conflicts are retried up to ``backoff.steps`` attempts.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        target: MutationTarget,
        annotation_key: str = DEFAULT_ANNOTATION_KEY,
        backoff: Backoff | None = None,
        metrics: ReloaderMetrics | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.apps_api = apps_api
        self.target = target
        self.annotation_key = annotation_key
        self.backoff = backoff or Backoff()
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self._sleep = sleep

    def _apply_once(self) -> None:
        try:
            deployment = self.apps_api.read_namespaced_deployment(
                name=self.target.deployment_name,
                namespace=self.target.namespace,
            )
        except Exception as exc:
            raise DeploymentFetchError(str(exc)) from exc

        stamp_restart_annotation(deployment, self.annotation_key, self.now_fn())
        self.apps_api.replace_namespaced_deployment(
            name=self.target.deployment_name,
            namespace=self.target.namespace,
            body=deployment,
        )

    def _on_conflict(self, attempt: int, exc: Exception) -> None:
        self.logger.info(
            "Deployment %s/%s changed concurrently (attempt %d); re-reading",
            self.target.namespace,
            self.target.deployment_name,
            attempt,
        )
        if self.metrics is not None:
            self.metrics.conflict_retries_total.labels(
                namespace=self.target.namespace,
                deployment=self.target.deployment_name,
            ).inc()

    def restart(self) -> RetryResult:
        """Run one restart cycle and return its verdict."""
        result = retry_on_conflict(
            self.backoff,
            self._apply_once,
            sleep=self._sleep,
            on_retry=self._on_conflict,
        )

        if result.succeeded:
            self.logger.info(
                "Deployment %s/%s restarted successfully",
                self.target.namespace,
                self.target.deployment_name,
            )
        elif isinstance(result.error, DeploymentFetchError):
            self.logger.error(
                "Failed to get latest version of Deployment %s/%s: %s",
                self.target.namespace,
                self.target.deployment_name,
                result.error,
            )
        else:
            self.logger.error(
                "Failed to update Deployment %s/%s after %d attempt(s): %s",
                self.target.namespace,
                self.target.deployment_name,
                result.attempts,
                result.reason,
            )
        return result
