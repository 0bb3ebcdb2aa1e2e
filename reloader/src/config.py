from __future__ import annotations

import argparse
import math
import os
import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from reloader.src.mutator import DEFAULT_ANNOTATION_KEY
from reloader.src.scheduler import DEFAULT_DELAY_SECONDS


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse ``90``, ``90s``, ``2m``, ``1m30s`` or ``500ms`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise ConfigError("duration must not be empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0 or not math.isfinite(seconds):
            raise ConfigError(f"duration must be a finite value >= 0, got: {value!r}")
        return _check_duration_range(value, seconds)

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return _check_duration_range(value, total)


def _check_duration_range(value: str, seconds: float) -> float:
    # Longer waits overflow threading timeouts.
    if seconds > threading.TIMEOUT_MAX:
        raise ConfigError(
            f"duration must be <= {threading.TIMEOUT_MAX:.0f}s, got: {value!r}"
        )
    return seconds


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(
    name: str,
    raw: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


@dataclass(frozen=True)
class ReloaderConfig:
    """Immutable process configuration resolved at startup."""

    secret_name: str
    deployment_name: str
    namespace: str = "default"
    inside_cluster: bool = False
    kubeconfig: str | None = None
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    annotation_key: str = DEFAULT_ANNOTATION_KEY
    conflict_retries: int = 5
    metrics_port: int = 8080
    shutdown_timeout_seconds: float = 30.0
    log_level: str = "INFO"


def build_parser(env: Mapping[str, str]) -> argparse.ArgumentParser:
    """Build the CLI parser; every option falls back to an environment variable."""
    parser = argparse.ArgumentParser(
        prog="secret-reloader",
        description=(
            "Watch a Secret and roll a Deployment whenever the Secret is updated."
        ),
    )
    parser.add_argument(
        "--secret-name",
        default=env.get("SECRET_NAME", ""),
        help="Name of the secret to watch (env: SECRET_NAME)",
    )
    parser.add_argument(
        "--deployment-name",
        default=env.get("DEPLOYMENT_NAME", ""),
        help="Name of the deployment to restart (env: DEPLOYMENT_NAME)",
    )
    parser.add_argument(
        "--namespace",
        default=env.get("WATCH_NAMESPACE", "default"),
        help="Namespace of the secret and deployment (env: WATCH_NAMESPACE)",
    )
    parser.add_argument(
        "--inside-cluster",
        action=argparse.BooleanOptionalAction,
        default=parse_bool(env.get("INSIDE_CLUSTER")),
        help="Use in-cluster service account credentials (env: INSIDE_CLUSTER)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=env.get("KUBECONFIG"),
        help="Kubeconfig path when running outside the cluster (env: KUBECONFIG)",
    )
    parser.add_argument(
        "--delay",
        default=env.get("RESTART_DELAY", "2m"),
        help="Delay before restarting the deployment, e.g. 90s or 2m (env: RESTART_DELAY)",
    )
    parser.add_argument(
        "--annotation-key",
        default=env.get("ROLLOUT_ANNOTATION_KEY", DEFAULT_ANNOTATION_KEY),
        help="Pod template annotation used as restart marker (env: ROLLOUT_ANNOTATION_KEY)",
    )
    parser.add_argument(
        "--conflict-retries",
        default=env.get("CONFLICT_RETRIES", "5"),
        help="Total write attempts when the deployment changes concurrently (env: CONFLICT_RETRIES)",
    )
    parser.add_argument(
        "--metrics-port",
        default=env.get("METRICS_PORT", "8080"),
        help="Port serving /metrics, /healthz and /readyz (env: METRICS_PORT)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        default=env.get("SHUTDOWN_TIMEOUT", "30s"),
        help="How long shutdown waits for an in-flight restart (env: SHUTDOWN_TIMEOUT)",
    )
    parser.add_argument(
        "--log-level",
        default=env.get("LOG_LEVEL", "INFO"),
        help="Log level (env: LOG_LEVEL)",
    )
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ReloaderConfig:
    """Resolve configuration from command-line arguments and the environment.

    Missing secret or deployment names and invalid values print usage and
    exit with status 2 through :meth:`argparse.ArgumentParser.error`, before
    anything talks to the cluster.
    """
    values = env if env is not None else os.environ
    parser = build_parser(values)
    args = parser.parse_args(argv)

    secret_name = args.secret_name.strip()
    deployment_name = args.deployment_name.strip()
    if not secret_name or not deployment_name:
        parser.error("secret-name and deployment-name are required")

    namespace = args.namespace.strip()
    if not namespace:
        parser.error("namespace must be a non-empty string")

    try:
        delay_seconds = parse_duration(args.delay)
        shutdown_timeout_seconds = parse_duration(args.shutdown_timeout)
        conflict_retries = parse_int("conflict-retries", args.conflict_retries, minimum=1)
        metrics_port = parse_int(
            "metrics-port", args.metrics_port, minimum=0, maximum=65535
        )
    except ConfigError as exc:
        parser.error(str(exc))

    annotation_key = args.annotation_key.strip()
    if not annotation_key:
        parser.error("annotation-key must be a non-empty string")

    return ReloaderConfig(
        secret_name=secret_name,
        deployment_name=deployment_name,
        namespace=namespace,
        inside_cluster=args.inside_cluster,
        kubeconfig=args.kubeconfig or None,
        delay_seconds=delay_seconds,
        annotation_key=annotation_key,
        conflict_retries=conflict_retries,
        metrics_port=metrics_port,
        shutdown_timeout_seconds=shutdown_timeout_seconds,
        log_level=args.log_level.upper(),
    )
