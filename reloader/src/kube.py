from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, V1ObjectMeta

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(inside_cluster: bool, kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    ``inside_cluster`` selects the pod's service-account credentials; otherwise
    the kubeconfig at ``kubeconfig`` (or the client default) is used.  Failures
    raise ``ConfigException`` and are fatal to the caller.
    """
    if inside_cluster:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return
    config.load_kube_config(config_file=kubeconfig)
    LOGGER.info("Loaded kubeconfig %s", kubeconfig or "from default location")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def stamp_restart_annotation(deployment: Any, annotation_key: str, timestamp: str) -> None:
    """Set the restart marker on a Deployment's pod template in place.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the Deployment controller to roll new pods.
    Missing template metadata or annotations are created.
    """
    template = deployment.spec.template
    if template.metadata is None:
        template.metadata = V1ObjectMeta()
    if template.metadata.annotations is None:
        template.metadata.annotations = {}
    template.metadata.annotations[annotation_key] = timestamp
