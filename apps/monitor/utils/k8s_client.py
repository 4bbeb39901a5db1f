"""
Kubernetes client loader for the Kubernetes executor backend.

In-cluster configuration (ServiceAccount) is tried first, then the local
kubeconfig. Clients are built once per process.
"""

from __future__ import annotations

import functools
import logging
from typing import Tuple

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger("selfheal.k8s")


@functools.lru_cache(maxsize=1)
def get_k8s_clients() -> Tuple[client.CoreV1Api, client.AppsV1Api]:
    """Returns (core_v1, apps_v1)."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        logger.warning("In-cluster config not found, falling back to kubeconfig")
        config.load_kube_config()
        logger.info("Loaded local kubeconfig")

    return client.CoreV1Api(), client.AppsV1Api()
