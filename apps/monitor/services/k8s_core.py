"""
Blocking Kubernetes Deployment operations used by the Kubernetes executors.

Callers on the event loop must run these through `loop.run_in_executor`.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from kubernetes.client import ApiException
from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..config import settings
from ..utils.k8s_client import get_k8s_clients

logger = logging.getLogger("selfheal.k8s")
tracer = trace.get_tracer(__name__)

# -------------------------------------------------------------------------
# Prometheus metrics for Kubernetes operations
# -------------------------------------------------------------------------

K8S_API_CALLS_TOTAL = Counter(
    "selfheal_k8s_api_calls_total",
    "Total Kubernetes API calls made by recovery executors",
    ["verb", "resource", "namespace"],
)

K8S_API_ERRORS_TOTAL = Counter(
    "selfheal_k8s_api_errors_total",
    "Total failed Kubernetes API calls made by recovery executors",
    ["verb", "resource", "namespace"],
)

K8S_API_LATENCY_SECONDS = Histogram(
    "selfheal_k8s_api_latency_seconds",
    "Latency of Kubernetes API calls made by recovery executors",
    ["verb", "resource", "namespace"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

DEPLOYMENT_DESIRED_REPLICAS = Gauge(
    "selfheal_k8s_deployment_desired_replicas",
    "Desired replicas per Deployment (last observed)",
    ["namespace", "deployment"],
)


def resolve_deployment_name(service_id: str) -> str:
    """
    Map a fault's service id onto a Deployment name:
    "api" -> "<prefix>api" unless it is already prefixed.
    """
    prefix = settings.DEPLOYMENT_PREFIX
    if not prefix or service_id.startswith(prefix):
        return service_id
    return prefix + service_id


@contextmanager
def _api_call(verb: str, resource: str, namespace: str) -> Iterator[None]:
    labels = {"verb": verb, "resource": resource, "namespace": namespace}
    start = time.time()
    try:
        yield
    except ApiException:
        K8S_API_ERRORS_TOTAL.labels(**labels).inc()
        raise
    finally:
        K8S_API_CALLS_TOTAL.labels(**labels).inc()
        K8S_API_LATENCY_SECONDS.labels(**labels).observe(time.time() - start)


def read_deployment_replicas(name: str, namespace: Optional[str] = None) -> int:
    ns = namespace or settings.K8S_NAMESPACE

    with tracer.start_as_current_span("k8s.read_deployment") as span:
        span.set_attribute("selfheal.k8s.deployment", name)
        span.set_attribute("selfheal.k8s.namespace", ns)

        _, apps_v1 = get_k8s_clients()
        try:
            with _api_call("read", "deployment", ns):
                dep = apps_v1.read_namespaced_deployment(name=name, namespace=ns)
        except ApiException as exc:
            logger.error("Error reading deployment %s/%s: %s", ns, name, exc)
            span.record_exception(exc)
            raise

        desired = dep.spec.replicas or 0
        DEPLOYMENT_DESIRED_REPLICAS.labels(namespace=ns, deployment=name).set(desired)
        return desired


def scale_deployment(
    name: str,
    replicas: int,
    namespace: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    ns = namespace or settings.K8S_NAMESPACE

    with tracer.start_as_current_span("k8s.scale_deployment") as span:
        span.set_attribute("selfheal.k8s.deployment", name)
        span.set_attribute("selfheal.k8s.replicas", replicas)
        span.set_attribute("selfheal.k8s.namespace", ns)
        span.set_attribute("selfheal.k8s.dry_run", dry_run)

        _, apps_v1 = get_k8s_clients()
        try:
            with _api_call("patch_scale", "deployment", ns):
                resp = apps_v1.patch_namespaced_deployment_scale(
                    name=name,
                    namespace=ns,
                    body={"spec": {"replicas": replicas}},
                    dry_run="All" if dry_run else None,
                )
        except ApiException as exc:
            logger.error("Error scaling deployment %s/%s: %s", ns, name, exc)
            span.record_exception(exc)
            raise

        DEPLOYMENT_DESIRED_REPLICAS.labels(namespace=ns, deployment=name).set(
            resp.spec.replicas or 0
        )
        return {"name": name, "namespace": ns, "replicas": resp.spec.replicas, "dry_run": dry_run}


def restart_deployment(
    name: str,
    namespace: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """`kubectl rollout restart`: bump the pod-template restartedAt annotation."""
    ns = namespace or settings.K8S_NAMESPACE

    with tracer.start_as_current_span("k8s.restart_deployment") as span:
        span.set_attribute("selfheal.k8s.deployment", name)
        span.set_attribute("selfheal.k8s.namespace", ns)
        span.set_attribute("selfheal.k8s.dry_run", dry_run)

        _, apps_v1 = get_k8s_clients()
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "spec": {
                "template": {
                    "metadata": {"annotations": {"kubectl.kubernetes.io/restartedAt": now}}
                }
            }
        }

        try:
            with _api_call("patch_restart", "deployment", ns):
                apps_v1.patch_namespaced_deployment(
                    name=name,
                    namespace=ns,
                    body=body,
                    dry_run="All" if dry_run else None,
                )
        except ApiException as exc:
            logger.error("Error restarting deployment %s/%s: %s", ns, name, exc)
            span.record_exception(exc)
            raise

        return {"name": name, "namespace": ns, "restarted_at": now, "dry_run": dry_run}
