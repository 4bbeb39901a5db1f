"""
Kubernetes-backed executors for restart_service / restart_process /
scale_resources. The fault's service id is resolved to a Deployment name
unless the action carries an explicit "deployment" parameter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from kubernetes.client import ApiException

from ..config import settings
from ..errors import ActionExecutionError
from ..models.fault_models import ActionType, Fault, RecoveryAction
from . import k8s_core

logger = logging.getLogger("selfheal.k8s")

# Faults not tied to one workload carry this service id.
_UNTARGETED_SERVICES = {"system", "unknown_service"}


def _deployment_for(action: RecoveryAction, fault: Fault) -> str:
    explicit: Optional[str] = action.parameters.get("deployment")
    if explicit:
        return explicit
    if fault.service_id in _UNTARGETED_SERVICES:
        raise ActionExecutionError(
            action.type.value, f"fault {fault.id} has no deployment target"
        )
    return k8s_core.resolve_deployment_name(fault.service_id)


class KubernetesRestartExecutor:
    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        name = _deployment_for(action, fault)
        namespace = action.parameters.get("namespace")
        dry_run = bool(action.parameters.get("dry_run", False))

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: k8s_core.restart_deployment(name, namespace=namespace, dry_run=dry_run),
            )
        except ApiException as exc:
            raise ActionExecutionError(action.type.value, f"restart {name} failed: {exc.reason}") from exc

        logger.info("Restarted deployment %s/%s for fault %s", result["namespace"], name, fault.id)
        return True


class KubernetesScaleExecutor:
    """
    Scales by `replica_delta` (default +1). Scale-ups are capped at
    MAX_REPLICAS and scale-downs floored at 1; hitting a bound without any
    change is a failed attempt.
    """

    async def execute(self, action: RecoveryAction, fault: Fault) -> bool:
        name = _deployment_for(action, fault)
        namespace = action.parameters.get("namespace")
        delta = int(action.parameters.get("replica_delta", 1))

        loop = asyncio.get_running_loop()
        try:
            current = await loop.run_in_executor(
                None, lambda: k8s_core.read_deployment_replicas(name, namespace=namespace)
            )
            target = max(1, min(current + delta, settings.MAX_REPLICAS))
            if target == current:
                logger.warning(
                    "Scale of %s skipped: already at bound (replicas=%d max=%d)",
                    name,
                    current,
                    settings.MAX_REPLICAS,
                )
                return False

            await loop.run_in_executor(
                None, lambda: k8s_core.scale_deployment(name, target, namespace=namespace)
            )
        except ApiException as exc:
            raise ActionExecutionError(action.type.value, f"scale {name} failed: {exc.reason}") from exc

        logger.info("Scaled deployment %s %d -> %d for fault %s", name, current, target, fault.id)
        return True


def register_kubernetes_executors(registry) -> None:
    restart = KubernetesRestartExecutor()
    registry.register(ActionType.RESTART_SERVICE, restart)
    registry.register(ActionType.RESTART_PROCESS, restart)
    registry.register(ActionType.SCALE_RESOURCES, KubernetesScaleExecutor())
