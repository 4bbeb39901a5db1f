"""Tests for the Kubernetes executor backend (API calls are faked)."""

import pytest
from kubernetes.client import ApiException

from apps.monitor.config import settings
from apps.monitor.errors import ActionExecutionError
from apps.monitor.models.fault_models import ActionType, RecoveryAction
from apps.monitor.services import k8s_core
from apps.monitor.services.executors import build_executor_registry
from apps.monitor.services.k8s_executors import (
    KubernetesRestartExecutor,
    KubernetesScaleExecutor,
)


class FakeDeployments:
    def __init__(self, replicas=2):
        self.replicas = replicas
        self.restarted = []
        self.scaled = []

    def read(self, name, namespace=None):
        return self.replicas

    def scale(self, name, replicas, namespace=None, dry_run=False):
        self.scaled.append((name, replicas, namespace))
        self.replicas = replicas
        return {"name": name, "namespace": namespace or "test", "replicas": replicas, "dry_run": dry_run}

    def restart(self, name, namespace=None, dry_run=False):
        self.restarted.append((name, namespace, dry_run))
        return {"name": name, "namespace": namespace or "test", "restarted_at": "now", "dry_run": dry_run}


@pytest.fixture
def deployments(monkeypatch):
    fake = FakeDeployments()
    monkeypatch.setattr(k8s_core, "read_deployment_replicas", fake.read)
    monkeypatch.setattr(k8s_core, "scale_deployment", fake.scale)
    monkeypatch.setattr(k8s_core, "restart_deployment", fake.restart)
    monkeypatch.setattr(settings, "DEPLOYMENT_PREFIX", "")
    monkeypatch.setattr(settings, "MAX_REPLICAS", 3)
    return fake


def action(action_type, **parameters):
    return RecoveryAction(id="action_test", type=action_type, parameters=parameters)


class TestRestart:

    @pytest.mark.asyncio
    async def test_restarts_service_deployment(self, deployments, make_fault):
        fault = make_fault(service_id="checkout")

        ok = await KubernetesRestartExecutor().execute(action(ActionType.RESTART_SERVICE), fault)

        assert ok is True
        assert deployments.restarted == [("checkout", None, False)]

    @pytest.mark.asyncio
    async def test_explicit_deployment_parameter(self, deployments, make_fault):
        fault = make_fault(service_id="system")

        await KubernetesRestartExecutor().execute(
            action(ActionType.RESTART_SERVICE, deployment="database-proxy", namespace="data"),
            fault,
        )

        assert deployments.restarted == [("database-proxy", "data", False)]

    @pytest.mark.asyncio
    async def test_untargeted_fault_fails(self, deployments, make_fault):
        with pytest.raises(ActionExecutionError):
            await KubernetesRestartExecutor().execute(
                action(ActionType.RESTART_SERVICE), make_fault(service_id="system")
            )

    @pytest.mark.asyncio
    async def test_api_error_becomes_action_error(self, monkeypatch, deployments, make_fault):
        def broken(name, namespace=None, dry_run=False):
            raise ApiException(status=403, reason="Forbidden")

        monkeypatch.setattr(k8s_core, "restart_deployment", broken)

        with pytest.raises(ActionExecutionError) as exc_info:
            await KubernetesRestartExecutor().execute(
                action(ActionType.RESTART_SERVICE), make_fault(service_id="checkout")
            )

        assert "Forbidden" in str(exc_info.value)

    def test_prefixed_deployment_name(self, monkeypatch):
        monkeypatch.setattr(settings, "DEPLOYMENT_PREFIX", "selfheal-")

        assert k8s_core.resolve_deployment_name("checkout") == "selfheal-checkout"
        assert k8s_core.resolve_deployment_name("selfheal-checkout") == "selfheal-checkout"


class TestScale:

    @pytest.mark.asyncio
    async def test_scales_up_by_delta(self, deployments, make_fault):
        ok = await KubernetesScaleExecutor().execute(
            action(ActionType.SCALE_RESOURCES), make_fault(service_id="api")
        )

        assert ok is True
        assert deployments.scaled == [("api", 3, None)]

    @pytest.mark.asyncio
    async def test_capped_at_max_replicas(self, deployments, make_fault):
        deployments.replicas = 3

        ok = await KubernetesScaleExecutor().execute(
            action(ActionType.SCALE_RESOURCES, replica_delta=2), make_fault(service_id="api")
        )

        assert ok is False
        assert deployments.scaled == []

    @pytest.mark.asyncio
    async def test_scale_down_floored_at_one(self, deployments, make_fault):
        ok = await KubernetesScaleExecutor().execute(
            action(ActionType.SCALE_RESOURCES, replica_delta=-5), make_fault(service_id="api")
        )

        assert ok is True
        assert deployments.scaled == [("api", 1, None)]


class TestRegistry:

    def test_kubernetes_backend_overrides_simulated(self, bus):
        registry = build_executor_registry(bus, backend="kubernetes")

        assert isinstance(registry.get(ActionType.RESTART_SERVICE), KubernetesRestartExecutor)
        assert isinstance(registry.get(ActionType.SCALE_RESOURCES), KubernetesScaleExecutor)
        assert ActionType.CLEAR_CACHE in registry

    def test_simulated_backend_covers_every_action(self, bus):
        registry = build_executor_registry(bus, backend="simulated")

        assert all(action_type in registry for action_type in ActionType)
