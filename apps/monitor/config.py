import os
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import InvalidConfiguration


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "y")


class Settings:
    """
    Process-level monitor configuration.

    Backed by environment variables so we can tune behavior per environment
    (dev / stage / prod) without changing code. Values here seed the
    runtime-updatable MonitoringConfig below.

    Fields:
      - LOG_LEVEL: monitor log level
      - OTel_Endpoint: OTEL OTLP endpoint for traces
      - OTEL_ENABLED: turn OTEL + HTTP instrumentation on/off
      - EXECUTOR_BACKEND: "simulated" (default) or "kubernetes"
      - K8S_NAMESPACE / DEPLOYMENT_PREFIX: where Kubernetes executors act
    """

    # ------------------------------------------------------------------
    # Base settings
    # ------------------------------------------------------------------
    LOG_LEVEL: str = os.getenv("MONITOR_LOG_LEVEL", "INFO")

    OTel_Endpoint: str = os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "http://selfheal-otelcol:4317",
    )
    OTEL_ENABLED: bool = _env_bool("MONITOR_OTEL_ENABLED", "true")

    # ------------------------------------------------------------------
    # Executors
    # ------------------------------------------------------------------
    EXECUTOR_BACKEND: str = os.getenv("MONITOR_EXECUTOR_BACKEND", "simulated")
    # Simulated executors sleep this long per action to mimic real latency.
    SIMULATED_ACTION_DELAY_SECONDS: float = float(
        os.getenv("MONITOR_SIMULATED_ACTION_DELAY_SECONDS", "0.5")
    )
    K8S_NAMESPACE: str = os.getenv("K8S_NAMESPACE", "selfheal-dev")
    DEPLOYMENT_PREFIX: str = os.getenv("MONITOR_DEPLOYMENT_PREFIX", "")
    MAX_REPLICAS: int = int(os.getenv("MONITOR_MAX_REPLICAS", "10"))

    # ------------------------------------------------------------------
    # Defaults for the runtime config
    # ------------------------------------------------------------------
    MAX_CONCURRENT_RECOVERIES: int = int(os.getenv("MONITOR_MAX_CONCURRENT_RECOVERIES", "5"))
    RECOVERY_TIMEOUT_MS: int = int(os.getenv("MONITOR_RECOVERY_TIMEOUT_MS", "30000"))
    ALERT_CHANNELS: List[str] = _env_list("MONITOR_ALERT_CHANNELS", "email,slack")
    CRITICAL_ALERT_CHANNELS: List[str] = _env_list(
        "MONITOR_CRITICAL_ALERT_CHANNELS", "email,sms,slack"
    )

    def __init__(self) -> None:
        # A zero/negative cap would reject every fault; clamp to 1.
        if self.MAX_CONCURRENT_RECOVERIES < 1:
            self.MAX_CONCURRENT_RECOVERIES = 1
        if self.MAX_REPLICAS < 1:
            self.MAX_REPLICAS = 1

    @property
    def OTEL_ENDPOINT(self) -> str:
        return self.OTel_Endpoint


settings = Settings()


class MonitoringConfig(BaseModel):
    """
    Runtime-updatable configuration. Accepts camelCase (as sent by the
    configuration UI) or snake_case keys.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    # SLA monitoring
    sla_enabled: bool = True
    sla_check_interval: int = Field(60, ge=1, description="Seconds.")

    # Fault recovery
    fault_recovery_enabled: bool = True
    max_concurrent_recoveries: int = Field(
        default_factory=lambda: settings.MAX_CONCURRENT_RECOVERIES, ge=1
    )
    recovery_timeout: int = Field(
        default_factory=lambda: settings.RECOVERY_TIMEOUT_MS,
        ge=1,
        description="Per-attempt executor timeout in milliseconds.",
    )
    exponential_backoff: bool = True

    # Alerts
    alert_enabled: bool = True
    alert_channels: List[str] = Field(default_factory=lambda: list(settings.ALERT_CHANNELS))
    critical_alert_channels: List[str] = Field(
        default_factory=lambda: list(settings.CRITICAL_ALERT_CHANNELS)
    )

    # History / collection
    data_retention_days: int = Field(90, ge=1)
    metrics_collection_interval: int = Field(15, ge=1, description="Seconds.")
    status_update_interval: int = Field(5, ge=1, description="Seconds.")

    def merged(self, partial: Dict[str, Any]) -> "MonitoringConfig":
        """
        Return a new config with `partial` applied on top of this one.

        Raises InvalidConfiguration when the merged result does not validate.
        """
        fields = MonitoringConfig.model_fields
        by_alias = {f.alias: name for name, f in fields.items() if f.alias}

        unknown = [key for key in partial if key not in fields and key not in by_alias]
        if unknown:
            raise InvalidConfiguration(f"unknown configuration keys: {sorted(unknown)}")

        # Normalise camelCase keys to field names so they override the dump.
        normalized = {by_alias.get(key, key): value for key, value in partial.items()}
        try:
            return MonitoringConfig.model_validate({**self.model_dump(), **normalized})
        except ValidationError as exc:
            raise InvalidConfiguration(str(exc)) from exc
