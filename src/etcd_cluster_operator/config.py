from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
import os

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OperatorConfig:
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    update_max_retries: int = 5
    update_retry_interval_seconds: float = 1.0
    update_timeout_seconds: float = 60.0
    delete_poll_interval_seconds: float = 10.0
    delete_timeout_seconds: float = 50.0
    delete_from_api_timeout_seconds: float = 300.0
    request_timeout_seconds: int = 20
    log_level: str = "INFO"

    def deletion_timeout(self, *, deleted_from_api: bool) -> float:
        return self.delete_from_api_timeout_seconds if deleted_from_api else self.delete_timeout_seconds


def load_config(environ: Mapping[str, str] | None = None) -> OperatorConfig:
    env = os.environ if environ is None else environ
    return OperatorConfig(
        kubeconfig_path=env.get("ECO_KUBECONFIG") or None,
        context=env.get("ECO_CONTEXT") or None,
        in_cluster=env.get("ECO_IN_CLUSTER", "").strip().lower() in _TRUE_VALUES,
        update_max_retries=_positive(env, "ECO_UPDATE_MAX_RETRIES", 5, int),
        update_retry_interval_seconds=_positive(env, "ECO_UPDATE_RETRY_INTERVAL_SECONDS", 1.0, float),
        update_timeout_seconds=_positive(env, "ECO_UPDATE_TIMEOUT_SECONDS", 60.0, float),
        delete_poll_interval_seconds=_positive(env, "ECO_DELETE_POLL_INTERVAL_SECONDS", 10.0, float),
        delete_timeout_seconds=_positive(env, "ECO_DELETE_TIMEOUT_SECONDS", 50.0, float),
        delete_from_api_timeout_seconds=_positive(env, "ECO_DELETE_FROM_API_TIMEOUT_SECONDS", 300.0, float),
        request_timeout_seconds=_positive(env, "ECO_REQUEST_TIMEOUT_SECONDS", 20, int),
        log_level=(env.get("ECO_LOG_LEVEL") or "INFO").strip().upper(),
    )


def _positive(env: Mapping[str, str], name: str, default: int | float, cast: type) -> int | float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got {raw!r}") from error
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value
