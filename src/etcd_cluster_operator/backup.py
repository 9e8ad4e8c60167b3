from __future__ import annotations

from collections import deque
import posixpath

from .models import (
    BackupPolicy,
    BackupPolicyValidationError,
    BackupStatus,
    ClusterRef,
    EtcdCluster,
    ServiceStatus,
)
from .updater import DEFAULT_RETRY_INTERVAL_SECONDS, ClusterStore, atomic_update_cluster

# Layout of backup artifacts: <base prefix>/v1/<namespace>/<cluster name>
BACKUP_SCHEMA_V1 = "v1"


def artifact_prefix(base_prefix: str, namespace: str, cluster_name: str) -> str:
    if not namespace or not cluster_name:
        raise ValueError(
            f"artifact prefix needs a namespace and a cluster name (got {namespace!r}, {cluster_name!r})"
        )
    elements = [element for element in (base_prefix, BACKUP_SCHEMA_V1, namespace, cluster_name) if element]
    cleaned = posixpath.normpath("/".join(elements))
    # normpath keeps a leading "//"; a rooted prefix has exactly one slash.
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class BackupStatusTracker:
    """Retained backup history of a single cluster, newest last."""

    def __init__(self, max_backups: int = 0) -> None:
        if max_backups < 0:
            raise BackupPolicyValidationError(f"MaxBackups value should be >= 0 (got {max_backups})")
        self.max_backups = max_backups
        self._retained: deque[BackupStatus] = deque()
        self._total_size = 0.0

    @classmethod
    def for_policy(cls, policy: BackupPolicy) -> BackupStatusTracker:
        policy.validate()
        return cls(max_backups=policy.max_backups)

    @property
    def retained(self) -> tuple[BackupStatus, ...]:
        return tuple(self._retained)

    def record(self, status: BackupStatus) -> list[BackupStatus]:
        """Append a completed backup and return the records evicted by retention.

        Evicted records still have artifacts in storage; deleting them is left
        to the caller.
        """
        self._retained.append(status)

        evicted: list[BackupStatus] = []
        while self.max_backups > 0 and len(self._retained) > self.max_backups:
            evicted.append(self._retained.popleft())
        self._total_size = sum(item.size for item in self._retained)
        return evicted

    def snapshot(self) -> ServiceStatus:
        return ServiceStatus(
            recent_backup=self._retained[-1] if self._retained else None,
            backups=len(self._retained),
            backup_size=self._total_size,
        )


def publish_backup_status(
    clusters: ClusterStore,
    ref: ClusterRef,
    tracker: BackupStatusTracker,
    *,
    max_retries: int,
    retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    timeout_seconds: float | None = None,
) -> EtcdCluster:
    service_status = tracker.snapshot()

    def _attach(cluster: EtcdCluster) -> None:
        cluster.status.backup_service_status = service_status

    return atomic_update_cluster(
        clusters,
        ref,
        _attach,
        max_retries=max_retries,
        retry_interval_seconds=retry_interval_seconds,
        timeout_seconds=timeout_seconds,
    )
