from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.client import ApiException
import urllib3.exceptions

from .backup import artifact_prefix
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, EtcdClusterClient
from .models import ClusterRef, EtcdCluster, StorageType
from .storage import ArtifactLister, ArtifactListingError, base_prefix_for

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
CLUSTER_LABEL = "etcd_cluster"
BACKUP_SIDECAR_SUFFIX = "-backup-sidecar"
TRANSIENT_API_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
OBJECT_STORAGE_TYPES = frozenset({StorageType.S3, StorageType.ABS})


class WaitState(str, Enum):
    POLLING = "Polling"
    CONFIRMED = "Confirmed"
    TIMED_OUT = "TimedOut"
    ERRORED = "Errored"


@dataclass(frozen=True)
class StorageCheckerOptions:
    lister: ArtifactLister | None = None
    deleted_from_api: bool = False
    verify_artifacts: bool = False
    base_prefix: str | None = None


class StorageCheckError(RuntimeError):
    state = WaitState.ERRORED

    def __init__(self, *, cluster: ClusterRef, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"deletion check failed for etcd cluster {cluster}: {normalized_reason}")
        self.cluster = cluster


class DeletionTimeoutError(TimeoutError):
    state = WaitState.TIMED_OUT

    def __init__(self, *, cluster: ClusterRef, subject: str, timeout_seconds: float, remaining: list[str]) -> None:
        super().__init__(
            f"failed to confirm {subject} of etcd cluster {cluster} within {timeout_seconds:g}s budget; "
            f"still present: {', '.join(remaining)}"
        )
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds
        self.remaining = remaining


class DeletionWaiter:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        logger: logging.Logger = logging.getLogger(__name__),
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        self.core_api = core_api
        self.apps_api = apps_api
        self.poll_interval_seconds = poll_interval_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.logit = logger

    def wait_resources_deleted(
        self,
        cluster: EtcdCluster,
        *,
        timeout_seconds: float,
        deleted_from_api: bool = False,
    ) -> WaitState:
        return self._poll_until_empty(
            cluster=cluster.ref,
            subject="resource deletion",
            timeout_seconds=timeout_seconds,
            probe=lambda: self._remaining_runtime_resources(cluster.ref, deleted_from_api=deleted_from_api),
        )

    def wait_backup_deleted(
        self,
        cluster: EtcdCluster,
        options: StorageCheckerOptions,
        *,
        timeout_seconds: float,
    ) -> WaitState:
        prefix = self.artifact_check_prefix(cluster, options)

        def _probe() -> list[str]:
            remaining = self._remaining_runtime_resources(cluster.ref, deleted_from_api=options.deleted_from_api)
            if prefix is not None:
                remaining.extend(self._remaining_artifacts(cluster.ref, options.lister, prefix))
            return remaining

        return self._poll_until_empty(
            cluster=cluster.ref,
            subject="backup deletion",
            timeout_seconds=timeout_seconds,
            probe=_probe,
        )

    def artifact_check_prefix(self, cluster: EtcdCluster, options: StorageCheckerOptions) -> str | None:
        """Return the artifact prefix that must be empty, or None when artifacts are not checked.

        Policies with ``autoDelete`` are checked automatically only for object
        storage; PersistentVolume backups do not live under an artifact prefix.
        """
        policy = cluster.spec.backup
        auto_check = (
            policy is not None
            and policy.auto_delete
            and policy.effective_storage_type in OBJECT_STORAGE_TYPES
        )
        if not (options.verify_artifacts or auto_check):
            return None
        if options.lister is None:
            raise StorageCheckError(cluster=cluster.ref, reason="artifact verification requested without a lister")
        base_prefix = options.base_prefix
        if base_prefix is None:
            base_prefix = base_prefix_for(policy) if policy is not None else ""
        return artifact_prefix(base_prefix, cluster.ref.namespace, cluster.ref.name)

    def _poll_until_empty(
        self,
        *,
        cluster: ClusterRef,
        subject: str,
        timeout_seconds: float,
        probe: Callable[[], list[str]],
    ) -> WaitState:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        deadline = time.monotonic() + timeout_seconds
        polls = 0
        while True:
            polls += 1
            remaining = probe()
            if not remaining:
                self.logit.info("confirmed %s of etcd cluster %s after %d polls", subject, cluster, polls)
                return WaitState.CONFIRMED

            self.logit.info("waiting for %s of etcd cluster %s: %s", subject, cluster, ", ".join(remaining))
            time_left = deadline - time.monotonic()
            if time_left <= 0:
                raise DeletionTimeoutError(
                    cluster=cluster,
                    subject=subject,
                    timeout_seconds=timeout_seconds,
                    remaining=remaining,
                )
            time.sleep(min(self.poll_interval_seconds, time_left))

    def _remaining_runtime_resources(self, cluster: ClusterRef, *, deleted_from_api: bool) -> list[str]:
        selector = f"{CLUSTER_LABEL}={cluster.name}"
        remaining: list[str] = []
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=cluster.namespace,
                label_selector=selector,
                _request_timeout=self.request_timeout_seconds,
            ).items
            remaining.extend(
                f"pod/{pod.metadata.name}" for pod in pods if _still_present(pod, deleted_from_api=deleted_from_api)
            )
            services = self.core_api.list_namespaced_service(
                namespace=cluster.namespace,
                label_selector=selector,
                _request_timeout=self.request_timeout_seconds,
            ).items
            remaining.extend(
                f"service/{service.metadata.name}"
                for service in services
                if _still_present(service, deleted_from_api=deleted_from_api)
            )
            sidecar_name = f"{cluster.name}{BACKUP_SIDECAR_SUFFIX}"
            sidecar = self._read_deployment(namespace=cluster.namespace, name=sidecar_name)
            if sidecar is not None and _still_present(sidecar, deleted_from_api=deleted_from_api):
                remaining.append(f"deployment/{sidecar_name}")
        except Exception as error:  # pylint: disable=broad-except
            if not _is_transient_error(error):
                raise StorageCheckError(cluster=cluster, reason=_error_message(error)) from error
            self.logit.warning("transient error checking resources of etcd cluster %s: %s", cluster, error)
            remaining.append(f"unverified ({_error_message(error)})")
        return remaining

    def _remaining_artifacts(self, cluster: ClusterRef, lister: ArtifactLister, prefix: str) -> list[str]:
        try:
            artifacts = lister.list_artifacts(prefix)
        except ArtifactListingError as error:
            raise StorageCheckError(cluster=cluster, reason=_error_message(error)) from error
        if artifacts:
            return [f"{len(artifacts)} backup artifact(s) under {prefix}"]
        return []

    def _read_deployment(self, *, namespace: str, name: str) -> Any | None:
        try:
            return self.apps_api.read_namespaced_deployment(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            if error.status == 404:
                return None
            raise


def delete_cluster(
    clusters: EtcdClusterClient,
    waiter: DeletionWaiter,
    cluster: EtcdCluster,
    *,
    timeout_seconds: float,
    deleted_from_api: bool = False,
) -> WaitState:
    waiter.logit.info("deleting etcd cluster %s", cluster.ref)
    clusters.delete(cluster.ref)
    return waiter.wait_resources_deleted(cluster, timeout_seconds=timeout_seconds, deleted_from_api=deleted_from_api)


def delete_cluster_and_backup(
    clusters: EtcdClusterClient,
    waiter: DeletionWaiter,
    cluster: EtcdCluster,
    options: StorageCheckerOptions,
    *,
    timeout_seconds: float,
) -> WaitState:
    # Fail on an unusable artifact check while the cluster still exists.
    waiter.artifact_check_prefix(cluster, options)
    delete_cluster(
        clusters,
        waiter,
        cluster,
        timeout_seconds=timeout_seconds,
        deleted_from_api=options.deleted_from_api,
    )
    waiter.logit.info("waiting for backup of etcd cluster %s to be deleted", cluster.ref)
    return waiter.wait_backup_deleted(cluster, options, timeout_seconds=timeout_seconds)


def _still_present(resource: Any, *, deleted_from_api: bool) -> bool:
    if deleted_from_api:
        return True
    metadata = getattr(resource, "metadata", None)
    return getattr(metadata, "deletion_timestamp", None) is None


def _is_transient_error(error: Exception) -> bool:
    if isinstance(error, ApiException):
        return error.status in TRANSIENT_API_STATUSES
    return isinstance(error, (urllib3.exceptions.HTTPError, ConnectionError))


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
