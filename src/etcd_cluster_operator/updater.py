from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from .k8s import ClusterConflictError
from .models import ClusterRef, EtcdCluster

DEFAULT_RETRY_INTERVAL_SECONDS = 1.0

ClusterTransform = Callable[[EtcdCluster], None]

logger = logging.getLogger(__name__)


class ClusterStore(Protocol):
    def get(self, ref: ClusterRef) -> EtcdCluster: ...

    def replace(self, cluster: EtcdCluster) -> EtcdCluster: ...


class ConflictRetriesExceededError(RuntimeError):
    def __init__(self, *, cluster: ClusterRef, max_retries: int) -> None:
        super().__init__(
            f"etcd cluster {cluster} update still conflicting after {max_retries} attempts; "
            "exceeded retry budget"
        )
        self.cluster = cluster
        self.max_retries = max_retries


class UpdateTimeoutError(TimeoutError):
    def __init__(self, *, cluster: ClusterRef, timeout_seconds: float, attempts: int) -> None:
        super().__init__(
            f"etcd cluster {cluster} update did not complete within {timeout_seconds:g}s "
            f"({attempts} conflicting attempts)"
        )
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts


def atomic_update_cluster(
    clusters: ClusterStore,
    ref: ClusterRef,
    transform: ClusterTransform,
    *,
    max_retries: int,
    retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    timeout_seconds: float | None = None,
) -> EtcdCluster:
    """Apply ``transform`` to the latest copy of a cluster and write it back.

    Each attempt re-fetches the resource so the write is always conditioned on
    the resource version that was just read. ``transform`` edits the fetched
    copy in place and may run once per attempt, so it must not perform I/O.
    Version conflicts are retried up to ``max_retries`` attempts; every other
    store failure propagates immediately.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    if retry_interval_seconds < 0:
        raise ValueError("retry_interval_seconds must be >= 0")
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")

    deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
    for attempt in range(1, max_retries + 1):
        cluster = clusters.get(ref)
        transform(cluster)
        if cluster.spec.backup is not None:
            cluster.spec.backup.validate()

        try:
            updated = clusters.replace(cluster)
        except ClusterConflictError:
            logger.debug(
                "conflict updating etcd cluster %s at resourceVersion %s (attempt %d/%d)",
                ref,
                cluster.resource_version,
                attempt,
                max_retries,
            )
            if attempt == max_retries:
                break
            if deadline is not None and time.monotonic() + retry_interval_seconds > deadline:
                raise UpdateTimeoutError(cluster=ref, timeout_seconds=timeout_seconds, attempts=attempt)
            time.sleep(retry_interval_seconds)
            continue

        logger.debug("updated etcd cluster %s to resourceVersion %s", ref, updated.resource_version)
        return updated

    raise ConflictRetriesExceededError(cluster=ref, max_retries=max_retries)


def update_cluster(
    clusters: ClusterStore,
    cluster: EtcdCluster,
    max_retries: int,
    transform: ClusterTransform,
    *,
    retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    timeout_seconds: float | None = None,
) -> EtcdCluster:
    return atomic_update_cluster(
        clusters,
        cluster.ref,
        transform,
        max_retries=max_retries,
        retry_interval_seconds=retry_interval_seconds,
        timeout_seconds=timeout_seconds,
    )
