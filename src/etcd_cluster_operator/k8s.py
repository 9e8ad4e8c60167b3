from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import ClusterRef, EtcdCluster

ETCD_CLUSTER_GROUP = "etcd.database.coreos.com"
ETCD_CLUSTER_VERSION = "v1beta2"
ETCD_CLUSTER_PLURAL = "etcdclusters"
ETCD_CLUSTER_KIND = "EtcdCluster"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ClusterStoreError(RuntimeError):
    def __init__(self, message: str, *, cluster: ClusterRef, status: int | None = None) -> None:
        super().__init__(message)
        self.cluster = cluster
        self.status = status


class ClusterConflictError(ClusterStoreError):
    """Raised when a write was rejected because the resource version moved on."""


class ClusterNotFoundError(ClusterStoreError):
    """Raised when the cluster resource does not exist."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class EtcdClusterClient:
    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def get(self, ref: ClusterRef) -> EtcdCluster:
        document = _store_call(
            operation="get",
            cluster=ref,
            func=lambda: self.custom_api.get_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=ref.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                name=ref.name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return EtcdCluster.from_dict(document)

    def create(self, cluster: EtcdCluster) -> EtcdCluster:
        body = _with_type_meta(cluster.to_dict())
        body["metadata"].pop("resourceVersion", None)
        document = _store_call(
            operation="create",
            cluster=cluster.ref,
            func=lambda: self.custom_api.create_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=cluster.ref.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        logger.info("created etcd cluster %s", cluster.ref)
        return EtcdCluster.from_dict(document)

    def replace(self, cluster: EtcdCluster) -> EtcdCluster:
        if not cluster.resource_version:
            raise ValueError(f"cannot replace etcd cluster {cluster.ref} without a resource version")
        # The API server rejects the write with 409 if metadata.resourceVersion is stale.
        body = _with_type_meta(cluster.to_dict())
        document = _store_call(
            operation="replace",
            cluster=cluster.ref,
            func=lambda: self.custom_api.replace_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=cluster.ref.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                name=cluster.ref.name,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return EtcdCluster.from_dict(document)

    def delete(self, ref: ClusterRef) -> None:
        _store_call(
            operation="delete",
            cluster=ref,
            func=lambda: self.custom_api.delete_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=ref.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                name=ref.name,
                body=client.V1DeleteOptions(),
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        logger.info("deleted etcd cluster %s", ref)


def _with_type_meta(document: dict[str, Any]) -> dict[str, Any]:
    document.setdefault("apiVersion", f"{ETCD_CLUSTER_GROUP}/{ETCD_CLUSTER_VERSION}")
    document.setdefault("kind", ETCD_CLUSTER_KIND)
    return document


def _store_call(*, operation: str, cluster: ClusterRef, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, cluster=cluster, error=error)
        if error.status == 409:
            raise ClusterConflictError(message, cluster=cluster, status=error.status) from error
        if error.status == 404:
            raise ClusterNotFoundError(message, cluster=cluster, status=error.status) from error
        raise ClusterStoreError(message, cluster=cluster, status=error.status) from error
    except Exception as error:
        raise ClusterStoreError(
            f"etcd cluster {operation} failed for '{cluster}': {error}",
            cluster=cluster,
        ) from error


def _format_api_exception_message(*, operation: str, cluster: ClusterRef, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"etcd cluster {operation} failed for '{cluster}': API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
