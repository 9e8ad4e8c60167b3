from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Sequence
import argparse
import logging
import sys

import yaml
from kubernetes.client import ApiException

from .backup import artifact_prefix
from .config import OperatorConfig, load_config
from .deletion import (
    DeletionTimeoutError,
    DeletionWaiter,
    StorageCheckError,
    StorageCheckerOptions,
    delete_cluster,
    delete_cluster_and_backup,
)
from .k8s import (
    ETCD_CLUSTER_KIND,
    ClusterStoreError,
    EtcdClusterClient,
    KubernetesAuthenticationError,
    KubernetesClients,
    load_kubernetes_clients,
)
from .models import BackupPolicyValidationError, ClusterRef, EtcdCluster
from .storage import build_artifact_lister
from .updater import ConflictRetriesExceededError, UpdateTimeoutError, atomic_update_cluster

logger = logging.getLogger(__name__)

_OPERATION_ERRORS = (
    ApiException,
    ClusterStoreError,
    ConflictRetriesExceededError,
    DeletionTimeoutError,
    KubernetesAuthenticationError,
    StorageCheckError,
    UpdateTimeoutError,
    ValueError,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="etcd-cluster-operator",
        description=(
            "Validate etcd cluster backup policies, update EtcdCluster resources with optimistic concurrency, "
            "and delete clusters while confirming their resources and backups are gone."
        ),
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Restrict logging to warnings and errors only.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate the backup policy of EtcdCluster manifests.")
    validate.add_argument("manifests", nargs="+", type=Path, help="YAML files holding EtcdCluster documents.")

    prefix = subparsers.add_parser("prefix", help="Print the backup artifact prefix of a cluster.")
    prefix.add_argument("base_prefix")
    prefix.add_argument("namespace")
    prefix.add_argument("name")

    retention = subparsers.add_parser("set-max-backups", help="Change the backup retention of a cluster.")
    retention.add_argument("namespace")
    retention.add_argument("name")
    retention.add_argument("count", type=int)

    delete = subparsers.add_parser("delete", help="Delete a cluster and wait until its resources are gone.")
    delete.add_argument("namespace")
    delete.add_argument("name")
    delete.add_argument("--with-backup", action="store_true", help="Also wait until the backup is deleted.")
    delete.add_argument(
        "--verify-artifacts",
        action="store_true",
        help="Require backup artifacts to be gone even if the policy does not set autoDelete.",
    )
    delete.add_argument(
        "--deleted-from-api",
        action="store_true",
        help="Wait until dependent objects are removed from the API, not merely marked for deletion.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    _configure_logging(config, verbose=args.verbose, quiet=args.quiet)

    try:
        if args.command == "validate":
            return _validate_manifests(args.manifests)
        if args.command == "prefix":
            print(artifact_prefix(args.base_prefix, args.namespace, args.name))
            return 0
        if args.command == "set-max-backups":
            return _set_max_backups(config, ClusterRef(args.namespace, args.name), args.count)
        if args.command == "delete":
            return _delete(
                config,
                ClusterRef(args.namespace, args.name),
                with_backup=args.with_backup,
                verify_artifacts=args.verify_artifacts,
                deleted_from_api=args.deleted_from_api,
            )
    except _OPERATION_ERRORS as error:
        logger.error("%s", error)
        return 1
    return 2


def _configure_logging(config: OperatorConfig, *, verbose: bool, quiet: bool) -> None:
    level = config.log_level
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "WARNING"
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _validate_manifests(paths: Sequence[Path]) -> int:
    failures = 0
    for path in paths:
        with path.open("r", encoding="utf-8") as handle:
            documents = [document for document in yaml.safe_load_all(handle) if document]
        for document in documents:
            if not isinstance(document, dict) or document.get("kind") != ETCD_CLUSTER_KIND:
                continue
            metadata = document.get("metadata") or {}
            label = f"{path}:{metadata.get('namespace') or 'default'}/{metadata.get('name') or '<unnamed>'}"
            try:
                cluster = EtcdCluster.from_dict(document)
                if cluster.spec.backup is not None:
                    cluster.spec.backup.validate()
            except BackupPolicyValidationError as error:
                failures += 1
                print(f"invalid {label}: {error}")
                continue
            print(f"valid {label}")
    return 1 if failures else 0


def _clients(config: OperatorConfig) -> KubernetesClients:
    return load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )


def _set_max_backups(config: OperatorConfig, ref: ClusterRef, count: int) -> int:
    clients = _clients(config)
    clusters = EtcdClusterClient(clients.custom_api, request_timeout_seconds=config.request_timeout_seconds)

    def _set_retention(cluster: EtcdCluster) -> None:
        if cluster.spec.backup is None:
            raise BackupPolicyValidationError(f"etcd cluster {ref} has no backup policy")
        cluster.spec.backup = replace(cluster.spec.backup, max_backups=count)

    updated = atomic_update_cluster(
        clusters,
        ref,
        _set_retention,
        max_retries=config.update_max_retries,
        retry_interval_seconds=config.update_retry_interval_seconds,
        timeout_seconds=config.update_timeout_seconds,
    )
    print(f"updated {ref} maxBackups={count} resourceVersion={updated.resource_version}")
    return 0


def _delete(
    config: OperatorConfig,
    ref: ClusterRef,
    *,
    with_backup: bool,
    verify_artifacts: bool,
    deleted_from_api: bool,
) -> int:
    clients = _clients(config)
    clusters = EtcdClusterClient(clients.custom_api, request_timeout_seconds=config.request_timeout_seconds)
    waiter = DeletionWaiter(
        core_api=clients.core_api,
        apps_api=clients.apps_api,
        poll_interval_seconds=config.delete_poll_interval_seconds,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    cluster = clusters.get(ref)
    timeout_seconds = config.deletion_timeout(deleted_from_api=deleted_from_api)

    if not with_backup:
        delete_cluster(clusters, waiter, cluster, timeout_seconds=timeout_seconds, deleted_from_api=deleted_from_api)
        print(f"deleted {ref}")
        return 0

    policy = cluster.spec.backup
    # Built before deletion while the credential secret still exists.
    lister = build_artifact_lister(clients.core_api, namespace=ref.namespace, policy=policy) if policy else None
    options = StorageCheckerOptions(
        lister=lister,
        deleted_from_api=deleted_from_api,
        verify_artifacts=verify_artifacts,
    )
    delete_cluster_and_backup(clusters, waiter, cluster, options, timeout_seconds=timeout_seconds)
    print(f"deleted {ref} and its backup")
    return 0


if __name__ == "__main__":
    sys.exit(main())
