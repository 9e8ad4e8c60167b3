from __future__ import annotations

import pytest

from etcd_cluster_operator.models import (
    ABSSource,
    BackupPolicy,
    BackupPolicyValidationError,
    BackupStatus,
    ClusterRef,
    EtcdCluster,
    PVSource,
    S3Source,
    ServiceStatus,
    StorageType,
    ZeroSizeVolumeError,
)


def test_validate_with_negative_max_backups_names_max_backups() -> None:
    with pytest.raises(BackupPolicyValidationError, match="MaxBackups"):
        BackupPolicy(max_backups=-1).validate()


def test_validate_with_persistent_volume_and_no_pv_raises_zero_size_error() -> None:
    with pytest.raises(ZeroSizeVolumeError, match="0 size volume"):
        BackupPolicy(storage_type=StorageType.PERSISTENT_VOLUME).validate()


@pytest.mark.parametrize("size", [0, -5])
def test_validate_with_persistent_volume_and_non_positive_size_raises_zero_size_error(size: int) -> None:
    policy = BackupPolicy(storage_type=StorageType.PERSISTENT_VOLUME, storage_source=PVSource(volume_size_in_mb=size))

    with pytest.raises(ZeroSizeVolumeError):
        policy.validate()


def test_validate_checks_max_backups_before_volume_size() -> None:
    policy = BackupPolicy(storage_type=StorageType.PERSISTENT_VOLUME, max_backups=-1)

    with pytest.raises(BackupPolicyValidationError) as excinfo:
        policy.validate()

    assert not isinstance(excinfo.value, ZeroSizeVolumeError)


@pytest.mark.parametrize(
    "policy",
    [
        BackupPolicy(),
        BackupPolicy(storage_type=StorageType.PERSISTENT_VOLUME, storage_source=PVSource(512), max_backups=0),
        BackupPolicy(storage_type=StorageType.S3),
        BackupPolicy(storage_type=StorageType.ABS, max_backups=7),
        BackupPolicy(storage_type=StorageType.S3, storage_source=S3Source(bucket="b"), max_backups=2),
    ],
)
def test_validate_with_accepted_policies_returns_none(policy: BackupPolicy) -> None:
    assert policy.validate() is None


def test_default_storage_type_is_effectively_persistent_volume() -> None:
    policy = BackupPolicy()

    assert policy.storage_type is StorageType.DEFAULT
    assert policy.effective_storage_type is StorageType.PERSISTENT_VOLUME


def test_policy_with_source_inconsistent_with_storage_type_is_rejected() -> None:
    with pytest.raises(BackupPolicyValidationError, match="does not match storageType"):
        BackupPolicy(storage_type=StorageType.S3, storage_source=PVSource(100))

    with pytest.raises(BackupPolicyValidationError):
        BackupPolicy(storage_type=StorageType.PERSISTENT_VOLUME, storage_source=ABSSource(container="c"))


def test_interval_seconds_defaults_to_1800_when_unset() -> None:
    assert BackupPolicy().interval_seconds == 1800
    assert BackupPolicy(backup_interval_in_second=60).interval_seconds == 60


def test_policy_from_dict_reads_wire_field_names() -> None:
    policy = BackupPolicy.from_dict(
        {
            "pod": {"resourceRequirements": {}},
            "storageType": "ABS",
            "abs": {"absContainer": "etcd-backups", "absSecret": "abs-creds"},
            "backupIntervalInSecond": 120,
            "maxBackups": 4,
            "autoDelete": True,
        }
    )

    assert policy.storage_type is StorageType.ABS
    assert policy.abs == ABSSource(container="etcd-backups", abs_secret="abs-creds")
    assert policy.backup_interval_in_second == 120
    assert policy.max_backups == 4
    assert policy.auto_delete is True
    assert policy.pod == {"resourceRequirements": {}}


def test_policy_to_dict_writes_inlined_source_and_wire_names() -> None:
    policy = BackupPolicy(
        storage_type=StorageType.S3,
        storage_source=S3Source(bucket="backups", prefix="etcd", aws_secret="aws"),
        max_backups=5,
    )

    assert policy.to_dict() == {
        "storageType": "S3",
        "s3": {"s3Bucket": "backups", "prefix": "etcd", "awsSecret": "aws"},
        "backupIntervalInSecond": 0,
        "maxBackups": 5,
        "autoDelete": False,
    }


def test_policy_from_dict_with_pv_reads_volume_size() -> None:
    policy = BackupPolicy.from_dict({"storageType": "PersistentVolume", "pv": {"volumeSizeInMB": 512}})

    assert policy.pv == PVSource(volume_size_in_mb=512)


def test_policy_from_dict_with_multiple_sources_raises_validation_error() -> None:
    with pytest.raises(BackupPolicyValidationError, match="pv, s3"):
        BackupPolicy.from_dict({"storageType": "S3", "pv": {"volumeSizeInMB": 1}, "s3": {"s3Bucket": "b"}})


def test_policy_from_dict_with_unknown_storage_type_raises_validation_error() -> None:
    with pytest.raises(BackupPolicyValidationError, match="unknown storageType"):
        BackupPolicy.from_dict({"storageType": "GCS"})


def test_service_status_to_dict_omits_missing_recent_backup() -> None:
    assert ServiceStatus().to_dict() == {"backups": 0, "backupSize": 0.0}


def test_service_status_from_dict_reads_recent_backup() -> None:
    status = ServiceStatus.from_dict(
        {
            "recentBackup": {
                "creationTime": "2026-10-19T10:00:00Z",
                "size": 1.5,
                "revision": 9001,
                "version": "3.2.13",
                "timeTookInSecond": 3,
            },
            "backups": 2,
            "backupSize": 3.0,
        }
    )

    assert status.recent_backup == BackupStatus(
        creation_time="2026-10-19T10:00:00Z",
        size=1.5,
        revision=9001,
        version="3.2.13",
        time_took_in_second=3,
    )
    assert status.backups == 2
    assert status.backup_size == 3.0


def test_cluster_to_dict_attaches_backup_service_status_and_keeps_unknown_fields() -> None:
    cluster = EtcdCluster.from_dict(
        {
            "metadata": {"namespace": "prod", "name": "etcd1", "resourceVersion": "7", "uid": "abc"},
            "spec": {"size": 3, "pod": {"antiAffinity": True}},
            "status": {"phase": "Running", "members": {"ready": ["etcd1-0"]}},
        }
    )
    cluster.status.backup_service_status = ServiceStatus(backups=1, backup_size=2.0)

    document = cluster.to_dict()

    assert cluster.ref == ClusterRef("prod", "etcd1")
    assert document["metadata"]["uid"] == "abc"
    assert document["metadata"]["resourceVersion"] == "7"
    assert document["spec"]["pod"] == {"antiAffinity": True}
    assert document["status"]["members"] == {"ready": ["etcd1-0"]}
    assert document["status"]["backupServiceStatus"] == {"backups": 1, "backupSize": 2.0}


def test_cluster_ref_renders_namespace_and_name() -> None:
    assert str(ClusterRef("prod", "etcd1")) == "prod/etcd1"
