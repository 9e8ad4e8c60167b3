from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping
import copy

DEFAULT_BACKUP_INTERVAL_SECONDS = 1800

AWS_SECRET_CREDENTIALS_FILE_NAME = "credentials"
AWS_SECRET_CONFIG_FILE_NAME = "config"
AWS_PROFILE = "default"

ABS_STORAGE_ACCOUNT_KEY = "storage-account"
ABS_STORAGE_KEY_KEY = "storage-key"


class BackupPolicyValidationError(ValueError):
    """Raised when a backup policy violates one of its invariants."""


class ZeroSizeVolumeError(BackupPolicyValidationError):
    def __init__(self) -> None:
        super().__init__("PV backup should not have 0 size volume")


class StorageType(str, Enum):
    DEFAULT = ""
    PERSISTENT_VOLUME = "PersistentVolume"
    S3 = "S3"
    ABS = "ABS"

    @property
    def effective(self) -> StorageType:
        if self is StorageType.DEFAULT:
            return StorageType.PERSISTENT_VOLUME
        return self


@dataclass(frozen=True)
class PVSource:
    volume_size_in_mb: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PVSource:
        return cls(volume_size_in_mb=int(data.get("volumeSizeInMB") or 0))

    def to_dict(self) -> dict[str, Any]:
        return {"volumeSizeInMB": self.volume_size_in_mb}


@dataclass(frozen=True)
class S3Source:
    bucket: str = ""
    prefix: str = ""
    aws_secret: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> S3Source:
        return cls(
            bucket=data.get("s3Bucket") or "",
            prefix=data.get("prefix") or "",
            aws_secret=data.get("awsSecret") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        rendered = {"s3Bucket": self.bucket, "prefix": self.prefix, "awsSecret": self.aws_secret}
        return {key: value for key, value in rendered.items() if value}


@dataclass(frozen=True)
class ABSSource:
    container: str = ""
    abs_secret: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ABSSource:
        return cls(container=data.get("absContainer") or "", abs_secret=data.get("absSecret") or "")

    def to_dict(self) -> dict[str, Any]:
        rendered = {"absContainer": self.container, "absSecret": self.abs_secret}
        return {key: value for key, value in rendered.items() if value}


StorageSource = PVSource | S3Source | ABSSource

_SOURCE_WIRE_KEYS: tuple[tuple[str, type[PVSource] | type[S3Source] | type[ABSSource]], ...] = (
    ("pv", PVSource),
    ("s3", S3Source),
    ("abs", ABSSource),
)

_SOURCE_STORAGE_TYPES: dict[type, frozenset[StorageType]] = {
    PVSource: frozenset({StorageType.DEFAULT, StorageType.PERSISTENT_VOLUME}),
    S3Source: frozenset({StorageType.S3}),
    ABSSource: frozenset({StorageType.ABS}),
}


@dataclass(frozen=True)
class BackupPolicy:
    storage_type: StorageType = StorageType.DEFAULT
    storage_source: StorageSource | None = None
    backup_interval_in_second: int = 0
    max_backups: int = 0
    auto_delete: bool = False
    pod: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.storage_type, StorageType):
            object.__setattr__(self, "storage_type", _parse_storage_type(self.storage_type))
        source = self.storage_source
        if source is None:
            return
        allowed = _SOURCE_STORAGE_TYPES.get(type(source))
        if allowed is None:
            raise BackupPolicyValidationError(f"unsupported storage source type: {type(source).__name__}")
        if self.storage_type not in allowed:
            raise BackupPolicyValidationError(
                f"storage source {type(source).__name__} does not match storageType "
                f"'{self.storage_type.value}'"
            )

    @property
    def effective_storage_type(self) -> StorageType:
        return self.storage_type.effective

    @property
    def interval_seconds(self) -> int:
        return self.backup_interval_in_second or DEFAULT_BACKUP_INTERVAL_SECONDS

    @property
    def pv(self) -> PVSource | None:
        return self.storage_source if isinstance(self.storage_source, PVSource) else None

    @property
    def s3(self) -> S3Source | None:
        return self.storage_source if isinstance(self.storage_source, S3Source) else None

    @property
    def abs(self) -> ABSSource | None:
        return self.storage_source if isinstance(self.storage_source, ABSSource) else None

    def validate(self) -> None:
        if self.max_backups < 0:
            raise BackupPolicyValidationError(f"MaxBackups value should be >= 0 (got {self.max_backups})")
        # Only an explicit PersistentVolume type is size-checked; S3/ABS sources are not required here.
        if self.storage_type is StorageType.PERSISTENT_VOLUME:
            pv = self.pv
            if pv is None or pv.volume_size_in_mb <= 0:
                raise ZeroSizeVolumeError()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupPolicy:
        storage_type = _parse_storage_type(data.get("storageType") or "")
        populated = [(key, source_cls) for key, source_cls in _SOURCE_WIRE_KEYS if data.get(key) is not None]
        if len(populated) > 1:
            keys = ", ".join(key for key, _ in populated)
            raise BackupPolicyValidationError(f"at most one storage source may be set, found: {keys}")

        storage_source: StorageSource | None = None
        if populated:
            key, source_cls = populated[0]
            storage_source = source_cls.from_dict(data[key])

        pod = data.get("pod")
        return cls(
            storage_type=storage_type,
            storage_source=storage_source,
            backup_interval_in_second=int(data.get("backupIntervalInSecond") or 0),
            max_backups=int(data.get("maxBackups") or 0),
            auto_delete=bool(data.get("autoDelete", False)),
            pod=copy.deepcopy(dict(pod)) if pod is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        rendered: dict[str, Any] = {}
        if self.pod is not None:
            rendered["pod"] = copy.deepcopy(dict(self.pod))
        rendered["storageType"] = self.storage_type.value
        for key, source_cls in _SOURCE_WIRE_KEYS:
            if isinstance(self.storage_source, source_cls):
                rendered[key] = self.storage_source.to_dict()
        rendered["backupIntervalInSecond"] = self.backup_interval_in_second
        rendered["maxBackups"] = self.max_backups
        rendered["autoDelete"] = self.auto_delete
        return rendered


@dataclass(frozen=True)
class BackupStatus:
    creation_time: str
    size: float
    revision: int
    version: str
    time_took_in_second: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupStatus:
        return cls(
            creation_time=data.get("creationTime") or "",
            size=float(data.get("size") or 0.0),
            revision=int(data.get("revision") or 0),
            version=data.get("version") or "",
            time_took_in_second=int(data.get("timeTookInSecond") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "creationTime": self.creation_time,
            "size": self.size,
            "revision": self.revision,
            "version": self.version,
            "timeTookInSecond": self.time_took_in_second,
        }


@dataclass(frozen=True)
class ServiceStatus:
    recent_backup: BackupStatus | None = None
    backups: int = 0
    backup_size: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ServiceStatus:
        recent = data.get("recentBackup")
        return cls(
            recent_backup=BackupStatus.from_dict(recent) if recent else None,
            backups=int(data.get("backups") or 0),
            backup_size=float(data.get("backupSize") or 0.0),
        )

    def to_dict(self) -> dict[str, Any]:
        rendered: dict[str, Any] = {}
        if self.recent_backup is not None:
            rendered["recentBackup"] = self.recent_backup.to_dict()
        rendered["backups"] = self.backups
        rendered["backupSize"] = self.backup_size
        return rendered


@dataclass(frozen=True)
class ClusterRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ClusterSpec:
    size: int = 0
    version: str = ""
    backup: BackupPolicy | None = None


@dataclass
class ClusterStatus:
    phase: str = ""
    backup_service_status: ServiceStatus | None = None


@dataclass
class EtcdCluster:
    ref: ClusterRef
    resource_version: str = ""
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EtcdCluster:
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        backup = spec.get("backup")
        service_status = status.get("backupServiceStatus")
        return cls(
            ref=ClusterRef(namespace=metadata.get("namespace") or "", name=metadata.get("name") or ""),
            resource_version=metadata.get("resourceVersion") or "",
            spec=ClusterSpec(
                size=int(spec.get("size") or 0),
                version=spec.get("version") or "",
                backup=BackupPolicy.from_dict(backup) if backup is not None else None,
            ),
            status=ClusterStatus(
                phase=status.get("phase") or "",
                backup_service_status=ServiceStatus.from_dict(service_status) if service_status else None,
            ),
            raw=copy.deepcopy(dict(data)),
        )

    def to_dict(self) -> dict[str, Any]:
        rendered = copy.deepcopy(self.raw)
        metadata = rendered.setdefault("metadata", {})
        metadata["namespace"] = self.ref.namespace
        metadata["name"] = self.ref.name
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        else:
            metadata.pop("resourceVersion", None)

        spec = rendered.setdefault("spec", {})
        if self.spec.size:
            spec["size"] = self.spec.size
        if self.spec.version:
            spec["version"] = self.spec.version
        if self.spec.backup is not None:
            spec["backup"] = self.spec.backup.to_dict()
        else:
            spec.pop("backup", None)

        status = rendered.get("status") or {}
        if self.status.phase:
            status["phase"] = self.status.phase
        if self.status.backup_service_status is not None:
            status["backupServiceStatus"] = self.status.backup_service_status.to_dict()
        else:
            status.pop("backupServiceStatus", None)
        if status:
            rendered["status"] = status
        return rendered


def _parse_storage_type(value: object) -> StorageType:
    try:
        return StorageType(value)
    except ValueError as error:
        allowed = ", ".join(repr(item.value) for item in StorageType)
        raise BackupPolicyValidationError(f"unknown storageType {value!r}; expected one of {allowed}") from error
