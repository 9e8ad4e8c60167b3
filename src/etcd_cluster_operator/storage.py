from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Protocol
import base64
import logging
import os
import tempfile

import boto3
import botocore.configloader
import botocore.exceptions
from azure.core.exceptions import AzureError
from azure.storage.blob import BlobServiceClient, ContainerClient
from kubernetes import client

from .models import (
    ABS_STORAGE_ACCOUNT_KEY,
    ABS_STORAGE_KEY_KEY,
    AWS_PROFILE,
    AWS_SECRET_CONFIG_FILE_NAME,
    AWS_SECRET_CREDENTIALS_FILE_NAME,
    BackupPolicy,
    StorageType,
)

logger = logging.getLogger(__name__)


class ArtifactListingError(RuntimeError):
    """Raised when a storage backend cannot list backup artifacts."""


class ArtifactLister(Protocol):
    def list_artifacts(self, prefix: str) -> list[str]: ...


class S3ArtifactLister:
    def __init__(self, s3_client: Any, bucket: str) -> None:
        if not bucket:
            raise ValueError("bucket must not be empty")
        self.s3_client = s3_client
        self.bucket = bucket

    def list_artifacts(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=_directory_prefix(prefix)):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as error:
            raise ArtifactListingError(
                f"unable to list S3 objects in bucket '{self.bucket}' under '{prefix}': {error}"
            ) from error

        logger.debug("found %d S3 objects in bucket %s under %s", len(keys), self.bucket, prefix)
        return keys


class ABSArtifactLister:
    def __init__(self, container_client: ContainerClient) -> None:
        self.container_client = container_client

    def list_artifacts(self, prefix: str) -> list[str]:
        try:
            names = [blob.name for blob in self.container_client.list_blobs(name_starts_with=_directory_prefix(prefix))]
        except AzureError as error:
            container = getattr(self.container_client, "container_name", "unknown")
            raise ArtifactListingError(
                f"unable to list ABS blobs in container '{container}' under '{prefix}': {error}"
            ) from error

        logger.debug("found %d ABS blobs under %s", len(names), prefix)
        return names


def base_prefix_for(policy: BackupPolicy) -> str:
    if policy.effective_storage_type is StorageType.S3 and policy.s3 is not None:
        return policy.s3.prefix
    return ""


def read_secret_data(core_api: client.CoreV1Api, *, namespace: str, name: str) -> dict[str, bytes]:
    secret = core_api.read_namespaced_secret(name=name, namespace=namespace)
    data = secret.data or {}
    return {key: base64.b64decode(value) for key, value in data.items()}


def aws_session_from_secret(secret_data: Mapping[str, bytes]) -> boto3.session.Session:
    missing = [
        file_name
        for file_name in (AWS_SECRET_CREDENTIALS_FILE_NAME, AWS_SECRET_CONFIG_FILE_NAME)
        if file_name not in secret_data
    ]
    if missing:
        raise ValueError(f"AWS secret is missing required files: {', '.join(missing)}")

    credentials = _aws_profile(secret_data, AWS_SECRET_CREDENTIALS_FILE_NAME)
    profile_config = _aws_profile(secret_data, AWS_SECRET_CONFIG_FILE_NAME)
    settings = {**profile_config, **credentials}
    access_key_id = settings.get("aws_access_key_id")
    secret_access_key = settings.get("aws_secret_access_key")
    if not access_key_id or not secret_access_key:
        raise ValueError(f"AWS secret does not define keys for the '{AWS_PROFILE}' profile")

    return boto3.session.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        aws_session_token=settings.get("aws_session_token"),
        region_name=profile_config.get("region"),
    )


def _aws_profile(secret_data: Mapping[str, bytes], file_name: str) -> dict[str, Any]:
    # The secret files exist on disk only while botocore parses them.
    with tempfile.TemporaryDirectory(prefix="etcd-backup-aws-") as directory:
        path = Path(directory) / file_name
        path.write_bytes(secret_data[file_name])
        os.chmod(path, 0o600)
        try:
            sections = botocore.configloader.raw_config_parse(str(path))
        except botocore.exceptions.ConfigParseError as error:
            raise ValueError(f"AWS secret file '{file_name}' is not a valid AWS config file") from error
    return sections.get(AWS_PROFILE) or sections.get(f"profile {AWS_PROFILE}") or {}


def abs_container_client_from_secret(secret_data: Mapping[str, bytes], container: str) -> ContainerClient:
    missing = [key for key in (ABS_STORAGE_ACCOUNT_KEY, ABS_STORAGE_KEY_KEY) if key not in secret_data]
    if missing:
        raise ValueError(f"ABS secret is missing required keys: {', '.join(missing)}")
    if not container:
        raise ValueError("ABS container must not be empty")

    account = secret_data[ABS_STORAGE_ACCOUNT_KEY].decode("utf-8").strip()
    key = secret_data[ABS_STORAGE_KEY_KEY].decode("utf-8").strip()
    service_client = BlobServiceClient(
        account_url=f"https://{account}.blob.core.windows.net",
        credential={"account_name": account, "account_key": key},
    )
    return service_client.get_container_client(container)


def build_artifact_lister(
    core_api: client.CoreV1Api,
    *,
    namespace: str,
    policy: BackupPolicy,
) -> ArtifactLister | None:
    storage_type = policy.effective_storage_type
    if storage_type is StorageType.S3 and policy.s3 is not None:
        s3_source = policy.s3
        if s3_source.aws_secret:
            session = aws_session_from_secret(read_secret_data(core_api, namespace=namespace, name=s3_source.aws_secret))
        else:
            session = boto3.session.Session()
        return S3ArtifactLister(session.client("s3"), s3_source.bucket)
    if storage_type is StorageType.ABS and policy.abs is not None:
        abs_source = policy.abs
        secret_data = read_secret_data(core_api, namespace=namespace, name=abs_source.abs_secret)
        return ABSArtifactLister(abs_container_client_from_secret(secret_data, abs_source.container))
    return None


def _directory_prefix(prefix: str) -> str:
    # Trailing slash keeps "ns/etcd1" from matching objects of "ns/etcd10".
    stripped = prefix.rstrip("/")
    return f"{stripped}/" if stripped else ""
