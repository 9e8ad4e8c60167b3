from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator
import os
import shlex
import shutil
import subprocess
import uuid

import pytest

_ENV_RUN_FLAG = "ECO_RUN_KIND_INTEGRATION"
_CRD_MANIFEST_PATH = Path(__file__).parent / "manifests" / "etcdcluster-crd.yaml"
_CRD_NAME = "etcdclusters.etcd.database.coreos.com"
_REQUIRED_BINARIES = ("docker", "kind", "kubectl")


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _render_command(command: list[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def _run_command(
    command: list[str],
    *,
    timeout_seconds: int,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    completed = subprocess.run(
        command,
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )

    if check and completed.returncode != 0:
        stdout = completed.stdout.strip() or "<empty>"
        stderr = completed.stderr.strip() or "<empty>"
        raise RuntimeError(
            f"Command failed with exit code {completed.returncode}: {_render_command(command)}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )

    return completed


def _verify_prerequisites() -> None:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "KinD integration tests are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them.",
            allow_module_level=True,
        )

    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        pytest.skip(
            f"KinD integration prerequisites are missing: {', '.join(sorted(missing))}.",
            allow_module_level=True,
        )

    docker_info = _run_command(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        timeout_seconds=30,
        check=False,
    )
    if docker_info.returncode != 0:
        stderr = docker_info.stderr.strip() or docker_info.stdout.strip() or "unknown docker error"
        pytest.skip(
            f"Docker daemon is not reachable for KinD integration tests: {stderr}.",
            allow_module_level=True,
        )


@dataclass(frozen=True)
class KindClusterContext:
    cluster_name: str
    kubeconfig_path: Path
    harness_dir: Path
    namespace: str

    def run_kubectl(
        self,
        *args: str,
        timeout_seconds: int = 120,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return _run_command(
            ["kubectl", "--kubeconfig", str(self.kubeconfig_path), *args],
            timeout_seconds=timeout_seconds,
            check=check,
        )

    def collect_diagnostics(self) -> str:
        diagnostic_commands: tuple[tuple[str, list[str]], ...] = (
            ("crd", ["get", "crd", _CRD_NAME, "-o", "wide"]),
            ("etcdclusters", ["-n", self.namespace, "get", "etcdclusters", "-o", "yaml"]),
            ("pods/services", ["-n", self.namespace, "get", "pods,services", "-o", "wide"]),
            ("events", ["-n", self.namespace, "get", "events", "--sort-by=.lastTimestamp"]),
        )

        sections: list[str] = []
        for title, args in diagnostic_commands:
            completed = self.run_kubectl(*args, timeout_seconds=60, check=False)
            output = completed.stdout.strip() or completed.stderr.strip() or "<no output>"
            sections.append(f"[{title}]\n{output}")

        return "\n\n".join(sections)


@pytest.fixture(scope="session")
def kind_cluster(tmp_path_factory: pytest.TempPathFactory) -> Iterator[KindClusterContext]:
    _verify_prerequisites()
    if not _CRD_MANIFEST_PATH.exists():
        raise RuntimeError(f"Expected KinD integration manifest at {_CRD_MANIFEST_PATH}.")

    harness_dir = tmp_path_factory.mktemp("kind-harness")
    kubeconfig_path = harness_dir / "kubeconfig"
    cluster_name = f"eco-it-{uuid.uuid4().hex[:8]}"

    _run_command(
        [
            "kind",
            "create",
            "cluster",
            "--name",
            cluster_name,
            "--wait",
            "180s",
            "--kubeconfig",
            str(kubeconfig_path),
        ],
        timeout_seconds=420,
    )

    cluster = KindClusterContext(
        cluster_name=cluster_name,
        kubeconfig_path=kubeconfig_path,
        harness_dir=harness_dir,
        namespace="eco-integration",
    )

    try:
        cluster.run_kubectl("apply", "-f", str(_CRD_MANIFEST_PATH), timeout_seconds=180)
        cluster.run_kubectl(
            "wait",
            "--for=condition=Established",
            f"crd/{_CRD_NAME}",
            "--timeout=120s",
            timeout_seconds=180,
        )
        yield cluster
    finally:
        _run_command(
            ["kind", "delete", "cluster", "--name", cluster_name],
            timeout_seconds=240,
            check=False,
        )
