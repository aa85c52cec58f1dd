"""
Host-level operations used by the restore workflow.

The orchestrator only talks to HostOperations; SystemHostOperations performs
the operations on the local machine with subprocess calls and file writes.
"""

import asyncio
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import yaml

from .compatibility import ClusterNetwork
from ..errors.errors import NothingElseToAddError, StandardError, new_host_error

logger = logging.getLogger(__name__)

K0S_CONFIG_DIR = Path("/etc/k0s")
CONTAINERD_CONFIG_DIR = K0S_CONFIG_DIR / "containerd.d"
NETWORK_MANAGER_CONF_DIR = Path("/etc/NetworkManager/conf.d")
SYSTEMD_DIR = Path("/etc/systemd/system")
LOCAL_ARTIFACT_MIRROR_UNIT = "local-artifact-mirror"

NETWORK_MANAGER_CONF = """[keyfile]
unmanaged-devices=interface-name:cali*;interface-name:tunl*;interface-name:vxlan.calico;interface-name:vxlan-v6.calico;interface-name:wireguard.cali;interface-name:wg-v6.cali
"""

INSECURE_REGISTRY_TEMPLATE = """[plugins."io.containerd.grpc.v1.cri".registry.configs."{address}".tls]
  insecure_skip_verify = true
"""


class HostOperations(ABC):
    """Operations on the machine running the restore."""

    @abstractmethod
    async def verify_no_installation(self) -> None:
        """Fail when a cluster is already installed on this machine."""

    @abstractmethod
    async def configure_network_manager(self) -> None:
        pass

    @abstractmethod
    async def materialize_files(self, airgap_bundle: str = "") -> None:
        """Place the bundled binaries and charts under the data directory."""

    @abstractmethod
    async def run_host_preflights(self) -> None:
        """Raise NothingElseToAddError when the host is not fit for installation."""

    @abstractmethod
    async def write_cluster_config(self, network: ClusterNetwork) -> None:
        """Write the k0s config the cluster is installed with."""

    @abstractmethod
    async def install_cluster(self) -> None:
        """Install the cluster substrate and the built-in addons."""

    @abstractmethod
    async def update_local_artifact_mirror(self) -> None:
        pass

    @abstractmethod
    async def install_manager(self) -> None:
        pass

    @abstractmethod
    async def add_insecure_registry(self, address: str) -> None:
        pass

    @abstractmethod
    async def install_extensions(self, airgap: bool) -> None:
        pass

    @abstractmethod
    async def admin_console_url(self) -> str:
        pass


class SystemHostOperations(HostOperations):
    """HostOperations for a real host."""

    def __init__(self, config, command_timeout: int = 600):
        self.config = config
        self.runtime = config.runtime
        self.command_timeout = command_timeout

    def _binary(self, name: str) -> str:
        return self.runtime.path_to("bin", name)

    def _run(self, cmd: List[str], operation: str, env: Optional[dict] = None) -> str:
        logger.debug(f"Executing command: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=True
            )
        except subprocess.TimeoutExpired as e:
            raise new_host_error(operation, f"{cmd[0]} timed out after {self.command_timeout} seconds", e)
        except subprocess.CalledProcessError as e:
            raise new_host_error(operation, f"{cmd[0]} failed with exit code {e.returncode}: {e.stderr}", e)
        except OSError as e:
            raise new_host_error(operation, f"unable to run {cmd[0]}", e)

        if result.stderr:
            logger.debug(f"{cmd[0]} stderr: {result.stderr}")
        return result.stdout

    async def run(self, cmd: List[str], operation: str, env: Optional[dict] = None) -> str:
        return await asyncio.to_thread(self._run, cmd, operation, env)

    @staticmethod
    def _write(path: Path, content: str, operation: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        except OSError as e:
            raise new_host_error(operation, f"unable to write {path}", e)

    async def verify_no_installation(self) -> None:
        if (K0S_CONFIG_DIR / "k0s.yaml").exists() or Path(self._binary("k0s")).exists():
            raise new_host_error(
                "verify_no_installation",
                "An installation is detected on this machine. If you want to restore, you need to "
                f"remove the existing installation first by running 'sudo ./{self.runtime.binary_name} reset'."
            )

    async def configure_network_manager(self) -> None:
        if not NETWORK_MANAGER_CONF_DIR.parent.exists():
            logger.debug("NetworkManager not found, skipping configuration")
            return
        self._write(NETWORK_MANAGER_CONF_DIR / "embedded-cluster.conf", NETWORK_MANAGER_CONF,
                    "configure_network_manager")
        await self.run(["systemctl", "reload", "NetworkManager"], "configure_network_manager")

    async def materialize_files(self, airgap_bundle: str = "") -> None:
        cmd = [self.runtime.binary_name, "materialize", "--data-dir", self.runtime.data_dir]
        if airgap_bundle:
            cmd.extend(["--airgap-bundle", airgap_bundle])
        await self.run(cmd, "materialize_files")

    async def run_host_preflights(self) -> None:
        spec = self.runtime.path_to("support", "host-preflight.yaml")
        try:
            output = await self.run(
                [self._binary("kubectl-preflight"), "--interactive=false", "--format=json", spec],
                "run_host_preflights",
            )
        except StandardError as e:
            logger.error(f"Host preflights failed: {e}")
            raise NothingElseToAddError("host preflight checks failed") from e
        logger.debug(f"Host preflight output: {output}")

    async def write_cluster_config(self, network: ClusterNetwork) -> None:
        cfg = {
            "apiVersion": "k0s.k0sproject.io/v1beta1",
            "kind": "ClusterConfig",
            "metadata": {"name": "k0s"},
            "spec": {
                "network": {
                    "podCIDR": network.pod_cidr,
                    "serviceCIDR": network.service_cidr,
                },
            },
        }
        path = Path(self.config.network.k0s_config_path)
        logger.debug(f"Writing k0s config to {path} (pod {network.pod_cidr}, service {network.service_cidr})")
        self._write(path, yaml.safe_dump(cfg, default_flow_style=False), "write_cluster_config")

    async def install_cluster(self) -> None:
        await self.run([
            self._binary("k0s"), "install", "controller",
            "--enable-worker", "--no-taints",
            "--config", self.config.network.k0s_config_path,
            "--data-dir", self.runtime.path_to("k0s"),
        ], "install_cluster")
        await self.run(["systemctl", "start", "k0scontroller"], "install_cluster")
        await self.run([self.runtime.binary_name, "addons", "install", "--restore"], "install_cluster")

    async def update_local_artifact_mirror(self) -> None:
        dropin = SYSTEMD_DIR / f"{LOCAL_ARTIFACT_MIRROR_UNIT}.service.d" / "embedded-cluster.conf"
        content = (
            "[Service]\n"
            "ExecStart=\n"
            f"ExecStart={self._binary('local-artifact-mirror')} serve "
            f"--data-dir {self.runtime.data_dir} --port {self.runtime.local_artifact_mirror_port}\n"
        )
        self._write(dropin, content, "update_local_artifact_mirror")
        await self.run(["systemctl", "daemon-reload"], "update_local_artifact_mirror")
        await self.run(["systemctl", "restart", LOCAL_ARTIFACT_MIRROR_UNIT], "update_local_artifact_mirror")

    async def install_manager(self) -> None:
        await self.run(["systemctl", "enable", "--now", f"{self.runtime.binary_name}-manager"], "install_manager")

    async def add_insecure_registry(self, address: str) -> None:
        self._write(
            CONTAINERD_CONFIG_DIR / "embedded-registry.toml",
            INSECURE_REGISTRY_TEMPLATE.format(address=address),
            "add_insecure_registry",
        )

    async def install_extensions(self, airgap: bool) -> None:
        cmd = [self.runtime.binary_name, "extensions", "install"]
        if airgap:
            cmd.append("--airgap")
        await self.run(cmd, "install_extensions")

    async def admin_console_url(self) -> str:
        address = ""
        cmd = ["ip", "-4", "-o", "addr", "show"]
        if self.config.network.network_interface:
            cmd.extend(["dev", self.config.network.network_interface])
        output = await self.run(cmd, "admin_console_url")
        for line in output.splitlines():
            fields = line.split()
            if "inet" in fields and fields[1] != "lo":
                address = fields[fields.index("inet") + 1].split("/")[0]
                break
        return f"http://{address or 'localhost'}:{self.runtime.admin_console_port}"
