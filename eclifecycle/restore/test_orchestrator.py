"""
Tests for the resumable restore workflow.
"""

import os
import tempfile
import unittest
from unittest.mock import AsyncMock, Mock

from .backups import ReplicatedBackup
from .host import HostOperations
from .orchestrator import RestoreOrchestrator
from .state import RestoreState, StateStore
from .store import S3BackupStore
from .test_compatibility import make_backup
from .test_components import complete_restores, deployment, fast
from ..config.loader import LifecycleConfig
from ..kube import kinds
from ..conftest import FakeClusterClient
from ..kube.helpers import CONTROL_PLANE_LABEL
from ..errors.errors import (
    ErrorCode, InvalidBackupsError, NothingElseToAddError, StandardError, new_kubernetes_error
)

STEP_METHODS = [
    "step_new",
    "step_confirm_backup",
    "step_restore_ec_install",
    "step_restore_admin_console",
    "step_wait_for_nodes",
    "step_restore_seaweedfs",
    "step_restore_registry",
    "step_restore_operator",
    "step_restore_extensions",
    "step_restore_app",
]


class RecordingHost(HostOperations):
    """HostOperations that records what the workflow asked for."""

    def __init__(self):
        self.calls = []

    async def verify_no_installation(self):
        self.calls.append("verify_no_installation")

    async def configure_network_manager(self):
        self.calls.append("configure_network_manager")

    async def materialize_files(self, airgap_bundle=""):
        self.calls.append("materialize_files")

    async def run_host_preflights(self):
        self.calls.append("run_host_preflights")

    async def write_cluster_config(self, network):
        self.calls.append(f"write_cluster_config {network.pod_cidr} {network.service_cidr}")

    async def install_cluster(self):
        self.calls.append("install_cluster")

    async def update_local_artifact_mirror(self):
        self.calls.append("update_local_artifact_mirror")

    async def install_manager(self):
        self.calls.append("install_manager")

    async def add_insecure_registry(self, address):
        self.calls.append(f"add_insecure_registry {address}")

    async def install_extensions(self, airgap):
        self.calls.append(f"install_extensions airgap={airgap}")

    async def admin_console_url(self):
        return "http://10.0.0.1:30000"


def node(name, control_plane=True):
    labels = {CONTROL_PLANE_LABEL: ""} if control_plane else {}
    return {
        "metadata": {"name": name, "labels": labels},
        "status": {"conditions": [{"type": "Ready", "status": "True"}]},
    }


class RestoreTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        k0s_config = os.path.join(self.tmp.name, "k0s.yaml")
        with open(k0s_config, "w") as f:
            f.write("spec:\n  network:\n    podCIDR: 10.244.0.0/16\n    serviceCIDR: 10.96.0.0/12\n")

        self.config = LifecycleConfig()
        self.config.release.version = "v1.2.3"
        self.config.release.app_slug = "app"
        self.config.release.version_label = "1.0.0"
        self.config.network.k0s_config_path = k0s_config
        self.config.restore.skip_store_validation = True
        self.config.restore.backup_list_tries = 2
        self.config.restore.backup_list_interval = 0

        self.kube = FakeClusterClient()
        complete_restores(self.kube)
        self.kube.seed(kinds.NODE, node("node-1"))
        self.kube.seed(kinds.INSTALLATION, {"metadata": {"name": "20240501100000"}, "spec": {"runtimeConfig": {}}})
        self.kube.seed(kinds.DEPLOYMENT, deployment("kotsadm", "kotsadm"))
        self.kube.seed(kinds.STATEFUL_SET, deployment("kotsadm-rqlite", "kotsadm"))
        self.kube.seed(kinds.DEPLOYMENT, deployment("embedded-cluster-operator", "embedded-cluster"))
        self.kube.seed(kinds.DEPLOYMENT, deployment("registry", "registry"))

        self.host = RecordingHost()
        self.prompter = Mock()
        self.prompter.confirm.return_value = True
        self.prompter.input.return_value = "continue"
        self.progress = Mock()
        self.state_store = StateStore(self.kube, "embedded-cluster")

    def orchestrator(self, port_overridden=False):
        store = S3BackupStore(
            endpoint="http://minio:9000", region="us-east-1", bucket="backups",
            access_key_id="AKIA", secret_access_key="secret",
        )
        return RestoreOrchestrator(
            self.kube, self.config, self.host, self.prompter, store=store,
            backoff=fast(), progress=self.progress, port_overridden=port_overridden,
        )

    def seed_backup(self, **kwargs):
        self.kube.seed(kinds.VELERO_BACKUP, make_backup(**kwargs))

    def restore_names(self):
        return [r["metadata"]["name"] for r in self.kube.objects(kinds.VELERO_RESTORE)]

    def record_steps(self, orchestrator):
        """Replace every step with a recorder and return the record."""
        executed = []
        for name in STEP_METHODS:
            setattr(orchestrator, name, AsyncMock(side_effect=lambda name=name: executed.append(name)))
        return executed


class TestFullRestore(RestoreTestCase):

    async def test_restore_from_new(self):
        self.seed_backup(name="b1")

        await self.orchestrator().run()

        self.assertEqual(self.host.calls, [
            "verify_no_installation",
            "configure_network_manager",
            "materialize_files",
            "run_host_preflights",
            "write_cluster_config 10.244.0.0/17 10.244.128.0/17",
            "install_cluster",
            "update_local_artifact_mirror",
            "install_manager",
            "install_extensions airgap=False",
        ])
        self.assertEqual(
            sorted(self.restore_names()),
            ["b1.admin-console", "b1.app", "b1.ec-install", "b1.embedded-cluster-operator"],
        )
        self.assertEqual(len(self.kube.objects(kinds.VELERO_BACKUP_STORAGE_LOCATION, "velero")), 1)
        self.assertEqual(await self.state_store.load(), (RestoreState.NEW, ""))
        self.prompter.confirm.assert_called_once_with('Restore from backup "b1" (2024-05-01 10:00:00 UTC)?', default=True)
        self.progress.assert_any_call("Found 1 restorable backup!")
        self.progress.assert_any_call("All nodes are ready!")

        installation = self.kube.objects(kinds.INSTALLATION)[0]
        self.assertEqual(installation["spec"]["runtimeConfig"]["localArtifactMirror"]["port"], 50000)
        self.assertEqual(installation["status"]["state"], "KubernetesInstalled")

    async def test_restore_on_host_without_cluster(self):
        self.seed_backup(name="b1")

        def unreachable(action):
            if "install_cluster" not in self.host.calls:
                raise new_kubernetes_error("connect", "cannot load Kubernetes configuration")
        self.kube.add_reactor("*", "*", unreachable)

        await self.orchestrator().run()

        self.assertEqual(self.host.calls[:5], [
            "verify_no_installation",
            "configure_network_manager",
            "materialize_files",
            "run_host_preflights",
            "write_cluster_config 10.244.0.0/17 10.244.128.0/17",
        ])
        self.assertIn("b1.app", self.restore_names())
        self.prompter.confirm.assert_called_once_with('Restore from backup "b1" (2024-05-01 10:00:00 UTC)?', default=True)

    async def test_global_cidr_is_split_for_install(self):
        self.config.network.global_cidr = "10.0.0.0/24"

        await self.orchestrator().step_new()

        self.assertIn("write_cluster_config 10.0.0.0/25 10.0.0.128/25", self.host.calls)
        self.assertLess(
            self.host.calls.index("write_cluster_config 10.0.0.0/25 10.0.0.128/25"),
            self.host.calls.index("install_cluster"),
        )

    async def test_pod_and_service_cidrs_used_as_given(self):
        self.config.network.pod_cidr = "172.16.0.0/16"
        self.config.network.service_cidr = "172.17.0.0/16"

        await self.orchestrator().step_new()

        self.assertIn("write_cluster_config 172.16.0.0/16 172.17.0.0/16", self.host.calls)

    async def test_airgap_restore_adds_registry(self):
        self.config.restore.airgap = True
        self.seed_backup(name="b1", airgap="true", extra={"kots.io/embedded-registry": "10.96.0.11:5000"})

        await self.orchestrator().run()

        self.assertIn("b1.registry", self.restore_names())
        self.assertNotIn("b1.seaweedfs", self.restore_names())
        self.assertIn("add_insecure_registry 10.96.0.11:5000", self.host.calls)
        self.assertIn("install_extensions airgap=True", self.host.calls)

    async def test_resume_from_admin_console(self):
        self.seed_backup(name="b1")
        await self.state_store.save(RestoreState.RESTORE_ADMIN_CONSOLE, "b1")

        await self.orchestrator().run()

        self.assertEqual(
            sorted(self.restore_names()),
            ["b1.admin-console", "b1.app", "b1.embedded-cluster-operator"],
        )
        self.assertNotIn("install_cluster", self.host.calls)
        self.prompter.confirm.assert_called_once_with(
            "A previous restore operation was detected. Would you like to resume?", default=True
        )


class TestResume(RestoreTestCase):
    """A restore resumed at a state runs exactly that state and the ones after it."""

    async def test_every_state(self):
        self.seed_backup(name="b1")
        ordered = RestoreState.ordered()

        for index, state in enumerate(ordered):
            with self.subTest(state=state.value):
                await self.state_store.reset()
                if state != RestoreState.NEW:
                    await self.state_store.save(state, "b1")
                orchestrator = self.orchestrator()
                executed = self.record_steps(orchestrator)

                await orchestrator.run()

                self.assertEqual(executed, STEP_METHODS[index:])

    async def test_state_saved_before_each_step(self):
        self.seed_backup(name="b1")
        await self.state_store.save(RestoreState.RESTORE_EMBEDDED_CLUSTER_OPERATOR, "b1")
        orchestrator = self.orchestrator()
        seen = []

        async def capture():
            seen.append(await self.state_store.load())

        for name in STEP_METHODS:
            setattr(orchestrator, name, AsyncMock(side_effect=capture))

        await orchestrator.run()

        self.assertEqual(seen, [
            (RestoreState.RESTORE_EMBEDDED_CLUSTER_OPERATOR, "b1"),
            (RestoreState.RESTORE_EXTENSIONS, "b1"),
            (RestoreState.RESTORE_APP, "b1"),
        ])

    async def test_declined_resume_starts_over(self):
        self.seed_backup(name="b1")
        await self.state_store.save(RestoreState.RESTORE_APP, "b1")
        self.prompter.confirm.return_value = False
        orchestrator = self.orchestrator()
        executed = self.record_steps(orchestrator)

        await orchestrator.run()

        self.assertEqual(executed, STEP_METHODS)
        self.assertIsNone(orchestrator.backup)

    async def test_incompatible_backup_on_resume(self):
        self.seed_backup(name="b1", version="v1.0.0")
        await self.state_store.save(RestoreState.RESTORE_ADMIN_CONSOLE, "b1")
        orchestrator = self.orchestrator()
        executed = self.record_steps(orchestrator)

        with self.assertRaises(StandardError) as ctx:
            await orchestrator.run()

        self.assertEqual(ctx.exception.code, ErrorCode.INCOMPATIBLE_BACKUP)
        self.assertTrue(ctx.exception.message.startswith('unable to resume: backup "b1" has a different'))
        self.assertEqual(executed, [])

    async def test_missing_backup_name_on_resume(self):
        await self.state_store.save(RestoreState.RESTORE_APP)
        orchestrator = self.orchestrator()
        self.record_steps(orchestrator)

        with self.assertRaises(StandardError) as ctx:
            await orchestrator.run()

        self.assertIn("no backup recorded", ctx.exception.message)

    async def test_port_from_backup(self):
        self.seed_backup(name="b1", extra={"kots.io/embedded-cluster-local-artifact-mirror-port": "50001"})
        await self.state_store.save(RestoreState.RESTORE_APP, "b1")
        orchestrator = self.orchestrator()
        self.record_steps(orchestrator)

        await orchestrator.run()

        self.assertEqual(self.config.runtime.local_artifact_mirror_port, 50001)

    async def test_port_flag_wins_over_backup(self):
        self.seed_backup(name="b1", extra={"kots.io/embedded-cluster-local-artifact-mirror-port": "50001"})
        await self.state_store.save(RestoreState.RESTORE_APP, "b1")
        self.config.runtime.local_artifact_mirror_port = 50005
        orchestrator = self.orchestrator(port_overridden=True)
        self.record_steps(orchestrator)

        await orchestrator.run()

        self.assertEqual(self.config.runtime.local_artifact_mirror_port, 50005)


class TestConfirmBackup(RestoreTestCase):

    async def test_operator_declines_backup(self):
        self.seed_backup(name="b1")
        self.prompter.confirm.return_value = False
        orchestrator = self.orchestrator()

        with self.assertRaises(NothingElseToAddError):
            await orchestrator.step_confirm_backup()

        self.assertIsNone(orchestrator.backup)
        self.assertEqual(self.restore_names(), [])

    async def test_no_restorable_backups(self):
        self.seed_backup(name="b1", version="v9.9.9")
        self.seed_backup(name="b2", phase="Failed")

        with self.assertRaises(InvalidBackupsError) as ctx:
            await self.orchestrator().step_confirm_backup()

        self.assertEqual(ctx.exception.names, ["b1", "b2"])

    async def test_latest_restorable_backup_is_offered(self):
        self.seed_backup(name="b1", completed="2024-05-01T10:00:00Z")
        self.seed_backup(name="b2", completed="2024-05-03T10:00:00Z")
        self.seed_backup(name="b3", completed="2024-05-04T10:00:00Z", version="v9.9.9")
        orchestrator = self.orchestrator()

        await orchestrator.step_confirm_backup()

        self.assertEqual(orchestrator.backup.name, "b2")
        self.progress.assert_any_call("Found 2 restorable backups!")

    async def test_backups_never_appear(self):
        with self.assertRaises(StandardError) as ctx:
            await self.orchestrator().step_confirm_backup()

        self.assertEqual(ctx.exception.message, "timed out waiting for backups to become available")


class TestWaitForNodes(RestoreTestCase):

    async def test_high_availability_requires_three_controllers(self):
        orchestrator = self.orchestrator()
        orchestrator.backup = ReplicatedBackup([make_backup("b1", ha="true")])
        answers = iter(["done", "continue", "continue"])

        def answer(message):
            value = next(answers)
            if value == "continue" and self.prompter.input.call_count == 3:
                self.kube.seed(kinds.NODE, node("node-2"))
                self.kube.seed(kinds.NODE, node("node-3"))
            return value

        self.prompter.input.side_effect = answer

        await orchestrator.step_wait_for_nodes()

        self.assertEqual(self.prompter.input.call_count, 3)
        self.progress.assert_any_call("Waiting for nodes to be ready: 3/3 ready")

    async def test_missing_ha_annotation(self):
        orchestrator = self.orchestrator()
        orchestrator.backup = ReplicatedBackup([make_backup("b1", drop=["kots.io/embedded-cluster-is-ha"])])

        with self.assertRaises(StandardError) as ctx:
            await orchestrator.step_wait_for_nodes()

        self.assertEqual(ctx.exception.message, "high availability annotation not found in backup")

    async def test_seaweedfs_only_for_airgap_ha(self):
        orchestrator = self.orchestrator()
        orchestrator.backup = ReplicatedBackup([make_backup("b1", ha="true")])

        await orchestrator.step_restore_seaweedfs()

        self.assertEqual(self.restore_names(), [])


if __name__ == '__main__':
    unittest.main()
