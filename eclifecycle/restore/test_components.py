"""
Tests for the component restore driver.
"""

import json
import unittest
from unittest.mock import Mock

import yaml

from .backups import ReplicatedBackup
from .components import (
    RESOURCE_MODIFIERS_CM_NAME, Component, ComponentRestorer, label_selector,
    registry_ip_from_backup, render_resource_modifiers, restore_name
)
from .test_compatibility import make_backup
from ..config.loader import LifecycleConfig
from ..kube import kinds
from ..conftest import FakeClusterClient
from ..kube.wait import Backoff
from ..errors.errors import ErrorCode, ResourceNotFoundError, StandardError


def fast(steps=3):
    return Backoff(steps=steps, duration=0, factor=1.0, jitter=0)


def complete_restores(kube, phase="Completed"):
    """Have every created restore report the given phase on its next read."""
    def react(action):
        action.obj["status"] = {"phase": phase, "errors": 1 if phase != "Completed" else 0, "warnings": 0}
    kube.add_reactor("create", "Restore", react)


def deployment(name, namespace):
    return {"metadata": {"name": name, "namespace": namespace}, "spec": {"replicas": 1}, "status": {"readyReplicas": 1}}


class TestResourceModifiers(unittest.TestCase):

    def test_online_backup_has_no_ips(self):
        rendered = render_resource_modifiers(make_backup())
        self.assertNotIn("__REGISTRY_SERVICE_IP__", rendered)
        self.assertNotIn("__SEAWEEDFS_S3_SERVICE_IP__", rendered)
        yaml.safe_load(rendered)

    def test_airgap_ha_backup_fills_both_ips(self):
        backup = make_backup(airgap="true", ha="true", extra={
            "kots.io/embedded-registry": "10.96.0.11:5000",
            "kots.io/embedded-cluster-seaweedfs-s3-ip": "10.96.0.12",
        })

        rendered = yaml.safe_load(render_resource_modifiers(backup))

        values = [rule["patches"][0]["value"] for rule in rendered["resourceModifierRules"]]
        self.assertEqual(values, ["10.96.0.11", "10.96.0.12"])

    def test_airgap_non_ha_skips_seaweedfs(self):
        backup = make_backup(airgap="true", extra={"kots.io/embedded-registry": "10.96.0.11:5000"})
        rendered = yaml.safe_load(render_resource_modifiers(backup))
        self.assertEqual(rendered["resourceModifierRules"][1]["patches"][0]["value"], "")

    def test_missing_airgap_annotation(self):
        with self.assertRaises(StandardError):
            registry_ip_from_backup(make_backup(drop=["kots.io/is-airgap"]))

    def test_names_and_selectors(self):
        self.assertEqual(restore_name("b1", Component.ADMIN_CONSOLE), "b1.admin-console")
        self.assertEqual(label_selector(Component.REGISTRY), {"app": "docker-registry"})
        self.assertEqual(label_selector(Component.EC_INSTALL), {"replicated.com/disaster-recovery": "ec-install"})


class TestComponentRestorer(unittest.IsolatedAsyncioTestCase):
    """Test restore request creation and waiting."""

    def setUp(self):
        self.kube = FakeClusterClient()
        self.config = LifecycleConfig()
        self.progress = Mock()
        self.restorer = ComponentRestorer(self.kube, self.config, fast(), self.progress)
        self.backup = ReplicatedBackup([make_backup("b1")])

    async def test_creates_request_with_selector(self):
        complete_restores(self.kube)

        await self.restorer.restore(self.backup, Component.EC_INSTALL)

        restore = self.kube.objects(kinds.VELERO_RESTORE)[0]
        self.assertEqual(restore["metadata"]["name"], "b1.ec-install")
        self.assertEqual(restore["metadata"]["annotations"]["kots.io/embedded-cluster"], "true")
        self.assertEqual(restore["spec"]["labelSelector"]["matchLabels"], {"replicated.com/disaster-recovery": "ec-install"})
        self.assertTrue(restore["spec"]["restorePVs"])
        self.assertTrue(restore["spec"]["includeClusterResources"])
        self.assertEqual(restore["spec"]["resourceModifier"]["name"], RESOURCE_MODIFIERS_CM_NAME)
        self.assertEqual(len(self.kube.objects(kinds.CONFIG_MAP, "velero")), 1)
        self.progress.assert_any_call("Restoring cluster state")
        self.progress.assert_called_with("Cluster state restored!")

    async def test_idempotent_creation(self):
        complete_restores(self.kube)

        await self.restorer.restore(self.backup, Component.APP)
        await self.restorer.restore(self.backup, Component.APP)

        self.assertEqual(len(self.kube.objects(kinds.VELERO_RESTORE)), 1)
        self.assertEqual(self.kube.count("create", kinds.VELERO_RESTORE), 1)

    async def test_concurrent_creation(self):
        # The second invocation checked for the request before the first created it.
        complete_restores(self.kube)
        await self.restorer.restore(self.backup, Component.APP)

        stale = []

        def stale_read(action):
            if not stale:
                stale.append(action.name)
                raise ResourceNotFoundError("Restore", action.name, action.namespace)
            return None

        self.kube.add_reactor("get", "Restore", stale_read)
        other = ComponentRestorer(self.kube, self.config, fast(), Mock())
        await other.restore(self.backup, Component.APP)

        self.assertEqual(stale, ["b1.app"])
        self.assertEqual(len(self.kube.objects(kinds.VELERO_RESTORE)), 1)
        self.assertEqual(self.kube.count("create", kinds.VELERO_RESTORE), 2)

    async def test_failed_restore_is_fatal(self):
        complete_restores(self.kube, phase="PartiallyFailed")

        with self.assertRaises(StandardError) as ctx:
            await self.restorer.restore(self.backup, Component.APP)

        self.assertEqual(ctx.exception.code, ErrorCode.RESTORE_FAILED)
        self.assertIn("failed with 1 errors and 0 warnings", ctx.exception.message)

    async def test_admin_console_waits_for_workloads(self):
        complete_restores(self.kube)
        self.kube.seed(kinds.DEPLOYMENT, deployment("kotsadm", "kotsadm"))
        self.kube.seed(kinds.STATEFUL_SET, deployment("kotsadm-rqlite", "kotsadm"))

        await self.restorer.restore(self.backup, Component.ADMIN_CONSOLE)

        self.progress.assert_any_call("Waiting for the Admin Console to deploy: 2/2 ready")

    async def test_operator_not_ready(self):
        complete_restores(self.kube)

        with self.assertRaises(StandardError) as ctx:
            await self.restorer.restore(self.backup, Component.EMBEDDED_CLUSTER_OPERATOR)

        self.assertIn("unable to wait for embedded-cluster-operator", ctx.exception.message)

    async def test_improved_dr_app_uses_vendor_spec(self):
        complete_restores(self.kube)
        self.config.release.improved_dr = True
        spec = {"apiVersion": "velero.io/v1", "kind": "Restore", "metadata": {"name": "vendor"},
                "spec": {"includedNamespaces": ["app"]}}
        backup = ReplicatedBackup([
            make_backup("b1-infra", group="b1", backup_type="infra", count=2),
            make_backup("b1-app", group="b1", backup_type="app", count=2,
                        extra={"replicated.com/restore-spec": json.dumps(spec)}),
        ])

        await self.restorer.restore(backup, Component.APP)

        restore = self.kube.objects(kinds.VELERO_RESTORE)[0]
        self.assertEqual(restore["metadata"]["name"], "b1-app.restore")
        self.assertEqual(restore["metadata"]["namespace"], "velero")
        self.assertEqual(restore["metadata"]["labels"]["replicated.com/backup-name"], "b1")
        self.assertEqual(restore["metadata"]["annotations"]["replicated.com/backup-type"], "app")
        self.assertEqual(restore["spec"], {"includedNamespaces": ["app"], "backupName": "b1-app"})
        self.assertEqual(self.kube.objects(kinds.CONFIG_MAP), [])

    async def test_existing_request_is_reused(self):
        self.kube.seed(kinds.VELERO_RESTORE, {
            "metadata": {"name": "b1.app", "namespace": "velero"},
            "status": {"phase": "Completed"},
        })

        await self.restorer.restore(self.backup, Component.APP)

        self.assertEqual(self.kube.count("create", kinds.VELERO_RESTORE), 0)


if __name__ == '__main__':
    unittest.main()
