"""
Tests for chart reconciliation helpers.
"""

import unittest

import yaml

from .charts import (
    deep_merge, desired_helm_extensions, detect_chart_completion, detect_chart_drift, parse_values
)
from .release import ReleaseMetadata
from ..kube.helpers import hash_values
from ..errors.errors import StandardError

DATA_DIR = "/var/lib/embedded-cluster"

METADATA = ReleaseMetadata(configs={
    "repositories": [{"name": "ec", "url": "https://charts.example.com"}],
    "charts": [
        {"name": "admin-console", "chartname": "oci://registry/admin-console", "version": "1.109.0",
         "values": "isHA: false\nservice:\n  type: NodePort\n", "namespace": "kotsadm", "order": 3},
        {"name": "embedded-cluster-operator", "chartname": "oci://registry/operator", "version": "1.2.3",
         "values": "", "namespace": "embedded-cluster", "order": 1},
    ],
})


def installation(airgap=False, vendor=None, overrides=None):
    config = {"version": "1.2.3+k8s-1.29"}
    if vendor is not None:
        config["extensions"] = {"helm": vendor}
    if overrides is not None:
        config["unsupportedOverrides"] = {"builtInExtensions": overrides}
    return {
        "metadata": {"name": "20240601000000"},
        "spec": {"config": config, "airGap": airgap, "runtimeConfig": {}},
    }


def by_name(helm):
    return {chart["name"]: chart for chart in helm["charts"]}


class TestDesiredCharts(unittest.TestCase):

    def test_orders_are_offset(self):
        vendor = {"charts": [
            {"name": "vendor-a", "version": "1.0.0"},
            {"name": "vendor-b", "version": "1.0.0", "order": 5},
        ], "repositories": [{"name": "vendor", "url": "https://vendor.example.com"}]}

        helm = desired_helm_extensions(installation(vendor=vendor), METADATA, DATA_DIR)

        orders = {name: chart["order"] for name, chart in by_name(helm).items()}
        self.assertEqual(orders, {
            "vendor-a": 110, "vendor-b": 105, "admin-console": 103, "embedded-cluster-operator": 101,
        })
        self.assertEqual([r["name"] for r in helm["repositories"]], ["vendor", "ec"])
        self.assertEqual(helm["concurrencyLevel"], 1)

    def test_metadata_is_not_mutated(self):
        desired_helm_extensions(installation(), METADATA, DATA_DIR)
        self.assertEqual(METADATA.configs["charts"][0]["order"], 3)

    def test_airgap_points_to_local_charts(self):
        helm = desired_helm_extensions(installation(airgap=True), METADATA, DATA_DIR)

        self.assertEqual(helm["repositories"], [])
        self.assertEqual(
            by_name(helm)["admin-console"]["chartname"],
            "/var/lib/embedded-cluster/charts/admin-console-1.109.0.tgz",
        )

    def test_user_overrides_are_merged(self):
        overrides = [{"name": "admin-console", "values": "service:\n  nodePort: 30001\n"}]

        helm = desired_helm_extensions(installation(overrides=overrides), METADATA, DATA_DIR)

        values = yaml.safe_load(by_name(helm)["admin-console"]["values"])
        self.assertEqual(values, {"isHA": False, "service": {"type": "NodePort", "nodePort": 30001}})

    def test_deep_merge(self):
        base = {"a": {"b": 1, "c": [1]}, "d": 1}
        self.assertEqual(deep_merge(base, {"a": {"c": [2]}, "e": 2}), {"a": {"b": 1, "c": [2]}, "d": 1, "e": 2})
        self.assertEqual(base["a"]["c"], [1])

    def test_invalid_values(self):
        with self.assertRaises(StandardError):
            parse_values("- a list", "broken")


class TestChartDrift(unittest.TestCase):

    def setUp(self):
        self.desired = desired_helm_extensions(installation(), METADATA, DATA_DIR)

    def test_no_drift(self):
        self.assertEqual(detect_chart_drift(self.desired, self.desired), (False, []))

    def test_values_compared_as_documents(self):
        current = desired_helm_extensions(installation(), METADATA, DATA_DIR)
        by_name(current)["admin-console"]["values"] = "service: {type: NodePort}\nisHA: false\n"
        self.assertFalse(detect_chart_drift(self.desired, current)[0])

    def test_version_change(self):
        current = desired_helm_extensions(installation(), METADATA, DATA_DIR)
        by_name(current)["embedded-cluster-operator"]["version"] = "1.2.2"
        self.assertEqual(detect_chart_drift(self.desired, current), (True, ["embedded-cluster-operator"]))

    def test_new_chart(self):
        current = {"charts": self.desired["charts"][:1], "repositories": self.desired["repositories"]}
        self.assertEqual(detect_chart_drift(self.desired, current), (True, ["embedded-cluster-operator"]))

    def test_repository_change(self):
        current = dict(self.desired, repositories=[{"name": "ec", "url": "https://old.example.com"}])
        self.assertEqual(detect_chart_drift(self.desired, current), (True, []))


def installed_chart(name, version, values="", error="", converged=True):
    status = {"releaseName": name, "version": version, "valuesHash": hash_values(values)}
    if not converged:
        status["version"] = "0.0.1"
    if error:
        status["error"] = error
    return {
        "metadata": {"name": f"k0s-addon-chart-{name}", "namespace": "kube-system"},
        "spec": {"releaseName": name, "version": version, "values": values},
        "status": status,
    }


class TestChartCompletion(unittest.TestCase):

    current = {"charts": [
        {"name": "admin-console", "version": "1.109.0"},
        {"name": "embedded-cluster-operator", "version": "1.2.3"},
    ]}

    def test_all_converged(self):
        installed = [installed_chart("admin-console", "1.109.0"), installed_chart("embedded-cluster-operator", "1.2.3")]
        self.assertEqual(detect_chart_completion(self.current, installed), ([], []))

    def test_missing_chart_is_pending(self):
        installed = [installed_chart("admin-console", "1.109.0")]
        self.assertEqual(detect_chart_completion(self.current, installed), (["embedded-cluster-operator"], []))

    def test_unconverged_chart_is_pending(self):
        installed = [
            installed_chart("admin-console", "1.109.0", converged=False),
            installed_chart("embedded-cluster-operator", "1.2.2"),
        ]
        pending, errors = detect_chart_completion(self.current, installed)
        self.assertEqual(pending, ["admin-console", "embedded-cluster-operator"])
        self.assertEqual(errors, [])

    def test_chart_error(self):
        installed = [
            installed_chart("admin-console", "1.109.0", error="install failed"),
            installed_chart("embedded-cluster-operator", "1.2.3"),
        ]
        self.assertEqual(detect_chart_completion(self.current, installed), ([], ["install failed"]))


if __name__ == '__main__':
    unittest.main()
