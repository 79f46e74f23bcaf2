# SPDX-License-Identifier: MIT
"""
Report and Ansible Module Tests

Covers:
1. Result collection and summary counts
2. Text report layout, fatal footer
3. Ansible option conversion and category selection

Run with:
    pytest tests/test_report.py -v
"""

import importlib.util
from datetime import datetime, timezone
from pathlib import Path

import pytest

from mesh_health.errors import CategoryError, MeshHealthError
from mesh_health.healthcheck import POST_INSTALL_CATEGORIES, PRE_INSTALL_CATEGORIES
from mesh_health.models import CheckResult
from mesh_health.report import FATAL_FOOTER, ResultCollector, generate_report_text, summarize

MODULE_PATH = Path(__file__).resolve().parents[1] / "roles" / "mesh_health" / "library" / "mesh_health_check.py"


@pytest.fixture(scope="module")
def ansible_module():
    spec = importlib.util.spec_from_file_location("mesh_health_check", MODULE_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def err(category, message):
    return CategoryError(category, MeshHealthError(message))


RESULTS = [
    CheckResult("kubernetes-api", "can query the Kubernetes API", "https://h/#k8s-api"),
    CheckResult("linkerd-existence", "control plane pods are ready", "https://h/#ready",
                retry=True, err=err("linkerd-existence", "waiting for check to complete")),
    CheckResult("linkerd-existence", "control plane pods are ready", "https://h/#ready"),
    CheckResult("linkerd-identity", "trust anchors are valid for at least 60 days", "https://h/#expiry",
                warning=True, err=err("linkerd-identity", "Anchors expiring soon:\n\t* 1 root will expire on x")),
    CheckResult("linkerd-identity", "issuer cert is issued by the trust anchor", "https://h/#issued",
                err=err("linkerd-identity", "x509: certificate signed by unknown authority")),
]


# ============================================================================
# COLLECTION / SUMMARY
# ============================================================================

class TestSummary:

    def test_collector_keeps_order(self):
        collector = ResultCollector()
        for result in RESULTS:
            collector(result)
        assert collector.results == RESULTS
        assert collector.final_results == [r for r in RESULTS if not r.retry]

    def test_counts(self):
        summary = summarize(RESULTS, success=False, warning=True)
        assert summary["overall_health"] == "failed"
        assert summary["total_checks"] == 4
        assert summary["passed_count"] == 2
        assert summary["failed_count"] == 1
        assert summary["warning_count"] == 1
        assert summary["retry_count"] == 1
        assert summary["categories"] == ["kubernetes-api", "linkerd-existence", "linkerd-identity"]

    @pytest.mark.parametrize("success,warning,expected", [
        (True, False, "healthy"), (True, True, "warning"), (False, True, "failed"),
    ])
    def test_overall(self, success, warning, expected):
        assert summarize([], success, warning)["overall_health"] == expected

    def test_result_dict(self):
        assert RESULTS[3].to_dict() == {
            "category": "linkerd-identity",
            "description": "trust anchors are valid for at least 60 days",
            "hint_url": "https://h/#expiry",
            "retry": False,
            "warning": True,
            "error": "Anchors expiring soon:\n\t* 1 root will expire on x",
            "subsystem": None,
        }


# ============================================================================
# TEXT REPORT
# ============================================================================

class TestReportText:

    def test_layout(self):
        text = generate_report_text(
            "prod", RESULTS, success=False, warning=True,
            timestamp=datetime(2026, 1, 2, tzinfo=timezone.utc),
        )
        assert text.splitlines() == [
            "# Mesh Health Check: prod",
            "Timestamp: 2026-01-02T00:00:00+00:00",
            "",
            "kubernetes-api",
            "--------------",
            "√ can query the Kubernetes API",
            "linkerd-existence",
            "-----------------",
            "√ control plane pods are ready",
            "linkerd-identity",
            "----------------",
            "‼ trust anchors are valid for at least 60 days",
            "    Anchors expiring soon:",
            "    \t* 1 root will expire on x",
            "    see https://h/#expiry for hints",
            "× issuer cert is issued by the trust anchor",
            "    x509: certificate signed by unknown authority",
            "    see https://h/#issued for hints",
            "",
            "Status check results are ×",
        ]

    def test_fatal_footer(self):
        text = generate_report_text("prod", RESULTS[:1], success=False, warning=False, fatal=True)
        assert text.splitlines()[-2:] == [FATAL_FOOTER, "Status check results are ×"]

    def test_warning_status(self):
        text = generate_report_text("prod", RESULTS[:1], success=True, warning=True)
        assert text.endswith("Status check results are ‼")


# ============================================================================
# ANSIBLE MODULE HELPERS
# ============================================================================

PARAMS = dict(
    kubeconfig="/tmp/kubeconfig",
    context="prod",
    control_plane_namespace="mesh",
    cni_namespace="mesh-cni",
    checks=None,
    pre=False,
    multicluster=True,
    proxy=False,
    namespace=None,
    wait=300,
    hint_base_url="https://docs/#",
)


class TestAnsibleModule:

    def test_options(self, ansible_module):
        before = datetime.now(timezone.utc)
        options = ansible_module.build_options(PARAMS)
        assert options.control_plane_namespace == "mesh"
        assert options.cni_namespace == "mesh-cni"
        assert options.data_plane_namespace == ""
        assert options.multicluster is True
        assert options.kubeconfig == "/tmp/kubeconfig"
        assert options.kube_context == "prod"
        assert options.hint_base_url == "https://docs/#"
        assert 299 <= (options.retry_deadline - before).total_seconds() <= 301

    def test_no_wait_disables_retries(self, ansible_module):
        assert ansible_module.build_options(dict(PARAMS, wait=0)).retry_deadline is None

    def test_default_categories(self, ansible_module):
        assert ansible_module.select_categories(PARAMS) == POST_INSTALL_CATEGORIES

    def test_pre_install_categories(self, ansible_module):
        assert ansible_module.select_categories(dict(PARAMS, pre=True)) == PRE_INSTALL_CATEGORIES

    def test_explicit_categories(self, ansible_module):
        params = dict(PARAMS, checks=["kubernetes-api", "linkerd-identity"])
        assert ansible_module.select_categories(params) == ["kubernetes-api", "linkerd-identity"]

    def test_proxy_adds_data_plane_category(self, ansible_module):
        params = dict(PARAMS, proxy=True, namespace="emojivoto")
        categories = ansible_module.select_categories(params)
        assert categories.index("linkerd-data-plane") == categories.index("linkerd-multicluster") - 1
        assert [c for c in categories if c != "linkerd-data-plane"] == POST_INSTALL_CATEGORIES
        assert ansible_module.build_options(params).data_plane_namespace == "emojivoto"
