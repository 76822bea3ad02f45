"""Tests for pvetemplates.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from pvetemplates import cli
from pvetemplates.exceptions import HypervisorError, ManagerError
from pvetemplates.models import (
    BatchResult,
    LifecycleState,
    StorageKind,
    StoragePool,
    TemplateOutcome,
)
from pvetemplates.orchestrator import AutoDecisions, PromptDecisions

REGISTRY = """\
templates:
  ubuntu-22.04-standard:
    vmid: 9000
    url: https://cloud-images.ubuntu.com/releases/22.04/release/ubuntu-22.04-server-cloudimg-amd64.img
    filename: ubuntu-22.04-server-cloudimg-amd64.img
  debian-12-standard:
    vmid: 9002
    url: https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2
    filename: debian-12-generic-amd64.qcow2
"""


@pytest.fixture
def registry_file(tmp_path):
    path = tmp_path / "templates.yaml"
    path.write_text(REGISTRY)
    return path


@pytest.fixture
def cli_env(clean_env, mock_env, tmp_path):
    mock_env(PROXMOX_IMAGE_CACHE=str(tmp_path / "images"))


def _outcome(name, vmid, status, message=""):
    state = LifecycleState.TEMPLATED if status in ("created", "updated") else LifecycleState.FAILED
    return TemplateOutcome(name, vmid, status, state, message)


class TestListTemplates:
    def test_prints_every_template(self, registry_file, capsys):
        cli.list_templates(registry_file)
        out = capsys.readouterr().out
        assert "ubuntu-22.04-standard" in out
        assert "vmid=9002" in out
        assert "debian-12-generic-amd64.qcow2" in out

    def test_missing_registry(self, tmp_path):
        with pytest.raises(ManagerError, match="registry missing"):
            cli.list_templates(tmp_path / "nope.yaml")


class TestShowConfig:
    def test_lists_fields(self, cli_env, registry_file, capsys):
        from pvetemplates.config import parse_env

        cli.show_config(parse_env(registry_file))
        out = capsys.readouterr().out
        assert "templates: ubuntu-22.04-standard, debian-12-standard" in out
        assert "memory_mb: 2048" in out
        assert "storage: None" in out


class TestCheckPrerequisites:
    def test_all_present(self):
        with patch("pvetemplates.cli.missing_tools", return_value=[]) as mock_missing:
            cli.check_prerequisites()
        assert mock_missing.call_args[0][0] == ["qm", "pvesm"]

    def test_block_storage_needs_kpartx(self):
        with patch("pvetemplates.cli.missing_tools", return_value=["kpartx"]) as mock_missing:
            with pytest.raises(ManagerError, match="Required tools not found: kpartx"):
                cli.check_prerequisites(StorageKind.BLOCK_DEVICE)
        assert "kpartx" in mock_missing.call_args[0][0]

    def test_file_storage_needs_loop_and_nbd(self):
        with patch("pvetemplates.cli.missing_tools", return_value=[]) as mock_missing:
            cli.check_prerequisites(StorageKind.FILE_BACKED)
        assert mock_missing.call_args[0][0] == ["qm", "pvesm", "losetup", "qemu-nbd"]


class TestResolveStorage:
    def test_prefers_local(self, fake_hypervisor, capsys):
        fake_hypervisor.pools = [
            StoragePool("local-lvm", StorageKind.BLOCK_DEVICE, "lvmthin", ("images",)),
            StoragePool("local", StorageKind.FILE_BACKED, "dir", ("images", "iso")),
            StoragePool("backups", StorageKind.FILE_BACKED, "dir", ("backup",)),
        ]
        pool = cli.resolve_storage(fake_hypervisor, None, None)
        assert pool.name == "local"
        out = capsys.readouterr().out
        assert "[1] local-lvm (LVM-thin (block device))" in out
        assert "backups" not in out

    def test_unknown_storage_needs_confirmation(self, fake_hypervisor):
        fake_hypervisor.pools = [StoragePool("ceph", StorageKind.UNKNOWN, "rbd", ("images",))]
        with pytest.raises(ManagerError, match="explicit confirmation"):
            cli.resolve_storage(fake_hypervisor, "ceph", AutoDecisions().confirm_unknown_storage)


class TestPrintSummary:
    def test_counts_and_leaks(self, capsys):
        result = BatchResult(
            outcomes=[
                _outcome("ubuntu-22.04-standard", 9000, "created"),
                _outcome("ubuntu-24.04-standard", 9001, "updated"),
                TemplateOutcome("debian-12-standard", 9002, "skipped", LifecycleState.ABSENT, "update declined"),
                _outcome("rockylinux-9-standard", 9004, "failed", "No partition /dev/nbd0p1 appeared"),
            ],
            leaked_devices=["/dev/nbd0"],
        )
        cli.print_summary(result)
        out = capsys.readouterr().out
        assert "CREATED  ubuntu-22.04-standard (VMID 9000)" in out
        assert "SKIPPED  debian-12-standard (VMID 9002) - update declined" in out
        assert "FAILED   rockylinux-9-standard (VMID 9004) - No partition" in out
        assert "Created: 1  Updated: 1  Skipped: 1  Failed: 1" in out
        assert "Leaked devices (detach manually): /dev/nbd0" in out


class TestMain:
    def test_list_templates(self, registry_file, capsys):
        assert cli.main(["--list-templates", "--config", str(registry_file)]) == 0
        assert "debian-12-standard" in capsys.readouterr().out

    def test_show_config_with_overrides(self, cli_env, registry_file, tmp_path, capsys):
        code = cli.main(
            [
                "--show-config",
                "--config",
                str(registry_file),
                "--storage",
                "local-lvm",
                "--cache-dir",
                str(tmp_path / "c"),
                "--template",
                "debian-12-standard",
                "-y",
            ]
        )
        assert code == 0
        out = capsys.readouterr().out
        assert "storage: local-lvm" in out
        assert f"cache_dir: {tmp_path / 'c'}" in out
        assert "templates: debian-12-standard\n" in out
        assert "recreate_all: True" in out

    def test_unknown_template(self, cli_env, registry_file, capsys):
        assert cli.main(["--config", str(registry_file), "--template", "fedora-40"]) == 1
        assert "Unknown template" in capsys.readouterr().out

    def test_invalid_env(self, cli_env, mock_env, registry_file):
        mock_env(TEMPLATE_MEMORY="lots")
        assert cli.main(["--config", str(registry_file), "--show-config"]) == 1

    def test_dry_run_changes_nothing(self, cli_env, registry_file, fake_hypervisor, capsys):
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", return_value=fake_hypervisor
        ), patch("pvetemplates.cli.TemplateLifecycleOrchestrator") as mock_orch:
            code = cli.main(["--config", str(registry_file), "--dry-run"])
        assert code == 0
        mock_orch.assert_not_called()
        out = capsys.readouterr().out
        assert "ubuntu-22.04-standard (VMID 9000)" in out
        assert "Dry-run complete" in out
        assert [call[0] for call in fake_hypervisor.calls] == ["pvesm status"]

    def test_missing_tools(self, cli_env, registry_file):
        with patch("pvetemplates.cli.missing_tools", return_value=["qm"]):
            assert cli.main(["--config", str(registry_file), "-y"]) == 1

    def test_interactive_abort(self, cli_env, registry_file, fake_hypervisor):
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", return_value=fake_hypervisor
        ), patch("pvetemplates.cli.prompt_yes_no", return_value=False), patch(
            "pvetemplates.cli.TemplateLifecycleOrchestrator"
        ) as mock_orch:
            assert cli.main(["--config", str(registry_file)]) == 0
        mock_orch.assert_not_called()

    def test_recreate_all_runs_batch(self, cli_env, registry_file, fake_hypervisor):
        orchestrator = MagicMock()
        orchestrator.run.return_value = BatchResult(
            outcomes=[_outcome("ubuntu-22.04-standard", 9000, "created"), _outcome("debian-12-standard", 9002, "updated")]
        )
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", return_value=fake_hypervisor
        ), patch("pvetemplates.cli.TemplateLifecycleOrchestrator", return_value=orchestrator) as mock_orch:
            assert cli.main(["--config", str(registry_file), "--recreate-all"]) == 0
        assert isinstance(mock_orch.call_args[0][1], AutoDecisions)
        templates, pool = orchestrator.run.call_args[0]
        assert [spec.name for spec in templates] == ["ubuntu-22.04-standard", "debian-12-standard"]
        assert pool.name == "local"

    def test_failed_template_exits_nonzero(self, cli_env, registry_file, fake_hypervisor, capsys):
        orchestrator = MagicMock()
        orchestrator.run.return_value = BatchResult(
            outcomes=[_outcome("ubuntu-22.04-standard", 9000, "failed", "import failed")]
        )
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", return_value=fake_hypervisor
        ), patch("pvetemplates.cli.prompt_yes_no", return_value=True), patch(
            "pvetemplates.cli.TemplateLifecycleOrchestrator", return_value=orchestrator
        ) as mock_orch:
            assert cli.main(["--config", str(registry_file)]) == 1
        assert isinstance(mock_orch.call_args[0][1], PromptDecisions)
        assert "1 template(s) failed" in capsys.readouterr().out

    def test_hypervisor_error(self, cli_env, registry_file, fake_hypervisor):
        fake_hypervisor.failures["pvesm status"] = HypervisorError("pvesm status", None, "connection refused")
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", return_value=fake_hypervisor
        ):
            assert cli.main(["--config", str(registry_file), "-y"]) == 1

    def test_unexpected_error_reported_as_bug(self, cli_env, registry_file, capsys):
        with patch("pvetemplates.cli.check_prerequisites"), patch(
            "pvetemplates.cli.QemuServerClient", side_effect=KeyError("boom")
        ):
            assert cli.main(["--config", str(registry_file), "-y"]) == 1
        captured = capsys.readouterr()
        assert "This is likely a bug" in captured.out
        assert "KeyError" in captured.err
