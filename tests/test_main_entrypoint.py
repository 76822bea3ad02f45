"""Tests for pvetemplates.__main__ entrypoint."""

from __future__ import annotations

import runpy
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

SHIPPED_REGISTRY = Path(__file__).resolve().parents[1] / "pvetemplates" / "templates.yaml"


def test_module_entrypoint_exits_with_cli_status():
    with patch("pvetemplates.cli.main", return_value=7) as mock_main:
        with pytest.raises(SystemExit) as exc:
            runpy.run_module("pvetemplates.__main__", run_name="__main__")
    assert exc.value.code == 7
    mock_main.assert_called_once_with()


def test_module_entrypoint_reads_command_line(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["pve-templates", "--list-templates", "--config", str(SHIPPED_REGISTRY)])
    with pytest.raises(SystemExit) as exc:
        runpy.run_module("pvetemplates.__main__", run_name="__main__")
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "ubuntu-22.04-standard" in out
    assert "vmid=9005" in out
