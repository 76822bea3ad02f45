"""Proxmox qm/pvesm access for pve-templates."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol

from pvetemplates.constants import BOOT_DISK_KEY, SCSI_CONTROLLER
from pvetemplates.exceptions import HypervisorError, ParseError
from pvetemplates.models import StoragePool, Volume, VMSummary
from pvetemplates.storage import expected_volume_ids, parse_pvesm_status, parse_volume_id
from pvetemplates.utils import command_error, log, run

_IMPORTED_RE = re.compile(r"imported disk as '(?:unused\d+:)?(?P<volid>[^']+)'")


class HypervisorClient(Protocol):
    """Privileged hypervisor operations used by the template lifecycle."""

    def create_vm(self, vmid: int, name: str, memory_mb: int, bridge: str) -> None: ...

    def import_disk(self, vmid: int, image_path: Path, pool: StoragePool) -> Volume: ...

    def set_disk_and_boot(self, vmid: int, volume: Volume, aux_devices: Mapping[str, str]) -> None: ...

    def convert_to_template(self, vmid: int) -> None: ...

    def destroy_vm(self, vmid: int, purge: bool = True) -> None: ...

    def list_vms(self) -> List[VMSummary]: ...

    def get_vm_config(self, vmid: int) -> Dict[str, str]: ...

    def vm_status(self, vmid: int) -> str: ...

    def stop_vm(self, vmid: int, graceful: bool = True, timeout: int = 30) -> None: ...

    def start_vm(self, vmid: int) -> None: ...

    def move_disk(self, vmid: int, disk_key: str, target_pool: str) -> None: ...

    def list_storage(self) -> List[StoragePool]: ...

    def volume_path(self, volume: Volume) -> Path: ...


def parse_qm_list(output: str) -> List[VMSummary]:
    """Parse ``qm list``: ``VMID NAME STATUS MEM(MB) BOOTDISK(GB) PID``."""
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return []
    header = lines[0].split()
    if len(header) < 3 or header[0].upper() != "VMID" or header[1].upper() != "NAME":
        raise ParseError(f"Unexpected qm list header: {lines[0]!r}")
    vms: List[VMSummary] = []
    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 3 or not fields[0].isdigit():
            raise ParseError(f"Malformed qm list row: {line!r}")
        vms.append(VMSummary(vmid=int(fields[0]), name=fields[1], status=fields[2]))
    return vms


def parse_vm_config(output: str) -> Dict[str, str]:
    """Parse ``qm config`` key/value output (current config only, no snapshots)."""
    config: Dict[str, str] = {}
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("["):
            break
        key, sep, value = stripped.partition(":")
        if not sep or not key or " " in key:
            raise ParseError(f"Malformed qm config line: {line!r}")
        config[key] = value.strip()
    return config


def parse_qm_status(output: str) -> str:
    """``status: running`` -> ``running``."""
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "status" and value.strip():
            return value.strip().split()[0]
    raise ParseError(f"Unexpected qm status output: {output!r}")


class QemuServerClient:
    """Shells out to ``qm`` and ``pvesm`` on the local Proxmox node."""

    def _call(self, op: str, vmid: Optional[int], cmd: List[str]) -> str:
        try:
            result = run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            raise HypervisorError(op, vmid, command_error(exc)) from exc
        except OSError as exc:
            raise HypervisorError(op, vmid, exc) from exc
        return result.stdout or ""

    def create_vm(self, vmid: int, name: str, memory_mb: int, bridge: str) -> None:
        self._call(
            "create",
            vmid,
            ["qm", "create", str(vmid), "--name", name, "--memory", str(memory_mb), "--net0", f"virtio,bridge={bridge}"],
        )

    def import_disk(self, vmid: int, image_path: Path, pool: StoragePool) -> Volume:
        output = self._call("importdisk", vmid, ["qm", "importdisk", str(vmid), str(image_path), pool.name])

        unused = self.get_vm_config(vmid).get("unused0")
        if unused:
            return parse_volume_id(unused)
        match = _IMPORTED_RE.search(output)
        if match:
            return parse_volume_id(match.group("volid"))

        # Older qm builds print nothing useful; probe the ids the import could have produced.
        for volid in expected_volume_ids(pool, vmid):
            volume = parse_volume_id(volid)
            try:
                if self.volume_path(volume).exists() or volume.fmt is None:
                    log("WARN", f"Could not find unused0 in config, using constructed volume: {volid}")
                    return volume
            except HypervisorError:
                continue
        raise HypervisorError("importdisk", vmid, "could not detect the imported disk")

    def set_disk_and_boot(self, vmid: int, volume: Volume, aux_devices: Mapping[str, str]) -> None:
        self._call(
            "set",
            vmid,
            ["qm", "set", str(vmid), "--scsihw", SCSI_CONTROLLER, f"--{BOOT_DISK_KEY}", volume.volume_id],
        )
        for key, value in aux_devices.items():
            self._call("set", vmid, ["qm", "set", str(vmid), f"--{key}", value])
        self._call("set", vmid, ["qm", "set", str(vmid), "--boot", f"order={BOOT_DISK_KEY}"])

    def convert_to_template(self, vmid: int) -> None:
        self._call("template", vmid, ["qm", "template", str(vmid)])

    def destroy_vm(self, vmid: int, purge: bool = True) -> None:
        cmd = ["qm", "destroy", str(vmid)]
        if purge:
            cmd.append("--purge")
        self._call("destroy", vmid, cmd)

    def list_vms(self) -> List[VMSummary]:
        return parse_qm_list(self._call("list", None, ["qm", "list"]))

    def get_vm_config(self, vmid: int) -> Dict[str, str]:
        return parse_vm_config(self._call("config", vmid, ["qm", "config", str(vmid)]))

    def vm_status(self, vmid: int) -> str:
        return parse_qm_status(self._call("status", vmid, ["qm", "status", str(vmid)]))

    def stop_vm(self, vmid: int, graceful: bool = True, timeout: int = 30) -> None:
        if graceful:
            self._call("shutdown", vmid, ["qm", "shutdown", str(vmid), "--timeout", str(timeout)])
        else:
            self._call("stop", vmid, ["qm", "stop", str(vmid)])

    def start_vm(self, vmid: int) -> None:
        self._call("start", vmid, ["qm", "start", str(vmid)])

    def move_disk(self, vmid: int, disk_key: str, target_pool: str) -> None:
        self._call("disk move", vmid, ["qm", "disk", "move", str(vmid), disk_key, target_pool])

    def list_storage(self) -> List[StoragePool]:
        return parse_pvesm_status(self._call("pvesm status", None, ["pvesm", "status"]))

    def volume_path(self, volume: Volume) -> Path:
        output = self._call("pvesm path", volume.vmid, ["pvesm", "path", volume.volume_id]).strip()
        if not output:
            raise HypervisorError("pvesm path", volume.vmid, f"no path for {volume.volume_id}")
        return Path(output.splitlines()[-1].strip())
