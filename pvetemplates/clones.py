"""Linked clone discovery and conversion to full clones."""

from __future__ import annotations

import re
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pvetemplates.constants import CLONE_STOP_TIMEOUT, DISK_KEY_RE
from pvetemplates.exceptions import HypervisorError, ManagerError
from pvetemplates.hypervisor import HypervisorClient
from pvetemplates.models import ConversionReport, LinkedClone, RunState
from pvetemplates.utils import log


def base_volume_pattern(template_vmid: int) -> "re.Pattern[str]":
    return re.compile(rf"(?:^|[:/])base-{template_vmid}-disk-0(?!\d)")


def find_base_disk(config: Dict[str, str], template_vmid: int) -> Optional[Tuple[str, str]]:
    """Return ``(disk_key, storage)`` of the first disk backed by the template."""
    pattern = base_volume_pattern(template_vmid)
    for key in sorted(config):
        if not DISK_KEY_RE.match(key):
            continue
        volume = config[key].split(",", 1)[0]
        if pattern.search(volume):
            return key, volume.split(":", 1)[0]
    return None


class LinkedCloneResolver:
    def __init__(self, hypervisor: HypervisorClient) -> None:
        self.hypervisor = hypervisor

    def find(self, template_vmid: int) -> List[LinkedClone]:
        """All VMs whose disks reference ``base-<template_vmid>-disk-0``."""
        clones: List[LinkedClone] = []
        for vm in self.hypervisor.list_vms():
            if vm.vmid == template_vmid:
                continue
            config = self.hypervisor.get_vm_config(vm.vmid)
            if find_base_disk(config, template_vmid) is None:
                continue
            run_state = RunState.RUNNING if vm.status == "running" else RunState.STOPPED
            clones.append(LinkedClone(vmid=vm.vmid, name=vm.name, backing_vmid=template_vmid, run_state=run_state))
        if clones:
            log("WARN", f"Found {len(clones)} linked clone(s) of template {template_vmid}")
        return clones


class CloneConverter:
    """Turn linked clones into full clones so their template can be replaced.

    ``qm disk move`` onto the clone's own storage forces Proxmox to write an
    independent copy of the disk. Running clones are stopped first and always
    started again afterwards, whether or not the move succeeded.
    """

    def __init__(
        self,
        hypervisor: HypervisorClient,
        stop_timeout: int = CLONE_STOP_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 1.0,
    ) -> None:
        self.hypervisor = hypervisor
        self.stop_timeout = stop_timeout
        self._sleep = sleep
        self._clock = clock
        self.poll_interval = poll_interval

    def convert(self, clones: Sequence[LinkedClone]) -> ConversionReport:
        report = ConversionReport()
        for index, clone in enumerate(clones):
            try:
                self.convert_one(clone)
            except ManagerError as exc:
                log("ERROR", f"Failed to convert VM {clone.vmid} ({clone.name}): {exc}")
                report.failed.append(clone)
                report.errors.append(f"{clone.vmid}: {exc}")
                report.pending.extend(clones[index + 1 :])
                break
            report.converted.append(clone)
            log("SUCCESS", f"VM {clone.vmid} ({clone.name}) is now a full clone")
        return report

    def convert_one(self, clone: LinkedClone) -> None:
        config = self.hypervisor.get_vm_config(clone.vmid)
        found = find_base_disk(config, clone.backing_vmid)
        if found is None:
            log("INFO", f"VM {clone.vmid} no longer references template {clone.backing_vmid}")
            return
        disk_key, storage = found

        was_running = self._is_running(clone)
        try:
            if was_running:
                self._stop(clone.vmid)
            log("INFO", f"Moving {disk_key} of VM {clone.vmid} to a full copy on '{storage}'")
            self.hypervisor.move_disk(clone.vmid, disk_key, storage)
        finally:
            if was_running:
                self._restart(clone.vmid)

    def _is_running(self, clone: LinkedClone) -> bool:
        try:
            return self.hypervisor.vm_status(clone.vmid) == "running"
        except HypervisorError as exc:
            log("WARN", f"Could not query VM {clone.vmid} status ({exc}); using listed state")
            return clone.run_state == RunState.RUNNING

    def _stop(self, vmid: int) -> None:
        log("INFO", f"Shutting down VM {vmid} (up to {self.stop_timeout}s)")
        deadline = self._clock() + self.stop_timeout
        try:
            self.hypervisor.stop_vm(vmid, graceful=True, timeout=self.stop_timeout)
        except HypervisorError as exc:
            log("WARN", f"Graceful shutdown of VM {vmid} failed: {exc}")
        while self.hypervisor.vm_status(vmid) == "running":
            if self._clock() >= deadline:
                log("WARN", f"VM {vmid} still running after {self.stop_timeout}s; forcing stop")
                self.hypervisor.stop_vm(vmid, graceful=False)
                break
            self._sleep(self.poll_interval)

    def _restart(self, vmid: int) -> None:
        try:
            if self.hypervisor.vm_status(vmid) == "running":
                return
        except HypervisorError as exc:
            log("WARN", f"Could not query VM {vmid} status ({exc}); starting it anyway")
        try:
            self.hypervisor.start_vm(vmid)
        except HypervisorError as exc:
            log("ERROR", f"VM {vmid} was running before conversion but could not be restarted: {exc}")
            return
        log("INFO", f"Restarted VM {vmid}")
