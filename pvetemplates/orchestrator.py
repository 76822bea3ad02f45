"""Per-template lifecycle: replace, import, repair and templatize."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Protocol, Sequence

from pvetemplates.attach import DeviceAttacher
from pvetemplates.cache import ImageCache
from pvetemplates.clones import CloneConverter, LinkedCloneResolver
from pvetemplates.constants import BOOT_DISK_KEY, CLOUD_INIT_DISK_KEY, DEFAULT_BRIDGE, DEFAULT_MEMORY_MB
from pvetemplates.exceptions import (
    CloneConversionFailed,
    DependentCloneBlocking,
    HypervisorError,
    ImportFailed,
    ManagerError,
    TemplateConversionFailed,
)
from pvetemplates.hypervisor import HypervisorClient
from pvetemplates.models import (
    BatchResult,
    CacheEntry,
    LifecycleState,
    LinkedClone,
    StoragePool,
    Template,
    TemplateOutcome,
    TemplateSpec,
    Volume,
    VMSummary,
)
from pvetemplates.repair import BootConfigRepairer
from pvetemplates.utils import log, prompt_yes_no


class Decisions(Protocol):
    """Operator choices the lifecycle needs; injected so runs are scriptable."""

    def should_update(self, spec: TemplateSpec, existing: VMSummary) -> bool: ...

    def should_convert_clones(self, spec: TemplateSpec, clones: Sequence[LinkedClone]) -> bool: ...

    def use_cached_image(self, spec: TemplateSpec, path: Path) -> bool: ...

    def confirm_unknown_storage(self, pool: StoragePool) -> bool: ...


class AutoDecisions:
    """Non-interactive answers (``--recreate-all``).

    Everything is accepted except an Unknown storage backend, which always
    needs a human to confirm it.
    """

    def should_update(self, spec: TemplateSpec, existing: VMSummary) -> bool:
        log("INFO", "Auto-updating existing template (--recreate-all mode)")
        return True

    def should_convert_clones(self, spec: TemplateSpec, clones: Sequence[LinkedClone]) -> bool:
        log("INFO", "Auto-converting linked clones to full clones (--recreate-all mode)")
        return True

    def use_cached_image(self, spec: TemplateSpec, path: Path) -> bool:
        return True

    def confirm_unknown_storage(self, pool: StoragePool) -> bool:
        log("WARN", f"Storage '{pool.name}' has an unknown backend type; run interactively to confirm it")
        return False


class PromptDecisions:
    """Ask on the terminal; defaults apply when there is no TTY."""

    def should_update(self, spec: TemplateSpec, existing: VMSummary) -> bool:
        return prompt_yes_no(f"Template '{spec.name}' exists (VMID {existing.vmid}). Update it?")

    def should_convert_clones(self, spec: TemplateSpec, clones: Sequence[LinkedClone]) -> bool:
        return prompt_yes_no("Convert these VMs to full clones to proceed?")

    def use_cached_image(self, spec: TemplateSpec, path: Path) -> bool:
        return prompt_yes_no(f"Use cached image {path.name}?")

    def confirm_unknown_storage(self, pool: StoragePool) -> bool:
        return prompt_yes_no(f"Storage '{pool.name}' has an unknown backend type. Use it anyway?", default=False)


class _Skipped(Exception):
    """The operator declined; the template is left as it is."""


class TemplateLifecycleOrchestrator:
    """Drive each template through Absent -> Importing -> Repairing -> Templated.

    Templates are handled one at a time. A failing template is reported and
    the batch moves on. A template that still backs linked clones is never
    destroyed: the dependents are resolved again right before every destroy.
    """

    def __init__(
        self,
        hypervisor: HypervisorClient,
        decisions: Decisions,
        cache: ImageCache,
        attacher: Optional[DeviceAttacher] = None,
        repairer: Optional[BootConfigRepairer] = None,
        resolver: Optional[LinkedCloneResolver] = None,
        converter: Optional[CloneConverter] = None,
        memory_mb: int = DEFAULT_MEMORY_MB,
        bridge: str = DEFAULT_BRIDGE,
    ) -> None:
        self.hypervisor = hypervisor
        self.decisions = decisions
        self.cache = cache
        self.attacher = attacher or DeviceAttacher(hypervisor)
        self.repairer = repairer or BootConfigRepairer()
        self.resolver = resolver or LinkedCloneResolver(hypervisor)
        self.converter = converter or CloneConverter(hypervisor)
        self.memory_mb = memory_mb
        self.bridge = bridge

    def run(self, templates: Sequence[TemplateSpec], pool: StoragePool) -> BatchResult:
        result = BatchResult()
        for spec in templates:
            result.add(self.process(spec, pool))
        result.leaked_devices.extend(self.attacher.leaked_devices)
        return result

    def process(self, spec: TemplateSpec, pool: StoragePool) -> TemplateOutcome:
        template = Template(name=spec.name, vmid=spec.vmid)
        log("INFO", f"Processing template: {spec.name} (VMID: {spec.vmid})")

        try:
            existing = self._find_existing(spec)
            if existing is not None:
                self._clear_dependents(spec, existing)
            entry = self.cache.ensure(spec, use_cached=lambda path: self.decisions.use_cached_image(spec, path))
            if existing is not None:
                self._destroy(existing.vmid)
                log("SUCCESS", f"Deleted existing template {existing.vmid}")
        except _Skipped as exc:
            log("INFO", f"Skipping template: {spec.name} ({exc})")
            return TemplateOutcome(spec.name, spec.vmid, "skipped", template.state, str(exc))
        except (ManagerError, OSError) as exc:
            log("ERROR", f"Template '{spec.name}': {exc}")
            return TemplateOutcome(spec.name, spec.vmid, "failed", LifecycleState.FAILED, str(exc))

        try:
            self._build(spec, pool, entry, template)
        except (ManagerError, OSError) as exc:
            failed_in = template.state
            template.state = LifecycleState.FAILED
            log("ERROR", f"Template '{spec.name}' failed while {failed_in.value.lower()}: {exc}")
            if failed_in != LifecycleState.ABSENT:
                self._discard_partial(spec.vmid)
            return TemplateOutcome(spec.name, spec.vmid, "failed", template.state, str(exc))

        log("SUCCESS", f"Template '{spec.name}' created successfully!")
        status = "updated" if existing is not None else "created"
        return TemplateOutcome(spec.name, spec.vmid, status, template.state)

    # -- Absent ---------------------------------------------------------

    def _find_existing(self, spec: TemplateSpec) -> Optional[VMSummary]:
        vms = self.hypervisor.list_vms()
        for vm in vms:
            if vm.vmid == spec.vmid and vm.name != spec.name:
                raise ImportFailed(
                    f"VMID {spec.vmid} is used by '{vm.name}', not '{spec.name}'; refusing to replace it"
                )
        existing = next((vm for vm in vms if vm.name == spec.name), None)
        if existing is None:
            return None
        log("WARN", f"Template '{spec.name}' already exists (VMID: {existing.vmid})")
        if not self.decisions.should_update(spec, existing):
            raise _Skipped("update declined")
        return existing

    def _clear_dependents(self, spec: TemplateSpec, existing: VMSummary) -> None:
        log("INFO", "Checking for VMs using this template (linked clones)...")
        clones = self.resolver.find(existing.vmid)
        if not clones:
            return
        for clone in clones:
            log("WARN", f"  - VM {clone.vmid}: {clone.name}")
        if not self.decisions.should_convert_clones(spec, clones):
            raise _Skipped(str(DependentCloneBlocking(existing.vmid, clones)))
        report = self.converter.convert(clones)
        if not report.ok:
            raise CloneConversionFailed(report)
        log("SUCCESS", "All linked clones converted to full clones")

    def _destroy(self, vmid: int) -> None:
        remaining = self.resolver.find(vmid)
        if remaining:
            raise DependentCloneBlocking(vmid, remaining)
        self.hypervisor.destroy_vm(vmid, purge=True)

    # -- Importing / Repairing / Templated --------------------------------

    def _build(self, spec: TemplateSpec, pool: StoragePool, entry: CacheEntry, template: Template) -> None:
        log("INFO", f"Creating VM {spec.vmid}...")
        self.hypervisor.create_vm(spec.vmid, spec.name, self.memory_mb, self.bridge)
        template.state = LifecycleState.IMPORTING

        volume = self._import(spec, pool, entry)

        template.state = LifecycleState.REPAIRING
        with self.attacher.attached(volume, pool.kind) as attached:
            self.repairer.repair(attached)

        log("INFO", "Converting VM to template...")
        try:
            self.hypervisor.convert_to_template(spec.vmid)
        except HypervisorError as exc:
            raise TemplateConversionFailed(f"Failed to convert VM {spec.vmid} to a template: {exc}") from exc
        template.state = LifecycleState.TEMPLATED

    def _import(self, spec: TemplateSpec, pool: StoragePool, entry: CacheEntry) -> Volume:
        log("INFO", f"Importing disk to storage: {pool.name}...")
        try:
            volume = self.hypervisor.import_disk(spec.vmid, entry.local_path, pool)
        except HypervisorError as exc:
            raise ImportFailed(f"Failed to import {entry.local_path.name}: {exc}") from exc
        log("INFO", f"Using disk: {volume.volume_id}")

        self.hypervisor.set_disk_and_boot(spec.vmid, volume, self.aux_devices(pool))
        config = self.hypervisor.get_vm_config(spec.vmid)
        if not config.get(BOOT_DISK_KEY):
            raise ImportFailed(f"Disk not attached correctly: {BOOT_DISK_KEY} missing from VM {spec.vmid}")
        log("SUCCESS", f"Disk attached: {BOOT_DISK_KEY}: {config[BOOT_DISK_KEY]}")
        return volume

    @staticmethod
    def aux_devices(pool: StoragePool) -> Dict[str, str]:
        return {
            CLOUD_INIT_DISK_KEY: f"{pool.name}:cloudinit",
            "serial0": "socket",
            "vga": "serial0",
            "agent": "enabled=1",
        }

    def _discard_partial(self, vmid: int) -> None:
        try:
            self._destroy(vmid)
        except ManagerError as exc:
            log("ERROR", f"Could not remove partially created VM {vmid}: {exc}")
            return
        log("INFO", f"Removed partially created VM {vmid}")
