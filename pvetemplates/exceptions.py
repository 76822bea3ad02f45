"""Custom exceptions for pve-templates."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ParseError(ManagerError):
    """CLI output did not have the expected shape."""


class StorageSelectionError(ManagerError):
    """No usable storage pool could be selected."""


class HypervisorError(ManagerError):
    """A qm/pvesm call failed."""

    def __init__(self, op: str, vmid: Optional[int], cause: object) -> None:
        self.op = op
        self.vmid = vmid
        self.cause = cause
        target = f" (VM {vmid})" if vmid is not None else ""
        super().__init__(f"{op} failed{target}: {cause}")


class DownloadFailed(ManagerError):
    pass


class ImportFailed(ManagerError):
    pass


class AttachFailed(ManagerError):
    pass


class NoPartitionFound(AttachFailed):
    pass


class NoFreeDeviceSlot(AttachFailed):
    """Every loop/nbd slot on the host is busy. Retry once slots are freed."""


class DeviceReleaseFailed(ManagerError):
    """Detaching a device failed; the slot is probably leaked."""

    def __init__(self, device: str, cause: object) -> None:
        self.device = device
        self.cause = cause
        super().__init__(f"Failed to release {device}: {cause}")


class MountFailed(ManagerError):
    pass


class DependentCloneBlocking(ManagerError):
    """The template still backs linked clones and must not be destroyed."""

    def __init__(self, template_vmid: int, clones) -> None:
        self.template_vmid = template_vmid
        self.clones = list(clones)
        names = ", ".join(f"{c.vmid} ({c.name})" for c in self.clones)
        super().__init__(f"Template {template_vmid} is still used by linked clones: {names}")


class CloneConversionFailed(ManagerError):
    def __init__(self, report) -> None:
        self.report = report
        failed = ", ".join(str(c.vmid) for c in report.failed) or "-"
        pending = ", ".join(str(c.vmid) for c in report.pending) or "-"
        super().__init__(f"Linked clone conversion failed (failed: {failed}; not attempted: {pending})")


class TemplateConversionFailed(ManagerError):
    pass
