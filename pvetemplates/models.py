"""Data models for pve-templates."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Tuple


class StorageKind(str, Enum):
    FILE_BACKED = "FileBacked"
    BLOCK_DEVICE = "BlockDevice"
    UNKNOWN = "Unknown"


class LifecycleState(str, Enum):
    ABSENT = "Absent"
    IMPORTING = "Importing"
    REPAIRING = "Repairing"
    TEMPLATED = "Templated"
    FAILED = "Failed"


class RunState(str, Enum):
    STOPPED = "Stopped"
    RUNNING = "Running"


@dataclass(frozen=True)
class StoragePool:
    name: str
    kind: StorageKind
    backend_type: str = ""
    content: Tuple[str, ...] = ()
    active: bool = True

    @property
    def thin(self) -> bool:
        return self.backend_type == "lvmthin"


@dataclass(frozen=True)
class Volume:
    pool: str
    vmid: int
    disk_index: int = 0
    fmt: Optional[str] = None  # file extension for FileBacked pools
    base: bool = False  # base-<vmid>-disk-N once the VM is a template

    @property
    def volume_id(self) -> str:
        from pvetemplates.storage import build_volume_id

        kind = StorageKind.FILE_BACKED if self.fmt else StorageKind.BLOCK_DEVICE
        return build_volume_id(self.pool, self.vmid, self.disk_index, kind=kind, fmt=self.fmt, base=self.base)


@dataclass
class AttachedVolume:
    volume: Volume
    device: str  # loop/nbd device, or the block device node that was scanned
    root_partition: str
    mechanism: str  # "kpartx", "loop", "nbd"
    _release: Optional[Callable[[], None]] = field(default=None, repr=False)
    released: bool = False

    def release(self) -> None:
        """Undo the attach. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        if self._release is not None:
            self._release()


@dataclass(frozen=True)
class TemplateSpec:
    """One entry of the template registry."""

    name: str
    vmid: int
    url: str
    filename: str


@dataclass
class Template:
    name: str
    vmid: int
    state: LifecycleState = LifecycleState.ABSENT


class VMSummary(NamedTuple):
    vmid: int
    name: str
    status: str = ""


@dataclass(frozen=True)
class LinkedClone:
    vmid: int
    name: str
    backing_vmid: int
    run_state: RunState = RunState.STOPPED


@dataclass
class ConversionReport:
    converted: List[LinkedClone] = field(default_factory=list)
    failed: List[LinkedClone] = field(default_factory=list)
    pending: List[LinkedClone] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending


@dataclass(frozen=True)
class CacheEntry:
    source_url: str
    local_path: Path
    size_bytes: int


@dataclass
class RepairReport:
    changed_files: List[str] = field(default_factory=list)
    commented_mounts: int = 0

    @property
    def noop(self) -> bool:
        return not self.changed_files


@dataclass
class TemplateOutcome:
    name: str
    vmid: int
    status: str  # "created", "updated", "skipped", "failed"
    state: LifecycleState
    message: str = ""


@dataclass
class BatchResult:
    outcomes: List[TemplateOutcome] = field(default_factory=list)
    leaked_devices: List[str] = field(default_factory=list)

    def add(self, outcome: TemplateOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def success_count(self) -> int:
        return self.count("created") + self.count("updated")

    @property
    def failure_count(self) -> int:
        return self.count("failed")

    @property
    def ok(self) -> bool:
        return self.failure_count == 0


@dataclass
class RunConfig:
    templates: Tuple[TemplateSpec, ...]
    storage: Optional[str]
    cache_dir: Path
    memory_mb: int
    bridge: str
    clone_stop_timeout: int
    partition_wait_timeout: float
    download_retries: int
    recreate_all: bool = False
