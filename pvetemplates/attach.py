"""Expose an imported VM disk's partitions on the host."""

from __future__ import annotations

import re
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from pvetemplates.constants import (
    NBD_MAX_PART,
    PARTITION_WAIT_TIMEOUT,
    RAW_FORMAT,
    ROOT_PARTITION_INDEX,
    SYS_BLOCK,
)
from pvetemplates.exceptions import (
    AttachFailed,
    DeviceReleaseFailed,
    HypervisorError,
    NoFreeDeviceSlot,
    NoPartitionFound,
)
from pvetemplates.hypervisor import HypervisorClient
from pvetemplates.models import AttachedVolume, StorageKind, Volume
from pvetemplates.utils import command_error, log, run, wait_for_path

_KPARTX_MAP_RE = re.compile(r"^add map (?P<name>\S+)")
_NO_FREE_LOOP_MARKERS = ("could not find any free loop device", "no free loop device")


class DeviceAttacher:
    """Attach volumes as partitioned devices.

    Block volumes get their partition table mapped with kpartx, raw image files
    go through a loop device and every other image format through qemu-nbd.
    Device release failures are remembered in ``leaked_devices`` since each one
    costs a loop/nbd slot until an operator cleans it up.
    """

    def __init__(
        self,
        hypervisor: HypervisorClient,
        partition_wait_timeout: float = PARTITION_WAIT_TIMEOUT,
        sys_block: Path = SYS_BLOCK,
    ) -> None:
        self.hypervisor = hypervisor
        self.partition_wait_timeout = partition_wait_timeout
        self.sys_block = sys_block
        self.leaked_devices: List[str] = []

    @contextmanager
    def attached(self, volume: Volume, kind: StorageKind) -> Iterator[AttachedVolume]:
        """Attach for the duration of the block; released on every exit path."""
        attached = self.attach(volume, kind)
        try:
            yield attached
        except BaseException:
            try:
                attached.release()
            except DeviceReleaseFailed as exc:
                log("ERROR", f"{exc} (original error takes precedence)")
            raise
        else:
            attached.release()

    def attach(self, volume: Volume, kind: StorageKind) -> AttachedVolume:
        try:
            source = self.hypervisor.volume_path(volume)
        except HypervisorError as exc:
            raise AttachFailed(f"Cannot resolve {volume.volume_id} to a host path: {exc}") from exc

        if kind == StorageKind.BLOCK_DEVICE or (kind == StorageKind.UNKNOWN and not volume.fmt):
            attached = self._attach_block(volume, source)
        else:
            if not source.is_file():
                raise AttachFailed(f"Image file for {volume.volume_id} not found at {source}")
            fmt = (volume.fmt or source.suffix.lstrip(".") or RAW_FORMAT).lower()
            if fmt == RAW_FORMAT:
                attached = self._attach_loop(volume, source)
            else:
                attached = self._attach_nbd(volume, source, fmt)

        self._await_root_partition(attached)
        log("INFO", f"Attached {volume.volume_id} via {attached.mechanism}; root partition {attached.root_partition}")
        return attached

    # -- mechanisms -----------------------------------------------------

    def _attach_block(self, volume: Volume, device: Path) -> AttachedVolume:
        if not device.exists():
            raise AttachFailed(f"Block device {device} for {volume.volume_id} does not exist yet")
        try:
            result = run(["kpartx", "-av", str(device)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise AttachFailed(f"kpartx failed on {device}: {command_error(exc)}") from exc

        maps = []
        for line in (result.stdout or "").splitlines():
            match = _KPARTX_MAP_RE.match(line.strip())
            if match:
                maps.append(match.group("name"))
        attached = AttachedVolume(
            volume=volume,
            device=str(device),
            root_partition="",
            mechanism="kpartx",
            _release=self._releaser(["kpartx", "-d", str(device)], str(device)),
        )
        root = self._pick_mapping(maps)
        if root is None:
            # No mapping: fall back to the node udev creates for the partition.
            suffix = "-part" if "/zvol/" in str(device) else "p"
            root = f"{device}{suffix}{ROOT_PARTITION_INDEX}"
        attached.root_partition = root
        return attached

    @staticmethod
    def _pick_mapping(maps: List[str]) -> Optional[str]:
        wanted = f"p{ROOT_PARTITION_INDEX}"
        for name in maps:
            if name.endswith(wanted):
                return f"/dev/mapper/{name}"
        return None

    def _attach_loop(self, volume: Volume, image: Path) -> AttachedVolume:
        try:
            result = run(["losetup", "--find", "--show", "--partscan", str(image)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            reason = command_error(exc)
            if any(marker in reason.lower() for marker in _NO_FREE_LOOP_MARKERS):
                raise NoFreeDeviceSlot(f"No free loop device for {image}") from exc
            raise AttachFailed(f"losetup failed for {image}: {reason}") from exc
        loop_dev = (result.stdout or "").strip()
        if not loop_dev:
            raise AttachFailed(f"losetup did not report a device for {image}")
        return AttachedVolume(
            volume=volume,
            device=loop_dev,
            root_partition=f"{loop_dev}p{ROOT_PARTITION_INDEX}",
            mechanism="loop",
            _release=self._releaser(["losetup", "-d", loop_dev], loop_dev),
        )

    def _attach_nbd(self, volume: Volume, image: Path, fmt: str) -> AttachedVolume:
        self._ensure_nbd_module()
        nbd_dev = self._free_nbd_device()
        try:
            run(["qemu-nbd", "--connect", nbd_dev, "--format", fmt, str(image)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise AttachFailed(f"qemu-nbd could not connect {image} to {nbd_dev}: {command_error(exc)}") from exc
        return AttachedVolume(
            volume=volume,
            device=nbd_dev,
            root_partition=f"{nbd_dev}p{ROOT_PARTITION_INDEX}",
            mechanism="nbd",
            _release=self._releaser(["qemu-nbd", "--disconnect", nbd_dev], nbd_dev),
        )

    def _ensure_nbd_module(self) -> None:
        if (self.sys_block / "nbd0").exists():
            return
        try:
            run(["modprobe", "nbd", f"max_part={NBD_MAX_PART}"], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise AttachFailed(f"Cannot load the nbd kernel module: {command_error(exc)}") from exc

    def _free_nbd_device(self) -> str:
        """First nbd slot with no server attached (no pid file, zero size)."""

        def _index(path: Path) -> int:
            digits = path.name[3:]
            return int(digits) if digits.isdigit() else -1

        for entry in sorted(self.sys_block.glob("nbd*"), key=_index):
            if _index(entry) < 0 or (entry / "pid").exists():
                continue
            try:
                size = (entry / "size").read_text().strip()
            except OSError:
                continue
            if size == "0":
                return f"/dev/{entry.name}"
        raise NoFreeDeviceSlot("No free nbd device; disconnect stale ones with 'qemu-nbd --disconnect'")

    # -- helpers --------------------------------------------------------

    def _await_root_partition(self, attached: AttachedVolume) -> None:
        if wait_for_path(Path(attached.root_partition), timeout=self.partition_wait_timeout):
            return
        try:
            attached.release()
        except DeviceReleaseFailed as exc:
            log("ERROR", str(exc))
        raise NoPartitionFound(
            f"No partition {attached.root_partition} appeared on {attached.device} "
            f"within {self.partition_wait_timeout:g}s"
        )

    def _releaser(self, cmd: List[str], device: str):
        def _release() -> None:
            try:
                run(cmd, capture_output=True)
            except (subprocess.CalledProcessError, OSError) as exc:
                self.leaked_devices.append(device)
                reason = command_error(exc)
                raise DeviceReleaseFailed(device, reason) from exc
            log("DEBUG", f"Released {device}")

        return _release
