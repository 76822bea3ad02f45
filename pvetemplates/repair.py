"""Boot configuration repair for freshly imported cloud images.

Cloud images name their root filesystem by PARTUUID or by the
``cloudimg-rootfs`` label. Both are baked into the image and break once the
disk is cloned onto another storage backend, so every reference is pointed at
the stable virtio-scsi device path instead. The rewrite is a literal pattern
replace: unrelated bytes are kept as they are and files without a match are
never written.
"""

from __future__ import annotations

import re
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from pvetemplates.constants import MOUNT_PREFIX, STABLE_ROOT_DEVICE
from pvetemplates.exceptions import MountFailed
from pvetemplates.models import AttachedVolume, RepairReport
from pvetemplates.utils import command_error, log, run

_FSTAB_ROOT_REFS = re.compile(r"PARTUUID=\S+|LABEL=cloudimg-rootfs(?=\s|$)")
_KERNEL_ROOT_REFS = re.compile(r"root=(?:PARTUUID=[^\s\"']+|LABEL=cloudimg-rootfs(?=[\s\"']|$))")

GRUB_CFG_PATHS = ("boot/grub/grub.cfg", "boot/grub2/grub.cfg")
GRUB_DEFAULTS = "etc/default/grub"
GRUB_DEFAULTS_DIR = "etc/default/grub.d"
FSTAB = "etc/fstab"


def rewrite_fstab(text: str) -> Tuple[str, int]:
    """Point root references at the stable device and disable /boot/efi.

    Returns the new text and the number of /boot/efi lines commented out.
    """
    out: List[str] = []
    commented = 0
    for line in text.splitlines(keepends=True):
        stripped = line.lstrip()
        if not stripped.strip() or stripped.startswith("#"):
            out.append(line)
            continue
        fields = stripped.split()
        if len(fields) >= 2 and fields[1].rstrip("/") == "/boot/efi":
            # BIOS guests have no ESP to mount
            out.append("# " + line)
            commented += 1
            continue
        out.append(_FSTAB_ROOT_REFS.sub(STABLE_ROOT_DEVICE, line))
    return "".join(out), commented


def rewrite_kernel_root(text: str) -> str:
    """``root=PARTUUID=...`` / ``root=LABEL=cloudimg-rootfs`` -> ``root=/dev/sda1``."""
    return _KERNEL_ROOT_REFS.sub(f"root={STABLE_ROOT_DEVICE}", text)


def _rewrite_file(path: Path, transform: Callable[[str], str]) -> bool:
    """Apply ``transform``; write back only when the content changed."""
    if not path.is_file():
        return False
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as fh:
        original = fh.read()
    updated = transform(original)
    if updated == original:
        return False
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
        fh.write(updated)
    return True


def repair_root(root: Path) -> RepairReport:
    """Rewrite boot references below a mounted guest root filesystem."""
    report = RepairReport()
    commented = 0

    def _fstab(text: str) -> str:
        nonlocal commented
        updated, commented = rewrite_fstab(text)
        return updated

    if _rewrite_file(root / FSTAB, _fstab):
        report.changed_files.append("/" + FSTAB)
        report.commented_mounts = commented

    targets = [root / rel for rel in GRUB_CFG_PATHS]
    targets.append(root / GRUB_DEFAULTS)
    grub_d = root / GRUB_DEFAULTS_DIR
    if grub_d.is_dir():
        targets.extend(sorted(grub_d.glob("*.cfg")))
    for target in targets:
        if _rewrite_file(target, rewrite_kernel_root):
            report.changed_files.append("/" + target.relative_to(root).as_posix())
    return report


class BootConfigRepairer:
    """Mount an attached volume's root partition and repair it."""

    def __init__(self, mount_base: Optional[Path] = None) -> None:
        self.mount_base = mount_base

    def repair(self, attached: AttachedVolume) -> RepairReport:
        with self.mounted(attached.root_partition) as root:
            report = self.repair_root(root)
        if report.noop:
            log("INFO", f"RepairNoop: {attached.volume.volume_id} already uses stable boot references")
        else:
            log("SUCCESS", f"Patched boot references in {', '.join(report.changed_files)}")
            if report.commented_mounts:
                log("INFO", f"Disabled {report.commented_mounts} /boot/efi mount(s) in fstab")
        return report

    def repair_root(self, root: Path) -> RepairReport:
        return repair_root(root)

    @contextmanager
    def mounted(self, partition: str) -> Iterator[Path]:
        """Mount on a fresh directory; sync and unmount on every exit path."""
        try:
            mountpoint = Path(tempfile.mkdtemp(prefix=MOUNT_PREFIX, dir=self.mount_base))
        except OSError as exc:
            raise MountFailed(f"Cannot create a mountpoint for {partition}: {exc}") from exc
        try:
            run(["mount", partition, str(mountpoint)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            mountpoint.rmdir()
            raise MountFailed(f"Cannot mount {partition}: {command_error(exc)}") from exc
        try:
            yield mountpoint
        except BaseException:
            try:
                self._unmount(mountpoint)
            except MountFailed as exc:
                log("ERROR", f"{exc} (original error takes precedence)")
            raise
        else:
            self._unmount(mountpoint)

    @staticmethod
    def _unmount(mountpoint: Path) -> None:
        errors = []
        for cmd in (["sync"], ["umount", str(mountpoint)]):
            try:
                run(cmd, capture_output=True)
            except (subprocess.CalledProcessError, OSError) as exc:
                reason = command_error(exc)
                errors.append(f"{' '.join(cmd)}: {reason}")
        if errors:
            raise MountFailed(f"Failed to unmount {mountpoint}: {'; '.join(errors)}")
        # rmdir only removes an empty directory, never guest files
        try:
            mountpoint.rmdir()
        except OSError as exc:
            raise MountFailed(f"Unmounted {mountpoint} but could not remove it: {exc}") from exc
