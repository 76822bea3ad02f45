"""Shared test fixtures: an in-memory Proxmox node and scripted collaborators."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from pvetemplates.cache import ImageCache
from pvetemplates.exceptions import HypervisorError
from pvetemplates.models import AttachedVolume, StorageKind, StoragePool, TemplateSpec, Volume, VMSummary
from pvetemplates.repair import BootConfigRepairer


class FakeHypervisor:
    """Keeps VMs in a dict and records every call as ``(op, *args)``."""

    def __init__(self, pools: Optional[List[StoragePool]] = None) -> None:
        self.vms: Dict[int, Dict] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.ignore_shutdown: set = set()
        self.pools = pools or [StoragePool("local", StorageKind.FILE_BACKED, "dir", ("images",))]

    def add_vm(self, vmid: int, name: str, status: str = "stopped", **config: str) -> None:
        cfg = {"name": name}
        cfg.update(config)
        self.vms[vmid] = {"name": name, "status": status, "config": cfg}

    def ops(self, op: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == op]

    def _record(self, op: str, *args) -> None:
        self.calls.append((op,) + args)
        if op in self.failures:
            raise self.failures[op]

    def _vm(self, op: str, vmid: int) -> Dict:
        if vmid not in self.vms:
            raise HypervisorError(op, vmid, f"Configuration file 'nodes/pve/qemu-server/{vmid}.conf' does not exist")
        return self.vms[vmid]

    def create_vm(self, vmid, name, memory_mb, bridge):
        self._record("create", vmid, name)
        if vmid in self.vms:
            raise HypervisorError("create", vmid, f"VM {vmid} already exists")
        self.add_vm(vmid, name, memory=str(memory_mb), net0=f"virtio,bridge={bridge}")

    def import_disk(self, vmid, image_path, pool):
        self._record("importdisk", vmid, str(image_path), pool.name)
        fmt = "qcow2" if pool.kind == StorageKind.FILE_BACKED else None
        volume = Volume(pool=pool.name, vmid=vmid, fmt=fmt)
        self._vm("importdisk", vmid)["config"]["unused0"] = volume.volume_id
        return volume

    def set_disk_and_boot(self, vmid, volume, aux_devices):
        self._record("set", vmid, volume.volume_id, dict(aux_devices))
        config = self._vm("set", vmid)["config"]
        config.pop("unused0", None)
        config["scsihw"] = "virtio-scsi-pci"
        config["scsi0"] = volume.volume_id
        config.update(aux_devices)
        config["boot"] = "order=scsi0"

    def convert_to_template(self, vmid):
        self._record("template", vmid)
        self._vm("template", vmid)["config"]["template"] = "1"

    def destroy_vm(self, vmid, purge=True):
        self._record("destroy", vmid)
        self._vm("destroy", vmid)
        del self.vms[vmid]

    def list_vms(self):
        self._record("list")
        return [VMSummary(vmid, vm["name"], vm["status"]) for vmid, vm in sorted(self.vms.items())]

    def get_vm_config(self, vmid):
        self._record("config", vmid)
        return dict(self._vm("config", vmid)["config"])

    def vm_status(self, vmid):
        self._record("status", vmid)
        return self._vm("status", vmid)["status"]

    def stop_vm(self, vmid, graceful=True, timeout=30):
        self._record("shutdown" if graceful else "stop", vmid)
        vm = self._vm("stop", vmid)
        if graceful and vmid in self.ignore_shutdown:
            return
        vm["status"] = "stopped"

    def start_vm(self, vmid):
        self._record("start", vmid)
        self._vm("start", vmid)["status"] = "running"

    def move_disk(self, vmid, disk_key, target_pool):
        self._record("move_disk", vmid, disk_key, target_pool)
        config = self._vm("move_disk", vmid)["config"]
        config[disk_key] = f"{target_pool}:vm-{vmid}-disk-0"

    def list_storage(self):
        self._record("pvesm status")
        return list(self.pools)

    def volume_path(self, volume):
        self._record("pvesm path", volume.volume_id)
        return Path("/dev/fake") / volume.volume_id.replace(":", "/")


class FakeAttacher:
    """Hands out ``root`` as the root partition and counts attach/release."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.attach_error: Optional[Exception] = None
        self.attached_volumes: List[Volume] = []
        self.releases = 0
        self.leaked_devices: List[str] = []

    @contextmanager
    def attached(self, volume, kind):
        if self.attach_error is not None:
            raise self.attach_error
        self.attached_volumes.append(volume)
        attached = AttachedVolume(volume, "/dev/loop9", str(self.root), "loop", _release=self._release)
        try:
            yield attached
        finally:
            attached.release()

    def _release(self) -> None:
        self.releases += 1


class DirectoryRepairer(BootConfigRepairer):
    """Treats the root partition path as an already mounted directory."""

    @contextmanager
    def mounted(self, partition):
        yield Path(partition)


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def local_pool() -> StoragePool:
    return StoragePool("local", StorageKind.FILE_BACKED, "dir", ("images", "iso"))


@pytest.fixture
def lvm_pool() -> StoragePool:
    return StoragePool("local-lvm", StorageKind.BLOCK_DEVICE, "lvm", ("images",))


@pytest.fixture
def ubuntu_spec() -> TemplateSpec:
    return TemplateSpec(
        name="ubuntu-22.04-standard",
        vmid=9000,
        url="https://cloud-images.ubuntu.com/releases/22.04/release/ubuntu-22.04-server-cloudimg-amd64.img",
        filename="ubuntu-22.04-server-cloudimg-amd64.img",
    )


@pytest.fixture
def debian_spec() -> TemplateSpec:
    return TemplateSpec(
        name="debian-12-standard",
        vmid=9002,
        url="https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2",
        filename="debian-12-generic-amd64.qcow2",
    )


@pytest.fixture
def guest_root(tmp_path) -> Path:
    """A guest root filesystem as shipped by an Ubuntu cloud image."""
    root = tmp_path / "guest"
    (root / "etc" / "default" / "grub.d").mkdir(parents=True)
    (root / "boot" / "grub").mkdir(parents=True)
    (root / "etc" / "fstab").write_text(
        "LABEL=cloudimg-rootfs\t/\t ext4\tdiscard,errors=remount-ro\t0 1\n"
        "LABEL=UEFI\t/boot/efi\tvfat\tumask=0077\t0 1\n"
    )
    (root / "boot" / "grub" / "grub.cfg").write_text(
        "menuentry 'Ubuntu' {\n"
        "\tlinux /boot/vmlinuz root=LABEL=cloudimg-rootfs ro console=tty1 console=ttyS0\n"
        "}\n"
    )
    (root / "etc" / "default" / "grub").write_text('GRUB_CMDLINE_LINUX_DEFAULT="quiet"\n')
    (root / "etc" / "default" / "grub.d" / "40-force-partuuid.cfg").write_text(
        "GRUB_FORCE_PARTUUID=1234-01\n"
        'GRUB_CMDLINE_LINUX="root=PARTUUID=1234-01"\n'
    )
    return root


@pytest.fixture
def image_cache(tmp_path, ubuntu_spec, debian_spec) -> ImageCache:
    """Cache directory already holding every test image."""
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    for spec in (ubuntu_spec, debian_spec):
        (cache_dir / spec.filename).write_bytes(b"QFI\xfb" + b"\0" * 60)
    return ImageCache(cache_dir, retries=1, backoff=0)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads; cleared for a clean slate.
_PARSE_ENV_VARS = [
    "PROXMOX_STORAGE",
    "PROXMOX_IMAGE_CACHE",
    "TEMPLATE_MEMORY",
    "TEMPLATE_BRIDGE",
    "CLONE_STOP_TIMEOUT",
    "PARTITION_WAIT_TIMEOUT",
    "DOWNLOAD_RETRIES",
    "RECREATE_ALL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fake_attacher(tmp_path, guest_root) -> FakeAttacher:
    return FakeAttacher(guest_root)


@pytest.fixture
def directory_repairer() -> DirectoryRepairer:
    return DirectoryRepairer()
