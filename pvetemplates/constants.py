"""Global constants and path configuration for pve-templates."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("TEMPLATES_CONFIG") or Path(__file__).with_name("templates.yaml"))
DEFAULT_CACHE_DIR = Path("/tmp/proxmox-images")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Template VM shell defaults
DEFAULT_MEMORY_MB = 2048
DEFAULT_BRIDGE = "vmbr0"
BOOT_DISK_KEY = "scsi0"
CLOUD_INIT_DISK_KEY = "ide2"
SCSI_CONTROLLER = "virtio-scsi-pci"

# Stable device path cloned guests boot from (virtio-scsi, first disk, first partition)
STABLE_ROOT_DEVICE = "/dev/sda1"
ROOT_PARTITION_INDEX = 1

CLONE_STOP_TIMEOUT = 30
PARTITION_WAIT_TIMEOUT = 10.0
DOWNLOAD_RETRIES = 3

VMID_MIN = 100
VMID_MAX = 999999999

# pvesm backend types that map directly onto a storage kind
FILE_BACKED_TYPES = {"dir"}
BLOCK_DEVICE_TYPES = {"lvm", "lvmthin", "zfs", "zfspool"}
THIN_LVM_TYPE = "lvmthin"

STORAGE_TYPE_DISPLAY = {
    "dir": "Directory (files)",
    "lvm": "LVM (block device)",
    "lvmthin": "LVM-thin (block device)",
    "zfs": "ZFS (block device)",
    "zfspool": "ZFS (block device)",
}

# local:9000/vm-9000-disk-0.qcow2, local-lvm:vm-9000-disk-0, local-lvm:base-9000-disk-0
VOLUME_ID_RE = re.compile(
    r"^(?P<pool>[A-Za-z][A-Za-z0-9._-]*):"
    r"(?:(?P<dir>\d+)/)?"
    r"(?P<prefix>vm|base)-(?P<vmid>\d+)-disk-(?P<index>\d+)"
    r"(?:\.(?P<ext>[A-Za-z0-9]+))?$"
)

# Config keys that can carry a VM disk
DISK_KEY_RE = re.compile(r"^(?:scsi|virtio|sata|ide|efidisk|tpmstate|unused)\d+$")

RAW_FORMAT = "raw"

NBD_MAX_PART = 8
SYS_BLOCK = Path("/sys/block")
MOUNT_PREFIX = "pvetpl-mnt-"

# Required host tools
HYPERVISOR_TOOLS = ("qm", "pvesm")
BLOCK_ATTACH_TOOLS = ("kpartx",)
FILE_ATTACH_TOOLS = ("losetup", "qemu-nbd")

