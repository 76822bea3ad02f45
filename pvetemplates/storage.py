"""Storage pool classification and volume identifiers for pve-templates."""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from pvetemplates.constants import (
    BLOCK_DEVICE_TYPES,
    FILE_BACKED_TYPES,
    STORAGE_TYPE_DISPLAY,
    VOLUME_ID_RE,
)
from pvetemplates.exceptions import ParseError, StorageSelectionError
from pvetemplates.models import StorageKind, StoragePool, Volume
from pvetemplates.utils import log


def classify_storage(name: str, backend_type: Optional[str] = None) -> StorageKind:
    """Decide whether a pool holds image files or raw block devices.

    The backend type reported by ``pvesm status`` wins when it is one of the
    known types; otherwise the pool name is used as a hint.
    """
    kind = (backend_type or "").strip().lower()
    if kind in FILE_BACKED_TYPES:
        return StorageKind.FILE_BACKED
    if kind in BLOCK_DEVICE_TYPES:
        return StorageKind.BLOCK_DEVICE
    if name == "local":
        return StorageKind.FILE_BACKED
    if "lvm" in name or "zfs" in name:
        return StorageKind.BLOCK_DEVICE
    return StorageKind.UNKNOWN


def describe_storage(pool: StoragePool) -> str:
    if pool.backend_type in STORAGE_TYPE_DISPLAY:
        return STORAGE_TYPE_DISPLAY[pool.backend_type]
    if pool.kind == StorageKind.FILE_BACKED:
        return "Directory (files)"
    if pool.kind == StorageKind.BLOCK_DEVICE:
        return "Block device"
    return "Unknown"


def parse_pvesm_status(output: str) -> List[StoragePool]:
    """Parse ``pvesm status`` into pools.

    Expected header: ``Name Type Status Total Used Available %``. Some versions
    append a ``Content`` column; when present it is kept on the pool.
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return []
    header = lines[0].split()
    if len(header) < 3 or header[0].lower() != "name" or header[1].lower() != "type":
        raise ParseError(f"Unexpected pvesm status header: {lines[0]!r}")
    columns = [col.lower() for col in header]
    content_idx = columns.index("content") if "content" in columns else None
    status_idx = columns.index("status")

    pools: List[StoragePool] = []
    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 3:
            raise ParseError(f"Malformed pvesm status row: {line!r}")
        name, backend_type = fields[0], fields[1].lower()
        content: Tuple[str, ...] = ()
        if content_idx is not None and content_idx < len(fields):
            content = tuple(item for item in fields[content_idx].split(",") if item)
        pools.append(
            StoragePool(
                name=name,
                kind=classify_storage(name, backend_type),
                backend_type=backend_type,
                content=content,
                active=fields[status_idx].lower() == "active",
            )
        )
    return pools


def image_capable(pools: Sequence[StoragePool]) -> List[StoragePool]:
    """Pools that advertise VM images; all pools if none advertise content."""
    with_images = [pool for pool in pools if "images" in pool.content]
    if with_images:
        return with_images
    return list(pools)


def select_pool(
    pools: Sequence[StoragePool],
    requested: Optional[str] = None,
    confirm_unknown: Optional[Callable[[StoragePool], bool]] = None,
) -> StoragePool:
    """Pick the pool templates are imported into."""
    if not pools:
        raise StorageSelectionError("No storage pools found. Please configure storage in Proxmox first.")

    if requested:
        for pool in pools:
            if pool.name == requested:
                if pool.kind == StorageKind.UNKNOWN:
                    if confirm_unknown is None or not confirm_unknown(pool):
                        raise StorageSelectionError(
                            f"Storage '{requested}' has an unknown backend type; explicit confirmation is required"
                        )
                    log("WARN", f"Using storage '{requested}' with unknown backend type")
                return pool
        available = ", ".join(pool.name for pool in pools)
        raise StorageSelectionError(f"Storage '{requested}' not found. Available: {available}")

    candidates = [pool for pool in pools if pool.active] or list(pools)
    for pool in candidates:
        if pool.kind == StorageKind.FILE_BACKED and pool.name == "local":
            return pool
    for pool in candidates:
        if pool.kind == StorageKind.FILE_BACKED:
            return pool
    for pool in candidates:
        if pool.kind != StorageKind.UNKNOWN and not pool.thin:
            return pool
    for pool in candidates:
        if pool.thin:
            log("WARN", f"Only thin-provisioned LVM is available; using '{pool.name}' (not recommended for templates)")
            return pool
    raise StorageSelectionError(
        "No storage pool with a known backend type; pass --storage explicitly to use one of: "
        + ", ".join(pool.name for pool in pools)
    )


def build_volume_id(
    pool: str,
    vmid: int,
    disk_index: int = 0,
    kind: StorageKind = StorageKind.FILE_BACKED,
    fmt: Optional[str] = None,
    base: bool = False,
) -> str:
    """Canonical Proxmox volume id for a VM disk.

    A volume with ``fmt`` set is file backed regardless of ``kind``.
    """
    prefix = "base" if base else "vm"
    disk = f"{prefix}-{vmid}-disk-{disk_index}"
    if fmt:
        return f"{pool}:{vmid}/{disk}.{fmt}"
    if kind == StorageKind.FILE_BACKED:
        raise ValueError("File backed volumes need a format extension")
    return f"{pool}:{disk}"


def parse_volume_id(volume_id: str) -> Volume:
    """Inverse of :func:`build_volume_id`; disk options after a comma are ignored."""
    raw = volume_id.strip().split(",", 1)[0]
    match = VOLUME_ID_RE.match(raw)
    if not match:
        raise ParseError(f"Not a VM disk volume id: {volume_id!r}")
    vmid = int(match.group("vmid"))
    if match.group("dir") is not None and int(match.group("dir")) != vmid:
        raise ParseError(f"Volume directory does not match its VM id: {volume_id!r}")
    if (match.group("dir") is None) != (match.group("ext") is None):
        raise ParseError(f"Volume id mixes file and block layouts: {volume_id!r}")
    return Volume(
        pool=match.group("pool"),
        vmid=vmid,
        disk_index=int(match.group("index")),
        fmt=match.group("ext"),
        base=match.group("prefix") == "base",
    )


def expected_volume_ids(pool: StoragePool, vmid: int, disk_index: int = 0) -> Iterable[str]:
    """Ids an import may have produced, most likely first."""
    if pool.kind == StorageKind.BLOCK_DEVICE:
        yield build_volume_id(pool.name, vmid, disk_index, kind=StorageKind.BLOCK_DEVICE)
        return
    for fmt in ("raw", "qcow2"):
        yield build_volume_id(pool.name, vmid, disk_index, fmt=fmt)
