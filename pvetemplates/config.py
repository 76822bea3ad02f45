"""Template registry loading and environment variable parsing for pve-templates."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from pvetemplates.constants import (
    CLONE_STOP_TIMEOUT,
    DEFAULT_BRIDGE,
    DEFAULT_CACHE_DIR,
    DEFAULT_CONFIG_PATH,
    DEFAULT_MEMORY_MB,
    DOWNLOAD_RETRIES,
    PARTITION_WAIT_TIMEOUT,
    VMID_MAX,
    VMID_MIN,
)
from pvetemplates.exceptions import ManagerError
from pvetemplates.models import RunConfig, TemplateSpec
from pvetemplates.utils import get_env, get_env_bool, parse_int_env

_REQUIRED_FIELDS = ("vmid", "url", "filename")


def _validate_entry(name: str, info: object) -> TemplateSpec:
    if not isinstance(info, dict):
        raise ManagerError(f"Template '{name}' must be a mapping")
    missing = [key for key in _REQUIRED_FIELDS if key not in info]
    if missing:
        raise ManagerError(f"Template '{name}' is missing: {', '.join(missing)}")

    vmid = info["vmid"]
    if isinstance(vmid, bool) or not isinstance(vmid, int):
        raise ManagerError(f"Template '{name}': vmid must be an integer (got {vmid!r})")
    if not VMID_MIN <= vmid <= VMID_MAX:
        raise ManagerError(f"Template '{name}': vmid must be between {VMID_MIN} and {VMID_MAX} (got {vmid})")

    url = str(info["url"]).strip()
    if not url.startswith(("http://", "https://")):
        raise ManagerError(f"Template '{name}': url must be http(s) (got '{url}')")

    filename = str(info["filename"]).strip()
    if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
        raise ManagerError(f"Template '{name}': filename must be a plain file name (got '{filename}')")

    return TemplateSpec(name=str(name), vmid=vmid, url=url, filename=filename)


def load_template_registry(config_path: Optional[Path] = None) -> Tuple[TemplateSpec, ...]:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ManagerError(f"Template registry missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Template registry {config_path} is not valid YAML: {exc}")
    templates = data.get("templates") if isinstance(data, dict) else None
    if not isinstance(templates, dict) or not templates:
        raise ManagerError(f"Template registry {config_path} has no 'templates' mapping")

    specs = []
    seen: Dict[int, str] = {}
    for name, info in templates.items():
        spec = _validate_entry(name, info)
        if spec.vmid in seen:
            raise ManagerError(f"Templates '{seen[spec.vmid]}' and '{spec.name}' share vmid {spec.vmid}")
        seen[spec.vmid] = spec.name
        specs.append(spec)
    return tuple(specs)


def select_templates(registry: Tuple[TemplateSpec, ...], names: Iterable[str]) -> Tuple[TemplateSpec, ...]:
    """Restrict the registry to ``names`` (registry order kept); empty means all."""
    wanted = list(dict.fromkeys(names))
    if not wanted:
        return registry
    known = {spec.name for spec in registry}
    unknown = [name for name in wanted if name not in known]
    if unknown:
        available = "\n    ".join(sorted(known))
        raise ManagerError(
            f"Unknown template(s): {', '.join(unknown)}\n"
            f"  Available templates:\n"
            f"    {available}\n"
            f"  Use --list-templates to see details."
        )
    return tuple(spec for spec in registry if spec.name in wanted)


def parse_env(config_path: Optional[Path] = None) -> RunConfig:
    templates = load_template_registry(config_path)

    storage = (get_env("PROXMOX_STORAGE") or "").strip() or None
    cache_raw = (get_env("PROXMOX_IMAGE_CACHE") or "").strip()
    cache_dir = Path(cache_raw).expanduser() if cache_raw else DEFAULT_CACHE_DIR

    memory_mb = parse_int_env("TEMPLATE_MEMORY", str(DEFAULT_MEMORY_MB), min_val=16)
    bridge = (get_env("TEMPLATE_BRIDGE") or "").strip() or DEFAULT_BRIDGE
    clone_stop_timeout = parse_int_env("CLONE_STOP_TIMEOUT", str(CLONE_STOP_TIMEOUT), min_val=1, max_val=3600)
    partition_wait = parse_int_env("PARTITION_WAIT_TIMEOUT", str(int(PARTITION_WAIT_TIMEOUT)), min_val=1, max_val=300)
    download_retries = parse_int_env("DOWNLOAD_RETRIES", str(DOWNLOAD_RETRIES), min_val=1, max_val=20)

    return RunConfig(
        templates=templates,
        storage=storage,
        cache_dir=cache_dir,
        memory_mb=memory_mb,
        bridge=bridge,
        clone_stop_timeout=clone_stop_timeout,
        partition_wait_timeout=float(partition_wait),
        download_retries=download_retries,
        recreate_all=get_env_bool("RECREATE_ALL", False),
    )
