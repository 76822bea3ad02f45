"""CLI entry point for pve-templates."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional, Sequence

from pvetemplates.attach import DeviceAttacher
from pvetemplates.cache import ImageCache
from pvetemplates.clones import CloneConverter, LinkedCloneResolver
from pvetemplates.config import load_template_registry, parse_env, select_templates
from pvetemplates.constants import (
    BLOCK_ATTACH_TOOLS,
    FILE_ATTACH_TOOLS,
    HYPERVISOR_TOOLS,
)
from pvetemplates.exceptions import ManagerError
from pvetemplates.hypervisor import HypervisorClient, QemuServerClient
from pvetemplates.models import BatchResult, RunConfig, StorageKind, StoragePool, TemplateSpec
from pvetemplates.orchestrator import AutoDecisions, PromptDecisions, TemplateLifecycleOrchestrator
from pvetemplates.repair import BootConfigRepairer
from pvetemplates.storage import describe_storage, image_capable, select_pool
from pvetemplates.utils import log, missing_tools, prompt_yes_no

_STATUS_COLOURS = {
    "created": "\033[0;32m",
    "updated": "\033[0;32m",
    "skipped": "\033[1;33m",
    "failed": "\033[0;31m",
}


def list_templates(config_path: Optional[Path] = None) -> None:
    """Print the template registry."""
    registry = load_template_registry(config_path)
    max_key = max(len(spec.name) for spec in registry)
    for spec in registry:
        print(f"  {spec.name:<{max_key}}  vmid={spec.vmid}  {spec.filename}")


def show_config(cfg: RunConfig) -> None:
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name == "templates":
            print(f"  {field.name}: {', '.join(spec.name for spec in value)}")
        else:
            print(f"  {field.name}: {value}")


def check_prerequisites(kind: Optional[StorageKind] = None) -> None:
    """Fail early when a host tool the run depends on is missing."""
    tools = list(HYPERVISOR_TOOLS)
    if kind == StorageKind.BLOCK_DEVICE:
        tools.extend(BLOCK_ATTACH_TOOLS)
    elif kind is not None:
        tools.extend(FILE_ATTACH_TOOLS)
    missing = missing_tools(tools)
    if missing:
        raise ManagerError(
            f"Required tools not found: {', '.join(missing)}. This must run on a Proxmox VE node as root."
        )


def resolve_storage(
    hypervisor: HypervisorClient,
    requested: Optional[str],
    confirm_unknown,
) -> StoragePool:
    pools = image_capable(hypervisor.list_storage())
    log("INFO", "Available storage pools:")
    for index, pool in enumerate(pools, start=1):
        state = "" if pool.active else ", inactive"
        print(f"  [{index}] {pool.name} ({describe_storage(pool)}{state})", flush=True)
    pool = select_pool(pools, requested=requested, confirm_unknown=confirm_unknown)
    log("INFO", f"Selected storage: {pool.name} (type: {pool.backend_type or pool.kind.value})")
    return pool


def print_summary(result: BatchResult) -> None:
    """Per-template status lines and totals, framed like a banner."""
    lines: List[str] = []
    for outcome in result.outcomes:
        detail = f" - {outcome.message}" if outcome.message else ""
        lines.append(f"  {outcome.status.upper():<8} {outcome.name} (VMID {outcome.vmid}){detail}")
    lines.append("")
    lines.append(
        f"  Created: {result.count('created')}  Updated: {result.count('updated')}  "
        f"Skipped: {result.count('skipped')}  Failed: {result.failure_count}"
    )
    if result.leaked_devices:
        lines.append(f"  Leaked devices (detach manually): {', '.join(result.leaked_devices)}")

    border = "=" * (max(len(line) for line in lines) + 2)
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{border}{reset}", flush=True)
    for line, outcome in zip(lines, result.outcomes):
        print(f"{_STATUS_COLOURS.get(outcome.status, '')}{line}{reset}", flush=True)
    for line in lines[len(result.outcomes):]:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{border}{reset}", flush=True)


def print_plan(templates: Sequence[TemplateSpec], pool: StoragePool, cfg: RunConfig) -> None:
    log("INFO", "This will create/update the following templates:")
    for spec in templates:
        print(f"  - {spec.name} (VMID {spec.vmid}) from {spec.url}", flush=True)
    log("INFO", f"Storage: {pool.name} ({describe_storage(pool)}) | Cache: {cfg.cache_dir}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create or update Proxmox VM templates from cloud images")
    parser.add_argument(
        "--recreate-all",
        "-y",
        "--yes",
        dest="recreate_all",
        action="store_true",
        help="Recreate all templates without prompts (uses cached images, converts linked clones)",
    )
    parser.add_argument("--storage", metavar="NAME", help="Storage pool to import disks into")
    parser.add_argument("--cache-dir", metavar="DIR", type=Path, help="Directory for downloaded cloud images")
    parser.add_argument("--config", metavar="FILE", type=Path, help="Template registry (YAML)")
    parser.add_argument(
        "--template",
        metavar="NAME",
        action="append",
        default=[],
        help="Only process this template (repeatable)",
    )
    parser.add_argument("--list-templates", action="store_true", help="List available templates and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Resolve storage and print the plan, then exit")
    args = parser.parse_args(argv)

    try:
        if args.list_templates:
            list_templates(args.config)
            return 0

        cfg = parse_env(args.config)
        if args.recreate_all:
            cfg.recreate_all = True
        if args.storage:
            cfg.storage = args.storage
        if args.cache_dir:
            cfg.cache_dir = args.cache_dir
        cfg.templates = select_templates(cfg.templates, args.template)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    decisions = AutoDecisions() if cfg.recreate_all else PromptDecisions()
    if cfg.recreate_all:
        log("INFO", "Auto-recreate mode: all templates will be recreated automatically")

    try:
        check_prerequisites()
        hypervisor = QemuServerClient()
        pool = resolve_storage(hypervisor, cfg.storage, decisions.confirm_unknown_storage)
        check_prerequisites(pool.kind)

        if args.dry_run:
            print_plan(cfg.templates, pool, cfg)
            log("INFO", "=== Dry-run complete (nothing changed) ===")
            return 0

        if not cfg.recreate_all:
            print_plan(cfg.templates, pool, cfg)
            if not prompt_yes_no("Continue?"):
                log("INFO", "Aborted by user")
                return 0

        orchestrator = TemplateLifecycleOrchestrator(
            hypervisor,
            decisions,
            ImageCache(cfg.cache_dir, retries=cfg.download_retries),
            attacher=DeviceAttacher(hypervisor, partition_wait_timeout=cfg.partition_wait_timeout),
            repairer=BootConfigRepairer(),
            resolver=LinkedCloneResolver(hypervisor),
            converter=CloneConverter(hypervisor, stop_timeout=cfg.clone_stop_timeout),
            memory_mb=cfg.memory_mb,
            bridge=cfg.bridge,
        )
        result = orchestrator.run(cfg.templates, pool)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it with the output above.")
        import traceback

        traceback.print_exc()
        return 1

    print_summary(result)
    if result.leaked_devices:
        log("ERROR", f"Device slots leaked: {', '.join(result.leaked_devices)}")
    if not result.ok:
        log("ERROR", f"{result.failure_count} template(s) failed")
        return 1
    log("SUCCESS", f"{result.success_count} template(s) ready")
    return 0
