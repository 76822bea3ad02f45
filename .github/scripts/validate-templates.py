#!/usr/bin/env python3
"""Validate templates.yaml: schema correctness and image URL reachability."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

TEMPLATES_PATH = Path(__file__).resolve().parents[2] / "pvetemplates" / "templates.yaml"
URL_RE = re.compile(r"^https?://")
VMID_MIN = 100
VMID_MAX = 999999999
REQUEST_TIMEOUT = 30
USER_AGENT = "pve-templates/template-validator (GitHub Actions)"


def load_templates(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data: dict) -> list[str]:
    errors: list[str] = []

    if not isinstance(data, dict) or "templates" not in data:
        errors.append("Top-level 'templates' key is missing")
        return errors

    templates = data["templates"]
    if not isinstance(templates, dict):
        errors.append("'templates' must be a mapping")
        return errors

    seen_vmids: dict[int, str] = {}
    seen_files: dict[str, str] = {}
    for key, entry in templates.items():
        if not isinstance(entry, dict):
            errors.append(f"[{key}] entry is not a mapping")
            continue

        # vmid
        vmid = entry.get("vmid")
        if vmid is None:
            errors.append(f"[{key}] missing required field 'vmid'")
        elif isinstance(vmid, bool) or not isinstance(vmid, int):
            errors.append(f"[{key}] 'vmid' must be an integer")
        elif not VMID_MIN <= vmid <= VMID_MAX:
            errors.append(f"[{key}] 'vmid' must be between {VMID_MIN} and {VMID_MAX}, got {vmid}")
        elif vmid in seen_vmids:
            errors.append(f"[{key}] 'vmid' {vmid} already used by [{seen_vmids[vmid]}]")
        else:
            seen_vmids[vmid] = key

        # url
        if "url" not in entry:
            errors.append(f"[{key}] missing required field 'url'")
        elif not isinstance(entry["url"], str):
            errors.append(f"[{key}] 'url' must be a string")
        elif not URL_RE.match(entry["url"]):
            errors.append(f"[{key}] 'url' must start with http:// or https://")

        # filename shares one cache directory
        filename = entry.get("filename")
        if not isinstance(filename, str) or not filename:
            errors.append(f"[{key}] missing required field 'filename'")
        elif "/" in filename or "\\" in filename:
            errors.append(f"[{key}] 'filename' must not contain path separators")
        elif filename in seen_files:
            errors.append(f"[{key}] 'filename' {filename} already used by [{seen_files[filename]}]")
        else:
            seen_files[filename] = key

    return errors


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(key: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some mirrors reject HEAD
        if resp.status_code in (403, 405):
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(data: dict) -> list[str]:
    errors: list[str] = []
    for key, entry in data["templates"].items():
        err = check_url(key, entry["url"])
        if err:
            errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {TEMPLATES_PATH}")
    data = load_templates(TEMPLATES_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    count = len(data["templates"])
    print(f"  OK: {count} templates, all schemas valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = validate_urls(data)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{count} unreachable")
        return 1
    print(f"  OK: all {count} image URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
