"""Utility functions for pve-templates."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Iterable, List, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pvetemplates.constants import _LOG_VERBOSE, TRUTHY
from pvetemplates.exceptions import DownloadFailed, ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def human_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    size = float(num_bytes)
    for unit in ("KiB", "MiB", "GiB"):
        size /= 1024
        if size < 1024:
            break
    return f"{size:.1f} {unit}"


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "pve-templates/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DownloadFailed(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadFailed(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".partial-") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            if total_bytes is not None and downloaded != total_bytes:
                raise DownloadFailed(f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes")
            tmp.flush()
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    backoff: float = 5.0,
) -> None:
    attempt = 1
    while True:
        try:
            download_file(url, destination, label=label)
            return
        except (DownloadFailed, OSError) as exc:
            if attempt >= retries:
                raise DownloadFailed(f"Giving up on {url} after {attempt} attempt(s): {exc}") from exc
            log("WARN", f"Download attempt {attempt}/{retries} failed: {exc}; retrying in {backoff:.0f}s")
            time.sleep(backoff)
            attempt += 1


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def prompt_yes_no(question: str, default: bool = True) -> bool:
    """Ask a [Y/n] question on the terminal; without a TTY the default is used."""
    if not has_controlling_tty():
        log("DEBUG", f"No TTY; answering '{question}' with default ({'yes' if default else 'no'})")
        return default
    suffix = "[Y/n]" if default else "[y/N]"
    try:
        answer = input(f"{question} {suffix}: ").strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in {"y", "yes"}


def wait_for_path(path: Path, timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll for a filesystem path to show up (e.g., a partition device node)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            return True
        time.sleep(interval)
    return path.exists()


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def missing_tools(tools: Iterable[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def command_error(exc: Union[subprocess.CalledProcessError, OSError]) -> str:
    """Best human-readable reason for a failed command.

    An ``OSError`` means the command never ran (missing binary, no permission).
    """
    if not isinstance(exc, subprocess.CalledProcessError):
        return str(exc)
    stderr = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
    if stderr:
        return stderr.splitlines()[-1]
    return f"exit status {exc.returncode}"
