"""Utility functions for vmpipe."""

from __future__ import annotations

import hashlib
import os
import re
import secrets
import string
import subprocess
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmpipe.constants import _LOG_VERBOSE, TRUTHY
from vmpipe.exceptions import PipelineError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
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
    return parse_int(name, raw, min_val=min_val, max_val=max_val)


def parse_int(name: str, raw, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise PipelineError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise PipelineError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise PipelineError(f"{name} must be <= {max_val} (got {value})")
    return value


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_password(length: int = 20) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_password(password: str) -> str:
    """Generate a bcrypt hash suitable for `useradd -p`."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def sanitize_tag(raw: str) -> str:
    """Return a version-tag-safe rendition of an arbitrary string."""
    safe = re.sub(r"[^0-9A-Za-z._-]", "-", raw)
    safe = safe.strip("-.")
    return safe or "run"


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file to ``destination`` via a temporary sibling file."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vmpipe/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise PipelineError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise PipelineError(f"Failed to download {url}: {exc.reason}")

    ensure_directory(destination.parent)
    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
            tmp.flush()
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
