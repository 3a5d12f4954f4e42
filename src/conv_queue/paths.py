"""Filesystem layout and access URLs.

Layout under the base working directory::

    <base_dir>/tmp/<input_file>
    <base_dir>/converted/<Y-M-D>/<output_file>
"""

import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

INPUT_SUBDIR = "tmp"
OUTPUT_SUBDIR = "converted"


@dataclass(frozen=True)
class JobPaths:
    """Resolved locations for one job."""
    input_path: Path
    output_dir: Path
    output_path: Path
    date_dir: str


def dated_subdir(now: datetime) -> str:
    """Year-month-day without zero padding, e.g. ``2024-3-7``."""
    return f"{now.year}-{now.month}-{now.day}"


def resolve_job_paths(base_dir: Path, input_file: str, output_file: str, now: datetime) -> JobPaths:
    date_dir = dated_subdir(now)
    output_dir = Path(base_dir) / OUTPUT_SUBDIR / date_dir
    return JobPaths(
        input_path=Path(base_dir) / INPUT_SUBDIR / input_file,
        output_dir=output_dir,
        output_path=output_dir / output_file,
        date_dir=date_dir,
    )


def ensure_dir(path: Path) -> Path:
    """Create ``path`` and parents; no error if it already exists."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def discover_host_address() -> str:
    """Best-effort primary IPv4 address of this host.

    Connecting a UDP socket sends no packets; it only makes the OS pick the
    outbound interface. Falls back to loopback when there is no route.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Host address discovery failed ({e}), using loopback")
        return "127.0.0.1"
    finally:
        sock.close()


def base_url(
    public_url: Optional[str] = None,
    host_address: Optional[str] = None,
    port: int = 8080,
) -> str:
    """Base URL that converted files are reachable under."""
    if public_url:
        return public_url.rstrip("/")
    host = host_address or discover_host_address()
    return f"http://{host}:{port}"


def access_url(base: str, date_dir: str, output_file: str) -> str:
    return f"{base.rstrip('/')}/{OUTPUT_SUBDIR}/{quote(date_dir)}/{quote(output_file)}"
