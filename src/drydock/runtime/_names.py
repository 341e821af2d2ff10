"""Job and resource naming — DNS-1123 safe, collision resistant.

Names carry the image and run id so an operator (or an orphan reaper) can
tell at a glance what a leftover resource belonged to.
"""

from __future__ import annotations

import re
import secrets
import socket

MAX_JOB_NAME = 53  # leaves room for the "-xxxxx" pod suffix Kubernetes appends
MAX_RESOURCE_NAME = 63

_INVALID = re.compile(r"[^a-z0-9-]")
_DASHES = re.compile(r"-+")


def sanitize_name(name: str, max_length: int = MAX_RESOURCE_NAME) -> str:
    """Lowercase, replace invalid chars with '-', collapse and trim dashes."""
    name = _DASHES.sub("-", _INVALID.sub("-", name.lower())).strip("-")
    return name[:max_length].rstrip("-")


def _image_stem(image: str) -> str:
    # ghcr.io/projectdiscovery/subfinder:v2 → subfinder
    stem = image.rsplit("/", 1)[-1]
    stem = stem.split("@", 1)[0].split(":", 1)[0]
    return sanitize_name(stem)[:20] or "job"


def job_name(image: str, run_id: str) -> str:
    """``dd-<image>-<run8>-<rand6>``, at most 53 characters."""
    run_part = sanitize_name(run_id)[:8] or "run"
    return sanitize_name(f"dd-{_image_stem(image)}-{run_part}-{secrets.token_hex(3)}", MAX_JOB_NAME)


def input_resource_name(job: str) -> str:
    return sanitize_name(f"{job}-input")


def free_port() -> int:
    """Ask the OS for an unused local TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        return sock.getsockname()[1]
