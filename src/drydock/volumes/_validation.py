"""Identifier and filename validation shared by every volume variant."""

from __future__ import annotations

import re
import time
from collections.abc import Iterable

from drydock.errors import ValidationError

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_FILENAME_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


def validate_id(field: str, value: str) -> str:
    if not value or not _ID_RE.match(value):
        raise ValidationError(
            f"Invalid {field}: {value!r} (only letters, digits, '_' and '-' allowed)",
            field_errors={field: ["must match [A-Za-z0-9_-]+"]},
        )
    return value


def validate_filename(filename: str) -> str:
    """Reject traversal, absolute paths and anything outside a conservative charset."""
    problems: list[str] = []
    if ".." in filename:
        problems.append("must not contain '..'")
    if filename.startswith("/"):
        problems.append("must be relative")
    if not _FILENAME_RE.match(filename):
        problems.append("must match [A-Za-z0-9._/-]+")
    if problems:
        raise ValidationError(
            f"Invalid filename: {filename!r}",
            field_errors={filename: problems},
        )
    return filename


def validate_files(filenames: Iterable[str]) -> None:
    for filename in filenames:
        validate_filename(filename)


def volume_name(tenant_id: str, run_id: str) -> str:
    """``vol-<tenant>-<run>-<ms timestamp>``, clipped to a DNS label."""
    validate_id("tenant_id", tenant_id)
    validate_id("run_id", run_id)
    suffix = f"-{int(time.time() * 1000)}"
    prefix = f"vol-{tenant_id}-{run_id}".lower().replace("_", "-")
    # Clip the prefix, never the timestamp
    return prefix[: 63 - len(suffix)].rstrip("-") + suffix
