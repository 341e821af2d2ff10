"""Output protocol — multiplexing a structured result and output files out of a log stream.

Containers write their result to ``/drydock-output/result.json``.  Backends
that cannot read that file directly (Kubernetes pods are gone by the time we
look) get it from the combined log stream instead: the command is wrapped so
that, after the user program exits, the shell prints::

    <program logs>
    ___DRYDOCK_OUTPUT___
    {"result": "json"}
    ___DRYDOCK_VOLUME_DATA___            (only with writable captured mounts)
    ___FILE_START___:/mnt/out:report.txt
    <base64>
    ___FILE_END___

Everything here is pure — no I/O, no backend knowledge.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import shlex
from dataclasses import dataclass, field
from typing import Any

from drydock.logger import logger

RESULT_DELIMITER = "___DRYDOCK_OUTPUT___"
VOLUME_DELIMITER = "___DRYDOCK_VOLUME_DATA___"
FILE_START = "___FILE_START___:"
FILE_END = "___FILE_END___"

INPUT_DIR = "/drydock-input"
INPUT_FILENAME = "input.json"
OUTPUT_DIR = "/drydock-output"
OUTPUT_FILENAME = "result.json"
WRITABLE_MOUNTS_ENV = "DRYDOCK_WRITABLE_MOUNTS"

SHELL_ENTRYPOINTS = frozenset({"sh", "bash", "/bin/sh", "/bin/bash"})

# 'subfinder "$@"': a shell shim around a binary, used by distroless images
_DYNAMIC_ARGS_RE = re.compile(r'^(\S+)\s+"\$@"$')

# Emits each file under each writable mount as base64 between markers.
# Runs only when the env var is non-empty at container run time.
_VOLUME_CAPTURE_SCRIPT = (
    f"echo '{VOLUME_DELIMITER}'; "
    f"for __mp in ${WRITABLE_MOUNTS_ENV}; do "
    'find "$__mp" -type f 2>/dev/null | while IFS= read -r __f; do '
    '__rel="${__f#$__mp/}"; '
    f'echo "{FILE_START}$__mp:$__rel"; '
    'base64 "$__f" 2>/dev/null || true; '
    f'echo "{FILE_END}"; '
    "done; done"
)


@dataclass(frozen=True)
class WrappedCommand:
    command: list[str]  # replaces the image ENTRYPOINT; empty → keep the image's
    args: list[str]
    wrapped: bool  # False → result must be recovered heuristically from logs


@dataclass
class ParsedOutput:
    result: Any
    # mount path → {relative path → base64 content}
    files: dict[str, dict[str, str]] = field(default_factory=dict)
    structured: bool = True  # False → raw text fallback


def is_shell_entrypoint(entrypoint: str | None) -> bool:
    return entrypoint in SHELL_ENTRYPOINTS


def wrap_command(
    entrypoint: str | None,
    command: list[str] | tuple[str, ...],
    *,
    capture_volumes: bool = False,
    output_path: str = f"{OUTPUT_DIR}/{OUTPUT_FILENAME}",
) -> WrappedCommand:
    """Wrap a run command so its result (and writable mounts) reach stdout.

    Only ``sh -c '<script>'`` style commands can be wrapped.  Everything else
    is passed through and result extraction degrades to log heuristics.
    *output_path* is where the program leaves its result file.
    """
    command = list(command)

    if is_shell_entrypoint(entrypoint) and len(command) >= 2 and command[0] == "-c":
        script = command[1]
        if _DYNAMIC_ARGS_RE.match(script):
            # Distroless image behind a shell shim: the image has no sh, so use
            # its own ENTRYPOINT with the arguments that follow "--".
            dynamic_args = command[command.index("--") + 1 :] if "--" in command else []
            return WrappedCommand(command=[], args=dynamic_args, wrapped=False)

        user_script = " ".join(command[1:])
        suffix = ""
        if capture_volumes:
            suffix = f'; if [ -n "${WRITABLE_MOUNTS_ENV}" ]; then {_VOLUME_CAPTURE_SCRIPT}; fi'
        wrapped = (
            f"{user_script}; __exit=$?; echo '{RESULT_DELIMITER}'; "
            f"cat {shlex.quote(output_path)} 2>/dev/null || echo '{{}}'"
            f"{suffix}; exit $__exit"
        )
        return WrappedCommand(command=[entrypoint or "sh"], args=["-c", wrapped], wrapped=True)

    if entrypoint:
        return WrappedCommand(command=[entrypoint], args=command, wrapped=False)

    if command:
        return WrappedCommand(command=[command[0]], args=command[1:], wrapped=False)

    return WrappedCommand(command=[], args=[], wrapped=False)


def strip_volume_section(logs: str) -> str:
    idx = logs.rfind(VOLUME_DELIMITER)
    return logs if idx == -1 else logs[:idx]


def extract_volume_data(logs: str) -> dict[str, dict[str, str]]:
    """Parse the volume section into ``{mount: {relative_path: base64}}``."""
    result: dict[str, dict[str, str]] = {}
    idx = logs.rfind(VOLUME_DELIMITER)
    if idx == -1:
        return result

    current_mount = ""
    current_file = ""
    current_data: list[str] = []
    in_file = False

    for line in logs[idx + len(VOLUME_DELIMITER) :].split("\n"):
        if line.startswith(FILE_START):
            mount, sep, rel_path = line[len(FILE_START) :].partition(":")
            if not sep:
                continue
            current_mount, current_file = mount, rel_path.rstrip("\r")
            current_data = []
            in_file = True
        elif in_file and line.strip() == FILE_END:
            result.setdefault(current_mount, {})[current_file] = "\n".join(current_data)
            in_file = False
        elif in_file:
            current_data.append(line.rstrip("\r"))

    return result


def decode_captured_files(files: dict[str, dict[str, str]]) -> dict[str, dict[str, bytes]]:
    """Base64-decode captured content; undecodable entries are logged and skipped."""
    decoded: dict[str, dict[str, bytes]] = {}
    for mount, entries in files.items():
        for rel_path, b64 in entries.items():
            try:
                decoded.setdefault(mount, {})[rel_path] = base64.b64decode(b64)
            except (binascii.Error, ValueError) as exc:
                logger.warning(
                    "Skipping undecodable captured file",
                    mount=mount,
                    path=rel_path,
                    err=str(exc),
                )
    return decoded


def parse_result(logs: str) -> tuple[Any, bool]:
    """Recover the result from logs. Returns ``(result, structured)``.

    1. JSON after the last result delimiter
    2. the last line that parses as a JSON object/array
    3. the trimmed raw text (never raises)
    """
    clean = strip_volume_section(logs)

    idx = clean.rfind(RESULT_DELIMITER)
    if idx != -1:
        payload = clean[idx + len(RESULT_DELIMITER) :].strip()
        if payload:
            try:
                return json.loads(payload), True
            except json.JSONDecodeError as exc:
                logger.warning("Failed to parse delimited output", err=str(exc))

    for line in reversed(clean.strip().splitlines()):
        line = line.strip()
        if line.startswith(("{", "[")):
            try:
                return json.loads(line), True
            except json.JSONDecodeError:
                continue

    logger.warning("No structured output found, returning raw stdout")
    return clean.strip(), False


def parse_logs(logs: str) -> ParsedOutput:
    result, structured = parse_result(logs)
    return ParsedOutput(result=result, files=extract_volume_data(logs), structured=structured)
