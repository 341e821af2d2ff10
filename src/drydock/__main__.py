"""Entry point for `python -m drydock` / `drydock`.

Subcommands:
    drydock run <runspec.json> [--input params.json]    Run one container job, print the result
    drydock templates                                  List group templates with their hash
    drydock provision <slug> --servers a,b --credentials creds.json
                                                       Provision a tool-server group until Ctrl-C
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from drydock.context import ExecutionContext
from drydock.errors import DrydockError

if TYPE_CHECKING:
    from drydock.context import LogEntry, ProgressEvent


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text())


def _context(run_id: str | None, component_ref: str) -> ExecutionContext:
    def print_progress(event: ProgressEvent) -> None:
        print(f"[{event.level}] {event.message}", file=sys.stderr)

    def print_output(entry: LogEntry) -> None:
        sys.stderr.write(entry.message)

    return ExecutionContext(
        run_id=run_id or uuid.uuid4().hex,
        component_ref=component_ref,
        log_collector=print_output,
        progress_collector=print_progress,
    )


async def _run(args: argparse.Namespace) -> int:
    from drydock.runtime import JobRunner
    from drydock.types import RunSpec

    spec = RunSpec.from_dict(_load_json(args.runspec))
    params = _load_json(args.input) if args.input else {}
    runner = JobRunner.from_settings(backend=args.backend)
    result = await runner.run(spec, params, _context(args.run_id, "cli"))
    print(json.dumps(result, indent=2) if not isinstance(result, str) else result)
    return 0


def _templates() -> int:
    from drydock.groups.templates import all_templates, compute_template_hash

    for slug, template in sorted(all_templates().items()):
        servers = ", ".join(s.id for s in template.servers)
        print(f"{slug:<12} {compute_template_hash(template)}  {template.default_image}")
        print(f"{'':<12} {servers}")
    return 0


async def _provision(args: argparse.Namespace) -> int:
    from drydock.groups import GroupRuntime, get_template
    from drydock.runtime import JobRunner

    template = get_template(args.slug)
    servers = [s.strip() for s in args.servers.split(",") if s.strip()]
    if not servers:
        servers = [s.id for s in template.servers]
    credential = _load_json(args.credentials)

    context = _context(args.run_id, args.group_id or template.slug)
    groups = GroupRuntime(JobRunner.from_settings(backend=args.backend))
    try:
        endpoints = await groups.provision(credential, servers, template, context)
        for ep in endpoints:
            print(f"{ep.server_id:<24} {ep.endpoint}  ({ep.container_id[:12]})")
        if endpoints:
            print("Press Ctrl-C to tear down", file=sys.stderr)
            await asyncio.Event().wait()
    finally:
        await groups.teardown_all()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="drydock",
        description="Container execution runtime for security-automation workflows",
    )
    parser.add_argument(
        "--backend",
        choices=["docker", "kubernetes"],
        default=None,
        help="Override runner.backend from config",
    )
    parser.add_argument("--run-id", default=None, help="Workflow run id (default: random)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one container job and print its result")
    run.add_argument("runspec", help="Path to a RunSpec JSON file")
    run.add_argument("--input", default=None, help="Path to a JSON file of job parameters")

    sub.add_parser("templates", help="List tool-server group templates")

    prov = sub.add_parser("provision", help="Provision a tool-server group until Ctrl-C")
    prov.add_argument("slug", help="Group template slug (e.g. aws)")
    prov.add_argument("--servers", default="", help="Comma-separated server ids (default: all)")
    prov.add_argument("--credentials", required=True, help="Path to a credential JSON file")
    prov.add_argument("--group-id", default=None, help="Group instance id (default: slug)")

    args = parser.parse_args()

    from drydock.config import get_settings
    from drydock.logger import configure_logging

    configure_logging(get_settings().logging.level)

    try:
        match args.command:
            case "run":
                code = asyncio.run(_run(args))
            case "templates":
                code = _templates()
            case "provision":
                code = asyncio.run(_provision(args))
    except KeyboardInterrupt:
        code = 130
    except DrydockError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
