from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from vessel._logging import setup_logging
from vessel.backends.local import LocalWorkloadClient, check_detached_io
from vessel.config import VesselConfig, load_config
from vessel.models import (
    ConfigError,
    ExitCodeError,
    InvalidArguments,
    MountParseError,
    RemoteCallError,
    RunFlags,
    TerminalError,
    VesselError,
)
from vessel.run import run_container, validate_run_args
from vessel.utils import parse_key_values, read_env_file

_cli_log = logging.getLogger("vessel.cli")


def _console() -> Console:
    return Console(highlight=False)


def _make_client(state_dir: Path) -> LocalWorkloadClient:
    return LocalWorkloadClient(state_dir=state_dir)


def _run_flags(args: argparse.Namespace, config: VesselConfig) -> RunFlags:
    env = [f"{key}={value}" for key, value in config.env.items()]
    if args.env_file:
        env_path = Path(args.env_file).expanduser()
        if not env_path.is_file():
            raise InvalidArguments(f"env file not found: {env_path}")
        env.extend(read_env_file(env_path))
    env.extend(args.env or [])
    parse_key_values(env, what="env")

    labels = dict(config.labels)
    labels.update(parse_key_values(args.label or [], what="label"))

    if args.memory_limit is not None and args.memory_limit <= 0:
        raise InvalidArguments("--memory-limit must be > 0 when provided")

    return RunFlags(
        rm=args.rm,
        null_io=args.null_io,
        log_uri=args.log_uri or config.log_uri,
        detach=args.detach,
        fifo_dir=args.fifo_dir or config.fifo_dir,
        cgroup=args.cgroup,
        platform=args.platform or config.platform,
        tty=args.tty,
        config=args.config,
        pid_file=args.pid_file,
        checkpoint=args.checkpoint,
        mounts=tuple(args.mount or ()),
        snapshotter=args.snapshotter or config.snapshotter,
        runtime=args.runtime or config.runtime,
        env=tuple(env),
        labels=labels,
        cwd=args.cwd,
        read_only=args.read_only,
        memory_limit=args.memory_limit,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vessel", description="Run a single workload instance"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_state_args(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "--config-file",
            default=None,
            help="Defaults YAML path (default: $VESSEL_CONFIG or ./vessel.yaml)",
        )
        target.add_argument(
            "--state-dir",
            default=None,
            help="Directory holding instance records",
        )

    run = sub.add_parser(
        "run",
        help="Run an instance",
        usage="vessel run [flags] REF|ROOTFS ID [COMMAND] [ARG...]",
    )
    _add_state_args(run)
    run.add_argument("--rm", action="store_true", help="Remove the instance after running")
    run.add_argument("--null-io", action="store_true", help="Send all IO to /dev/null")
    run.add_argument("--log-uri", default=None, help="Log uri (file path or file://)")
    run.add_argument(
        "-d",
        "--detach",
        action="store_true",
        help="Detach from the task after it has started execution",
    )
    run.add_argument("--fifo-dir", default=None, help="Directory used for storing IO FIFOs")
    run.add_argument(
        "--cgroup",
        default=None,
        help='Cgroup path (to disable use of cgroup, set to "" explicitly)',
    )
    run.add_argument("--platform", default=None, help="Run image for specific platform")
    run.add_argument("-t", "--tty", action="store_true", help="Allocate a TTY for the task")
    run.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to the runtime-specific spec config file",
    )
    run.add_argument("--pid-file", default=None, help="File path to write the task's pid")
    run.add_argument("--checkpoint", default=None, help="Provide the checkpoint digest to restore")
    run.add_argument(
        "--mount",
        action="append",
        default=None,
        help="Specify additional mounts: type=bind,src=/a,dst=/b,options=rbind:ro (repeatable)",
    )
    run.add_argument("--snapshotter", default=None, help="Snapshotter name")
    run.add_argument("--runtime", default=None, help="Runtime name")
    run.add_argument("--env", action="append", default=None, help="KEY=VALUE (repeatable)")
    run.add_argument("--env-file", default=None, help="File of KEY=VALUE lines")
    run.add_argument("--label", action="append", default=None, help="KEY=VALUE (repeatable)")
    run.add_argument("--cwd", default=None, help="Working directory of the task")
    run.add_argument("--read-only", action="store_true", help="Set the root filesystem read-only")
    run.add_argument("--memory-limit", type=int, default=None, help="Memory limit in bytes")
    run.add_argument("args", nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    run.set_defaults(handler=_cmd_run)

    listing = sub.add_parser("list", aliases=["ls"], help="List instances")
    _add_state_args(listing)
    listing.add_argument("--format", choices=["table", "json"], default="table")
    listing.set_defaults(handler=_cmd_list)
    return parser


def _cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config_file)
    flags = _run_flags(args, config)
    request = validate_run_args(args.args, flags)
    check_detached_io(request)

    client = _make_client(config.resolved_state_dir(args.state_dir))
    try:
        outcome = run_container(request, client)
    finally:
        client.close()
    outcome.raise_for_status()
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    config = load_config(args.config_file)
    client = _make_client(config.resolved_state_dir(args.state_dir))
    rows: list[dict[str, Any]] = []
    for record in client.store.list_records():
        rows.append(
            {
                "id": record.id,
                "reference": record.reference,
                "command": list(record.args),
                "status": client.instance_status(record.id),
                "created_at": record.created_at,
                "labels": dict(record.labels),
            }
        )

    if args.format == "json":
        print(json.dumps({"instances": rows}, indent=2, sort_keys=True))
        return 0

    table = Table(title="Instances", box=box.SIMPLE)
    table.add_column("ID", style="bold")
    table.add_column("Reference")
    table.add_column("Command")
    table.add_column("Status")
    table.add_column("Created")
    for row in rows:
        table.add_row(
            row["id"],
            row["reference"] or "-",
            " ".join(row["command"]),
            row["status"],
            row["created_at"],
        )
    _console().print(table)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    setup_logging()
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    command = str(getattr(args, "command", "unknown"))
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        exit_code = int(args.handler(args))
    except ExitCodeError as exc:
        exit_code = exc.code
    except (InvalidArguments, MountParseError, ConfigError) as exc:
        _cli_log.error("cli_command_error command=%s kind=invalid error=%s", command, exc)
        print(f"[invalid arguments] {exc}", file=sys.stderr)
        exit_code = 2
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except TerminalError as exc:
        _cli_log.error("cli_command_error command=%s kind=terminal error=%s", command, exc)
        print(f"[terminal error] {exc}", file=sys.stderr)
        exit_code = 1
    except RemoteCallError as exc:
        _cli_log.error("cli_command_error command=%s kind=remote error=%s", command, exc)
        print(f"[remote error] {exc}", file=sys.stderr)
        exit_code = 1
    except VesselError as exc:
        _cli_log.error("cli_command_error command=%s kind=runtime error=%s", command, exc)
        print(f"[error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        duration_sec = time.perf_counter() - started
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            duration_sec,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
