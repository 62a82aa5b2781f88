"""Command line entry point: build, mirror, clean and report."""

from __future__ import annotations

import argparse
import json
import shutil
from pathlib import Path
from typing import List

from orchestrator.errors import ToolInvocationError, UsageError
from orchestrator.orchestrator import add_build_arguments, report_result, run_build
from project_config import (
    build_settings_from_config,
    load_config,
    mirror_settings_from_config,
)
from tools import mirror
from tools.reports import build_report


def cmd_build(args: argparse.Namespace) -> int:
    result = run_build(args)
    return report_result(result, args.report)


def cmd_mirror(args: argparse.Namespace) -> int:
    settings = mirror_settings_from_config(load_config(args.config))
    request = mirror.MirrorRequest(
        url=args.url or settings.page,
        folder=Path(args.folder) if args.folder else settings.folder,
        depth=args.depth if args.depth is not None else settings.depth,
        accept=tuple(args.accept.split(",")) if args.accept else settings.accept,
    )
    try:
        return mirror.run_mirror(request, settings.wget)
    except ToolInvocationError as exc:
        raise UsageError(str(exc)) from exc


def cmd_clean(args: argparse.Namespace) -> int:
    config = load_config(args.config, profile=args.profile)
    settings = build_settings_from_config(config, profile=args.profile)
    build_dir = Path(args.build_dir) if args.build_dir else settings.build_dir
    if build_dir.is_dir():
        shutil.rmtree(build_dir)
        print(f"removed {build_dir}")
    if args.mirror:
        for path in mirror.clean_mirror(mirror_settings_from_config(config).folder):
            print(f"removed {path}")
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    base = Path(args.path)
    files = [base] if base.is_file() else sorted(base.glob("**/*.jsonl"))
    if not files:
        raise SystemExit(f"No JSONL logs found under {base}")
    summary = build_report.aggregate(files, top=args.top)
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sepcomp", description="Separate-compilation build helpers")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Build sources stage by stage and link them")
    add_build_arguments(build)
    build.set_defaults(func=cmd_build)

    mirror_cmd = sub.add_parser("mirror", help="Mirror a web page locally with wget")
    mirror_cmd.add_argument("url", nargs="?", help="Page to mirror (defaults to [mirror].page)")
    mirror_cmd.add_argument("--folder", help="Output folder (defaults to [mirror].folder)")
    mirror_cmd.add_argument("--depth", type=int, help="Recursion depth")
    mirror_cmd.add_argument("--accept", help="Comma separated extension allow-list")
    mirror_cmd.add_argument("--config", help="Path to a sepcomp.toml file.")
    mirror_cmd.set_defaults(func=cmd_mirror)

    clean = sub.add_parser("clean", help="Remove build artifacts")
    clean.add_argument("--build-dir", help="Build directory to remove")
    clean.add_argument("--mirror", action="store_true", help="Also remove the mirrored tree")
    clean.add_argument("--config", help="Path to a sepcomp.toml file.")
    clean.add_argument("--profile", help="Configuration profile.")
    clean.set_defaults(func=cmd_clean)

    report = sub.add_parser("report", help="Aggregate JSONL build event logs")
    report.add_argument("path", help="Log file or directory containing JSONL logs")
    report.add_argument("--top", type=int, default=5)
    report.set_defaults(func=cmd_report)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except UsageError as exc:
        parser.error(str(exc))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
