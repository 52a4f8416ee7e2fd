"""Command-line entry point: prints an overview of an Erlang crash dump."""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from typing import List, Optional

from .config import load_settings
from .console import safe_print
from .errors import DumpIOError, IndexBuildError
from .records import ProcessRecord
from .sections import RegionKind
from .store import CrashDumpStore


def _format_bytes(value: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{value} B"
        value /= 1024
    return str(value)


def print_summary(summary: dict, limit: int = 20):
    safe_print("=" * 80)
    safe_print("ERLANG CRASH DUMP")
    safe_print("=" * 80)
    safe_print(f"File:      {summary['path']} ({_format_bytes(summary['file_size'])})")
    safe_print(f"Version:   {summary['version'] or 'unknown'}")
    if summary.get('created'):
        safe_print(f"Created:   {summary['created']}")
    safe_print(f"Slogan:    {summary['slogan'] or '(none)'}")
    if summary.get('system_version'):
        safe_print(f"System:    {summary['system_version']}")

    safe_print(f"\nSections ({summary['sections']}):")
    for tag, count in summary['section_counts'].items():
        safe_print(f"  {tag:<24} {count}")

    groups = summary['groups']
    safe_print(f"\nProcess groups ({len(groups)} groups, {summary['processes']} processes):")
    ordered = sorted(groups, key=lambda g: g['memory'], reverse=True)
    for group in ordered[:limit]:
        label = group['name'] or group['root']
        safe_print(f"  {label:<32} {group['members']:>6} procs  "
                   f"mem {_format_bytes(group['memory']):>10}  bin {_format_bytes(group['binary']):>10}")
    if len(ordered) > limit:
        safe_print(f"  ... {len(ordered) - limit} more")

    warnings = summary['warnings']
    if warnings:
        safe_print(f"\nWarnings ({len(warnings)}):")
        for warning in warnings[:limit]:
            safe_print(f"  [-] {warning}")
        if len(warnings) > limit:
            safe_print(f"  ... {len(warnings) - limit} more")


def print_process(store: CrashDumpStore, record: ProcessRecord):
    safe_print("=" * 80)
    safe_print(f"PROCESS {record.pid} {record.name or ''}".rstrip())
    safe_print("=" * 80)
    safe_print(f"State:        {record.state}")
    safe_print(f"Spawned as:   {record.spawned_as}")
    safe_print(f"Spawned by:   {record.spawned_by}")
    safe_print(f"Ancestors:    {', '.join(record.ancestors) or '(none)'}")
    safe_print(f"Group:        {store.descendant_tree().root_name(record.pid)}")
    safe_print(f"Memory:       {record.memory}")
    safe_print(f"Reductions:   {record.reductions}")
    if record.program_counter:
        safe_print(f"Program ctr:  {record.program_counter}")

    frames = store.stack_frames(record.pid)
    if frames:
        safe_print(f"\nStack ({len(frames)} frames):")
        for frame in frames:
            values = [store.render(store.memory(record.pid, RegionKind.STACK, slot)) for slot in frame.slots]
            safe_print(f"  {frame.address} {frame.mfa} ({', '.join(values)})")

    messages = store.messages(record.pid)
    if messages:
        safe_print(f"\nMessages ({len(messages)}):")
        for message in messages:
            term = store.memory(record.pid, RegionKind.MESSAGES, message.offset)
            safe_print(f"  {message.offset}: {store.render(term)}")

    for warning in record.warnings:
        safe_print(f"[-] {warning}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='crashdump-analyzer',
        description='Erlang Crash Dump Analyzer - Inspect erl_crash.dump files without loading them whole',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Overview of a dump
  %(prog)s erl_crash.dump

  # Machine readable summary
  %(prog)s erl_crash.dump --json -o summary.json

  # Byte range of every section
  %(prog)s erl_crash.dump --index

  # Stack and messages of one process
  %(prog)s erl_crash.dump --process "<0.42.0>"
        """
    )

    parser.add_argument(
        'dump_file',
        help='Path to the crash dump (erl_crash.dump)'
    )

    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the summary as JSON'
    )

    parser.add_argument(
        '--process',
        '-p',
        help='Show stack frames and messages of one process'
    )

    parser.add_argument(
        '--index',
        action='store_true',
        help='List every section as "tag:id offset length"'
    )

    parser.add_argument(
        '--workers',
        type=int,
        help='Decode worker threads (default: CRASHDUMP_WORKERS or CPU count)'
    )

    parser.add_argument(
        '--output',
        '-o',
        help='Write the JSON summary to a file'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Print progress messages'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings()
    if args.workers is not None:
        settings = replace(settings, workers=max(0, args.workers))
    if args.verbose:
        settings = replace(settings, verbose=True)

    try:
        store = CrashDumpStore.open(args.dump_file, settings=settings)
    except (DumpIOError, IndexBuildError) as e:
        safe_print(f"[-] {e}")
        return 1

    with store:
        if args.index:
            for row in store.index.format_rows():
                safe_print(row)
            return 0

        if args.process:
            record = store.get_process(args.process)
            if record is None:
                safe_print(f"[-] No process {args.process} in {args.dump_file}")
                return 1
            print_process(store, record)
            return 0

        summary = store.summary()
        if args.output:
            try:
                with open(args.output, 'w', encoding='utf-8') as f:
                    json.dump(summary, f, indent=2)
            except OSError as e:
                safe_print(f"[-] Cannot write summary to {args.output}: {e}")
                return 1
            safe_print(f"[+] Summary saved to: {args.output}")
        elif args.json:
            safe_print(json.dumps(summary, indent=2))
        else:
            print_summary(summary)
    return 0


if __name__ == '__main__':
    sys.exit(main())
