"""Entry point: python -m membank <command>

- info                      Backend, schema version and entry count
- add CATEGORY TEXT...      Append an entry, print its id
- search TERM [LIMIT]       Case-insensitive content search
- recent [CATEGORY] [N]     Most recent entries
- select BUDGET QUERY...    Budgeted context selection
- metrics                   Dashboard and per-operation timings
- verify                    Integrity check of the data file
"""

from __future__ import annotations

import asyncio
import logging
import sys

from membank.config import load_config
from membank.core import Membank
from membank.errors import MembankError
from membank.memory.models import Entry

USAGE = """\
Usage: python -m membank [info|add|search|recent|select|metrics|verify]
  info                      Backend, schema version and entry count
  add CATEGORY TEXT...      Append an entry
  search TERM [LIMIT]       Case-insensitive content search
  recent [CATEGORY] [N]     Most recent entries
  select BUDGET QUERY...    Budgeted context selection
  metrics                   Dashboard and per-operation timings
  verify                    Integrity check of the data file"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _print_entries(entries: list[Entry]) -> None:
    for e in entries:
        first_line = e.content.splitlines()[0] if e.content else ""
        print(f"#{e.id:<5} {e.timestamp}  {e.category.value:<8} {first_line[:80]}")
    if not entries:
        print("(no entries)")


async def _cmd_info(bank: Membank, args: list[str]) -> int:
    info = bank.get_backend_info()
    print(f"backend:  {info.backend} (engine {info.engine_version})")
    print(f"schema:   v{info.version}")
    print(f"path:     {info.path}")
    print(f"entries:  {await bank.count_entries()}")
    return 0


async def _cmd_add(bank: Membank, args: list[str]) -> int:
    if len(args) < 2:
        print("Usage: python -m membank add CATEGORY TEXT...")
        return 1
    entry_id = await bank.add(args[0], " ".join(args[1:]))
    print(entry_id)
    return 0


async def _cmd_search(bank: Membank, args: list[str]) -> int:
    if not args:
        print("Usage: python -m membank search TERM [LIMIT]")
        return 1
    limit = int(args[1]) if len(args) > 1 else 50
    _print_entries(await bank.full_text_search(args[0], limit))
    return 0


async def _cmd_recent(bank: Membank, args: list[str]) -> int:
    category = None
    count = 20
    for arg in args:
        if arg.isdigit():
            count = int(arg)
        else:
            category = arg
    _print_entries(await bank.get_recent(category, count))
    return 0


async def _cmd_select(bank: Membank, args: list[str]) -> int:
    if len(args) < 2 or not args[0].isdigit():
        print("Usage: python -m membank select BUDGET QUERY...")
        return 1
    result = await bank.select_context(" ".join(args[1:]), int(args[0]))
    _print_entries(result.selected)
    print(
        f"\n{result.selected_count}/{result.considered_count} entries, "
        f"{result.total_tokens} tokens{'' if result.exact else ' (estimated)'}, "
        f"coverage {result.coverage_ratio:.0%}"
    )
    return 0


async def _cmd_metrics(bank: Membank, args: list[str]) -> int:
    dashboard = await bank.get_dashboard_metrics()
    status = dashboard.context_status.value if dashboard.context_status else "no data"
    print(f"tokens:   {dashboard.total_tokens} over {dashboard.call_count} calls "
          f"(avg {dashboard.average_tokens_per_call:.0f}, {dashboard.token_trend})")
    print(f"status:   {status}")
    print(f"queries:  avg {dashboard.average_query_ms:.1f} ms")
    for stats in dashboard.operations:
        print(f"  {stats.operation:<22} n={stats.count:<5} avg={stats.average_ms:.1f} ms "
              f"max={stats.max_ms:.1f} ms")
    return 0


async def _cmd_verify(bank: Membank, args: list[str]) -> int:
    report = await bank.verify()
    if report.valid:
        print(f"{report.path}: ok")
        return 0
    print(f"{report.path}: {len(report.issues)} issue(s)")
    for issue in report.issues:
        print(f"  - {issue}")
    return 1


COMMANDS = {
    "info": _cmd_info,
    "add": _cmd_add,
    "search": _cmd_search,
    "recent": _cmd_recent,
    "select": _cmd_select,
    "metrics": _cmd_metrics,
    "verify": _cmd_verify,
}


async def _run(cmd: str, args: list[str]) -> int:
    config = load_config()
    _setup_logging(config.log_level)

    bank = Membank(config)
    if not await bank.start():
        print(f"No storage backend could be opened at {config.data_path}", file=sys.stderr)
        return 2
    try:
        return await COMMANDS[cmd](bank, args)
    except MembankError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await bank.close()


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "info"
    if cmd not in COMMANDS:
        print(USAGE)
        sys.exit(1)
    try:
        sys.exit(asyncio.run(_run(cmd, sys.argv[2:])))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
