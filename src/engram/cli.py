"""
CLI entry point.

Commands:
- add: Store a new memory
- list / show: Inspect memories
- edit / remove: Change or delete a memory
- tap: Record that memories were used
- promote: Move a memory up one generation by hand
- init: Print the context block for a session (counts as a review)
- gc: Expire and promote memories by engagement
- stats / hot / activity / log: Reports

Flags:
- --debug: Enable debug logging to the console

Exit codes: 0 on success, 1 on failure or when a memory was not found.
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from engram.core.config import Settings, get_settings
from engram.core.errors import EngramError
from engram.core.logging import get_logger, setup_logging
from engram.memory.base import Action, Memory
from engram.memory.gc import GcResult
from engram.service import Engram

USAGE = """Usage: engram [--debug] <command> [args]

Commands:
  add <content> [--scope S] [--confidence F]
  list [--scope S] [--gen N]
  show <id>
  edit <id> <content>
  remove <id>
  tap [<id> ...] [--match TEXT]
  promote <id>
  init [--scope S ...]
  gc [--dry-run] [--min-reviews N] [--min-ratio F] [--promote-threshold N]
  stats
  hot [--window SECS] [--limit N]
  activity [--days N]
  log [--limit N] [--action ACTION] [--id ID]"""


class UsageError(Exception):
    """Bad command line."""


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _pop_flag(args: list[str], name: str) -> bool:
    if name in args:
        args.remove(name)
        return True
    return False


def _pop_all(args: list[str], name: str) -> list[str]:
    """Remove every `name VALUE` pair, return the values."""
    values = []
    while name in args:
        i = args.index(name)
        if i + 1 >= len(args):
            raise UsageError(f"{name} needs a value")
        values.append(args[i + 1])
        del args[i : i + 2]
    return values


def _pop_option(args: list[str], name: str, convert: Callable[[str], object] = str) -> object | None:
    values = _pop_all(args, name)
    if not values:
        return None
    try:
        return convert(values[-1])
    except ValueError as e:
        raise UsageError(f"Invalid value for {name}: {values[-1]}") from e


def _positional(args: list[str], count: int, command: str) -> list[str]:
    if len(args) != count:
        raise UsageError(f"{command} expects {count} argument(s), got {len(args)}")
    return args


def render_context(memories: list[Memory]) -> str:
    """Context block injected into an agent session."""
    lines = [
        "<engram-context>",
        "# Engram Memory System",
        "",
        "When you learn something worth remembering about this project, store it:",
        "```bash",
        'engram add "<fact>" --scope "project:$PWD"',
        "```",
        "",
        "When a memory below helps you, record it:",
        "```bash",
        "engram tap <id>",
        "```",
        "",
        "Store: project conventions, user corrections, architecture decisions, gotchas.",
        "Skip: obvious things from code, sensitive info, duplicates of existing memories.",
        "",
    ]
    if not memories:
        lines.append("No memories yet for this project.")
    else:
        lines.append("## Current Memories")
        lines.extend(f"<!-- {m.id} -->- {m.content}" for m in memories)
    lines.append("</engram-context>")
    return "\n".join(lines)


def format_gc(result: GcResult) -> str:
    prefix = "[DRY RUN] " if result.dry_run else ""
    if not result.changed:
        return f"{prefix}No changes."

    lines = []
    if result.expired:
        lines.append(f"{prefix}Expired {len(result.expired)} memory(ies):")
        for o in result.expired:
            lines.append(
                f"  - {truncate(o.content, 40)} "
                f"(taps:{o.tap_count} reviews:{o.review_count} ratio:{o.ratio * 100:.0f}%)"
            )
    if result.promoted:
        lines.append(f"{prefix}Promoted {len(result.promoted)} memory(ies):")
        for o in result.promoted:
            lines.append(
                f"  + {truncate(o.content, 40)} "
                f"(taps:{o.tap_count} gen{o.from_generation} -> gen{o.to_generation})"
            )
    return "\n".join(lines)


def _fmt_time(value: object) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


async def _add(engram: Engram, args: list[str]) -> int:
    scope = _pop_option(args, "--scope") or "global"
    confidence = _pop_option(args, "--confidence", float)
    (content,) = _positional(args, 1, "add")
    print(await engram.add(content, scope, confidence))
    return 0


async def _list(engram: Engram, args: list[str]) -> int:
    scope = _pop_option(args, "--scope")
    generation = _pop_option(args, "--gen", int)
    _positional(args, 0, "list")
    memories = await engram.list_memories(scope, generation)
    if not memories:
        print("No memories found.")
        return 0
    for m in memories:
        print(
            f"[{m.id}] gen{m.generation} taps:{m.tap_count} reviews:{m.review_count} "
            f"{m.scope} | {m.content}"
        )
    return 0


async def _show(engram: Engram, args: list[str]) -> int:
    (memory_id,) = _positional(args, 1, "show")
    m = await engram.get(memory_id)
    if m is None:
        print(f"Memory not found: {memory_id}", file=sys.stderr)
        return 1
    print(f"ID:          {m.id}")
    print(f"Content:     {m.content}")
    print(f"Scope:       {m.scope}")
    print(f"Generation:  {m.generation}")
    print(f"Taps:        {m.tap_count}")
    print(f"Reviews:     {m.review_count}")
    if m.review_count > 0:
        print(f"Tap ratio:   {m.ratio * 100:.0f}%")
    if m.confidence is not None:
        print(f"Confidence:  {m.confidence:.2f}")
    print(f"Created:     {_fmt_time(m.created_at)}")
    if m.last_tapped_at:
        print(f"Last tap:    {_fmt_time(m.last_tapped_at)}")
    if m.last_reviewed_at:
        print(f"Last review: {_fmt_time(m.last_reviewed_at)}")
    return 0


async def _edit(engram: Engram, args: list[str]) -> int:
    memory_id, content = _positional(args, 2, "edit")
    if not await engram.edit(memory_id, content):
        print(f"Memory not found: {memory_id}", file=sys.stderr)
        return 1
    print(f"Edited: {memory_id}")
    return 0


async def _remove(engram: Engram, args: list[str]) -> int:
    (memory_id,) = _positional(args, 1, "remove")
    if not await engram.remove(memory_id):
        print(f"Memory not found: {memory_id}", file=sys.stderr)
        return 1
    print(f"Removed: {memory_id}")
    return 0


async def _tap(engram: Engram, args: list[str]) -> int:
    pattern = _pop_option(args, "--match")
    tapped: list[str] = []
    not_found: list[str] = []

    if pattern:
        tapped.extend(await engram.tap_by_match(pattern))
    for memory_id in args:
        if await engram.tap(memory_id):
            tapped.append(memory_id)
        else:
            not_found.append(memory_id)

    if not tapped and not not_found:
        print("No memories to tap.")
        return 0
    if tapped:
        print(f"Tapped {len(tapped)} memory(ies): {', '.join(tapped)}")
    if not_found:
        print(f"Not found: {', '.join(not_found)}", file=sys.stderr)
        return 1
    return 0


async def _promote(engram: Engram, args: list[str]) -> int:
    (memory_id,) = _positional(args, 1, "promote")
    if not await engram.promote(memory_id):
        print(f"Memory not found or already permanent: {memory_id}", file=sys.stderr)
        return 1
    print(f"Promoted: {memory_id}")
    return 0


async def _init(engram: Engram, args: list[str]) -> int:
    scopes = _pop_all(args, "--scope")
    _positional(args, 0, "init")
    memories = await engram.mark_reviewed(scopes)
    print(render_context(memories))
    return 0


async def _gc(engram: Engram, args: list[str]) -> int:
    dry_run = _pop_flag(args, "--dry-run")
    min_reviews = _pop_option(args, "--min-reviews", int)
    min_ratio = _pop_option(args, "--min-ratio", float)
    promote_threshold = _pop_option(args, "--promote-threshold", int)
    _positional(args, 0, "gc")
    result = await engram.run_gc(min_reviews, min_ratio, promote_threshold, dry_run=dry_run)
    print(format_gc(result))
    return 0


async def _stats(engram: Engram, args: list[str]) -> int:
    _positional(args, 0, "stats")
    stats = await engram.stats()
    print("=== Engram Stats ===")
    print(f"Total memories: {stats.total}")
    print()
    print("By generation:")
    print(f"  Gen 0 (ephemeral):  {stats.by_generation[0]}")
    print(f"  Gen 1 (surviving):  {stats.by_generation[1]}")
    print(f"  Gen 2 (permanent):  {stats.by_generation[2]}")
    print()
    print("Engagement:")
    print(f"  Total taps:     {stats.total_taps}")
    print(f"  Total reviews:  {stats.total_reviews}")
    print(f"  Never tapped:   {stats.never_tapped}")
    if stats.scopes:
        print()
        print("By scope:")
        for scope, count in stats.scopes:
            print(f"  {scope}: {count}")
    return 0


async def _hot(engram: Engram, args: list[str]) -> int:
    window = _pop_option(args, "--window", int)
    limit = _pop_option(args, "--limit", int)
    _positional(args, 0, "hot")
    hot = await engram.hot_memories(window, limit)
    if not hot:
        print("No recent taps.")
        return 0
    for h in hot:
        print(f"{h.recent_taps:>4} recent {h.total_taps:>5} total  [{h.id}] {truncate(h.content, 60)}")
    return 0


async def _activity(engram: Engram, args: list[str]) -> int:
    days = _pop_option(args, "--days", int)
    _positional(args, 0, "activity")
    rows = await engram.activity_by_day(days)
    if not rows:
        print("No activity.")
        return 0
    print(f"{'day':<12}{'add':>6}{'tap':>6}{'review':>8}{'remove':>8}")
    for row in rows:
        print(f"{row.period:<12}{row.adds:>6}{row.taps:>6}{row.reviews:>8}{row.removes:>8}")
    return 0


async def _log(engram: Engram, args: list[str]) -> int:
    limit = _pop_option(args, "--limit", int)
    if limit is None:
        limit = 20
    action_name = _pop_option(args, "--action")
    memory_id = _pop_option(args, "--id")
    _positional(args, 0, "log")
    try:
        action = Action(action_name.upper()) if action_name else None
    except ValueError as e:
        raise UsageError(f"Unknown action: {action_name}") from e
    for event in await engram.enriched_events(limit, action, memory_id):
        print(
            f"{_fmt_time(event.timestamp)} {event.action.value:<8} "
            f"{event.memory_id or '-'}  {truncate(event.content, 60)}"
        )
    return 0


COMMANDS: dict[str, Callable[[Engram, list[str]], Awaitable[int]]] = {
    "add": _add,
    "list": _list,
    "show": _show,
    "edit": _edit,
    "remove": _remove,
    "tap": _tap,
    "promote": _promote,
    "init": _init,
    "gc": _gc,
    "stats": _stats,
    "hot": _hot,
    "activity": _activity,
    "log": _log,
}


async def _run(settings: Settings, command: str, args: list[str]) -> int:
    async with Engram(settings) as engram:
        return await COMMANDS[command](engram, args)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = list(sys.argv[1:] if argv is None else argv)

    # --debug mirrors DEBUG traces to stderr
    debug_mode = _pop_flag(args, "--debug")

    if not args or args[0] not in COMMANDS:
        if args:
            print(f"Unknown command: {args[0]}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1

    command, rest = args[0], args[1:]
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Failed to {command}: invalid configuration: {e}", file=sys.stderr)
        return 1

    log_file = settings.database_path.parent / "engram.log"
    try:
        setup_logging(
            level=logging.DEBUG if debug_mode else logging.INFO,
            log_file=log_file,
            console=debug_mode,
        )
    except OSError as e:
        print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
        return 1
    logger = get_logger("cli")

    logger.debug(f"Running {command} {rest}")
    try:
        return asyncio.run(_run(settings, command, rest))
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1
    except (EngramError, ValueError) as e:
        logger.error(f"{command} failed: {e}")
        print(f"Failed to {command}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
