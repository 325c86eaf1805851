"""MesmerLine command-line interface.

Argparse-based CLI that initializes logging early and exposes the feature
catalog, timeline validation / stats / headless runs and the saved-timeline
library. Exposed via ``python -m mesmerline`` and the ``mesmerline`` script.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import PlaybackConfig
from .errors import MesmerLineError, TimelineValidationError
from .features.registry import FeatureCategory, FeatureRegistry
from .logging_utils import LogMode, get_default_log_path, setup_logging


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set log level (default: INFO)",
    )
    parser.add_argument(
        "--log-mode",
        choices=[mode.value for mode in LogMode],
        default=LogMode.NORMAL.value,
        help="Logging preset: quiet suppresses console info, perf forces DEBUG",
    )
    parser.add_argument(
        "--log-file",
        default=str(get_default_log_path()),
        help="Path to log file (default: per-user MesmerLine directory)",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        default="plain",
        help="Log format (plain or json)",
    )


def _build_logging_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    _add_logging_args(parent)
    return parent


def build_parser() -> argparse.ArgumentParser:
    logging_parent = _build_logging_parent()
    parser = argparse.ArgumentParser(
        prog="mesmerline",
        description="MesmerLine CLI",
        parents=[logging_parent],
    )
    sub = parser.add_subparsers(dest="command", required=False)

    def add_subparser(name: str, **kwargs: object) -> argparse.ArgumentParser:
        parents = list(kwargs.pop("parents", []))
        parents.insert(0, logging_parent)
        return sub.add_parser(name, parents=parents, **kwargs)

    p_feat = add_subparser("features", help="List the built-in feature catalog")
    p_feat.add_argument("--json", action="store_true", help="Print the catalog as JSON")
    p_feat.add_argument(
        "--category",
        choices=[c.value for c in FeatureCategory],
        default=None,
        help="Only list features of this category",
    )

    p_tl = add_subparser("timeline", help="Validate, inspect or run a .session.json timeline")
    p_tl.add_argument("--load", required=True, help="Path to a .session.json file")
    action = p_tl.add_mutually_exclusive_group()
    action.add_argument("--validate", action="store_true", help="Validate and report (default)")
    action.add_argument("--print", action="store_true", help="Print the normalized timeline JSON")
    action.add_argument("--stats", action="store_true", help="Show XP, difficulty and feature usage")
    action.add_argument("--run", action="store_true", help="Play the timeline headless with a logging back-end")
    p_tl.add_argument("--json", action="store_true", help="Machine-readable output")
    p_tl.add_argument("--minute-seconds", type=float, default=None, help="Wall seconds per session minute (--run)")
    p_tl.add_argument("--tick-ms", type=int, default=None, help="Tick interval in ms (--run)")

    p_lib = add_subparser("library", help="Manage saved timelines")
    p_lib.add_argument("--dir", default=None, help="Library directory (default: per-user sessions folder)")
    lib_action = p_lib.add_mutually_exclusive_group(required=True)
    lib_action.add_argument("--list", action="store_true", help="List saved timelines")
    lib_action.add_argument("--delete", metavar="NAME", help="Delete a saved timeline")
    p_lib.add_argument("--json", action="store_true", help="Machine-readable output")

    return parser


def cmd_features(args, registry: FeatureRegistry) -> int:
    features = registry.all()
    if args.category:
        features = registry.by_category(FeatureCategory(args.category))

    if args.json:
        print(json.dumps([f.to_dict() for f in features], indent=2, ensure_ascii=False))
        return 0

    for feature in features:
        ramp = feature.ramp_setting
        ramp_text = f" ramp={ramp.key}[{ramp.min:g}-{ramp.max:g}]" if ramp else ""
        print(f"{feature.id:<16} {feature.name} ({feature.category.value}){ramp_text}")
    return 0


def _timeline_stats(timeline, registry: FeatureRegistry) -> dict:
    pairing = timeline.pair_events()
    return {
        "name": timeline.name,
        "session_length": timeline.session_length,
        "events": len(timeline.events),
        "features": timeline.features_used(),
        "unknown_features": timeline.unknown_features(registry),
        "open_starts": [e.feature_id for e in pairing.open_starts],
        "phases": [p.name for p in timeline.phases],
        "xp": timeline.calculate_xp(registry),
        "difficulty": timeline.calculate_difficulty(registry),
        "difficulty_label": timeline.difficulty_label(registry),
    }


def _run_timeline(args, timeline, registry: FeatureRegistry) -> int:
    from .session.driver import run_blocking
    from .session.events import SessionEventType
    from .session.scheduler import PlaybackScheduler
    from .session.sinks import LoggingSink

    try:
        config = PlaybackConfig.from_env().with_overrides(
            minute_seconds=args.minute_seconds,
            tick_interval_ms=args.tick_ms,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    scheduler = PlaybackScheduler(registry, LoggingSink(), config=config)

    if not args.json:
        def _echo(event) -> None:
            data = event.data or {}
            minute = scheduler.elapsed_minutes
            if event.event_type is SessionEventType.FEATURE_ACTIVATED:
                print(f"[{minute:6.2f}] + {data['feature_id']}")
            elif event.event_type is SessionEventType.FEATURE_DEACTIVATED:
                print(f"[{minute:6.2f}] - {data['feature_id']} ({data['reason']})")
            elif event.event_type is SessionEventType.PHASE_CHANGED:
                print(f"[{minute:6.2f}] phase: {data['name']}")

        for event_type in (
            SessionEventType.FEATURE_ACTIVATED,
            SessionEventType.FEATURE_DEACTIVATED,
            SessionEventType.PHASE_CHANGED,
        ):
            scheduler.event_emitter.subscribe(event_type, _echo)

    scheduler.load(timeline)
    try:
        run_blocking(scheduler)
    except KeyboardInterrupt:
        scheduler.stop()

    status = scheduler.get_status()
    status["errors"] = [str(e) for e in scheduler.recovered_errors]
    if args.json:
        print(json.dumps(status, indent=2, ensure_ascii=False))
    else:
        print(
            f"{status['state']}: {status['processed_events']}/{status['total_events']} events, "
            f"{len(status['errors'])} recovered errors"
        )
    return 0 if scheduler.is_completed() else 1


def cmd_timeline(args, registry: FeatureRegistry) -> int:
    """Timeline inspection command.

    Exit codes:
        0 success
        1 error / invalid timeline / run did not complete
    """
    from .session.timeline import Timeline

    path = Path(args.load)
    try:
        timeline = Timeline.load(path, registry)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except TimelineValidationError as e:
        if args.json:
            print(json.dumps({"valid": False, "problems": e.problems}, indent=2, ensure_ascii=False))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.print:
        print(json.dumps(timeline.to_dict(), indent=2, ensure_ascii=False))
        return 0

    if args.stats:
        stats = _timeline_stats(timeline, registry)
        if args.json:
            print(json.dumps(stats, indent=2, ensure_ascii=False))
        else:
            print(f"{stats['name']}: {stats['session_length']} min, {stats['events']} events")
            print(f"  Features: {', '.join(stats['features']) or '-'}")
            print(f"  XP: {stats['xp']}  Difficulty: {stats['difficulty']} ({stats['difficulty_label']})")
            if stats["unknown_features"]:
                print(f"  Unknown (skipped at playback): {', '.join(stats['unknown_features'])}")
        return 0

    if args.run:
        return _run_timeline(args, timeline, registry)

    unknown = timeline.unknown_features(registry)
    if args.json:
        print(json.dumps({"valid": True, "problems": [], "unknown_features": unknown}, indent=2, ensure_ascii=False))
    else:
        print(f"OK: '{timeline.name}' ({len(timeline.events)} events, {timeline.session_length} min)")
        for feature_id in unknown:
            print(f"  warning: unknown feature '{feature_id}' will be skipped")
    return 0


def cmd_library(args, registry: FeatureRegistry) -> int:
    from .library import TimelineLibrary

    library = TimelineLibrary(Path(args.dir) if args.dir else None, registry=registry)

    if args.delete:
        if not library.delete(args.delete):
            print(f"Error: No saved session named '{args.delete}'", file=sys.stderr)
            return 1
        print(f"Deleted '{args.delete}'")
        return 0

    entries = library.list_entries()
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False))
        return 0
    if not entries:
        print(f"No saved sessions in {library.library_dir}")
        return 0
    for entry in entries:
        print(f"{entry.name:<32} {entry.session_length:>4} min  {entry.event_count:>3} events  {entry.path.name}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging before doing any work
    setup_logging(
        level=args.log_level,
        log_file=args.log_file,
        json_format=(args.log_format == "json"),
        log_mode=args.log_mode,
        add_console=True,
    )
    log = logging.getLogger(__name__)

    cmd = args.command
    if cmd is None:
        parser.print_help()
        return 2

    try:
        registry = FeatureRegistry.builtin()
        if cmd == "features":
            return cmd_features(args, registry)
        if cmd == "timeline":
            return cmd_timeline(args, registry)
        if cmd == "library":
            return cmd_library(args, registry)
    except MesmerLineError as e:
        log.error("CLI %s failed: %s", cmd, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 2


if __name__ == "__main__":  # Allow direct module execution
    raise SystemExit(main())
