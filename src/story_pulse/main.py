"""Application entrypoint — start the UI bridge or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog
import uvicorn

from story_pulse.config import get_settings
from story_pulse.device.coordinator import DeviceConnectionCoordinator
from story_pulse.events import EventName
from story_pulse.gestures.classifier import confirmation_tolerance
from story_pulse.gestures.scheduler import ManualScheduler
from story_pulse.logger import setup_logging
from story_pulse.models import DeviceSettings
from story_pulse.storage.settings_store import MemorySettingsStore

logger = structlog.get_logger(__name__)


def replay(
    lines: TextIO,
    out: TextIO,
    *,
    step_ms: int = 1000,
    overrides: dict[str, Any] | None = None,
) -> int:
    """Feed recorded JSON-lines frames through a coordinator on a virtual clock.

    A frame carrying an integer ``timestamp`` (ms) moves the clock to that
    instant; other frames advance it by *step_ms*.  Every emitted event is
    written to *out* as one JSON line.  Returns the number of events.
    """
    scheduler = ManualScheduler()
    coordinator = DeviceConnectionCoordinator(MemorySettingsStore(), scheduler=scheduler)
    settings = DeviceSettings(**(overrides or {}))
    coordinator.apply_settings(settings)

    count = 0

    def _writer(name: EventName):
        def write(payload: Any) -> None:
            nonlocal count
            data = payload.model_dump(mode="json", by_alias=True) if hasattr(payload, "model_dump") else payload
            out.write(json.dumps({"t": scheduler.now_ms(), "type": name.value, "data": data}) + "\n")
            count += 1
        return write

    for name in (EventName.HEARTRATE, EventName.EMOTION, EventName.SHIFT, EventName.GESTURE):
        coordinator.bus.on(name, _writer(name))

    started = False
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            frame = json.loads(line)
        except json.JSONDecodeError:
            frame = None
        ts = frame.get("timestamp") if isinstance(frame, dict) else None
        if isinstance(ts, int) and not isinstance(ts, bool):
            scheduler.advance_to(ts)
        elif started:
            scheduler.advance(step_ms)
        started = True
        coordinator.dispatch(line)

    # Let a trailing single shake confirm.
    scheduler.advance(settings.gesture_max_interval + confirmation_tolerance(settings.gesture_max_interval))
    return count


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="story-pulse",
        description="Heart-rate and gesture feedback core for interactive fiction.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the local UI bridge.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── replay ────────────────────────────────────────────────
    replay_parser = sub.add_parser("replay", help="Replay a JSON-lines device recording.")
    replay_parser.add_argument("file", type=Path)
    replay_parser.add_argument("--step-ms", type=int, default=1000)
    replay_parser.add_argument("--gesture-threshold", type=float, default=None)
    replay_parser.add_argument("--gesture-max-interval", type=int, default=None)
    replay_parser.add_argument("--gesture-debounce-interval", type=int, default=None)

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "story_pulse.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "replay":
        overrides = {
            k: v for k, v in {
                "gesture_threshold": args.gesture_threshold,
                "gesture_max_interval": args.gesture_max_interval,
                "gesture_debounce_interval": args.gesture_debounce_interval,
            }.items() if v is not None
        }
        with args.file.open(encoding="utf-8") as fh:
            count = replay(fh, sys.stdout, step_ms=args.step_ms, overrides=overrides)
        logger.info("replay.finished", events=count)
    elif args.command == "init-db":
        from story_pulse.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
