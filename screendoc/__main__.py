"""CLI entry point.

Usage:
    python -m screendoc sources                      # List capturable sources
    python -m screendoc capture --duration 60        # Capture for a minute
    python -m screendoc capture --kind window --region 0,0,800,600 --yes
"""

import argparse
import json
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .core.backends import CaptureKind, SourceSelection
from .core.bootstrap import build_backend, bootstrap_from_config_object, load_app_config
from .core.capture import SourceRequest
from .core.configs import AppConfig
from .core.errors import CaptureError, PermissionDenied


def parse_region(value: str) -> tuple[int, int, int, int]:
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("Region must be 'x,y,w,h'")
    try:
        x, y, w, h = (int(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Region values must be integers: {value}")
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError(f"Region size must be positive: {value}")
    return x, y, w, h


def console_prompt(request: SourceRequest) -> Optional[SourceSelection]:
    """Ask on the terminal which source may be captured."""
    if not request.options:
        return None
    print(f"\nscreendoc wants to capture your {request.kind.value}. Available sources:")
    for i, option in enumerate(request.options, 1):
        print(f"  [{i}] {option.label}")
    answer = input("Choose a source number (empty to cancel, 'n' to deny): ").strip().lower()
    if not answer:
        return None
    if answer in ("n", "no"):
        raise PermissionDenied("Capture permission denied", kind=request.kind.value)
    try:
        option = request.options[int(answer) - 1]
    except (ValueError, IndexError):
        print(f"Invalid choice: {answer}")
        return None
    return SourceSelection(kind=request.kind, monitor=option.monitor, region=request.region, label=option.label)


def write_summary(config: AppConfig, summary: Dict[str, Any]) -> Optional[Path]:
    """Write capture run summary to a JSON file under the data directory."""
    try:
        summaries_dir = config.data_dir / "summaries"
        summaries_dir.mkdir(parents=True, exist_ok=True)
        summary_file = summaries_dir / f"capture_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
        with open(summary_file, 'w') as f:
            json.dump(summary, f, indent=2, default=str)
        logger.info(f"Summary written to: {summary_file}")
        return summary_file
    except OSError as e:
        logger.warning(f"Could not write summary file: {e}")
        print("\nCapture Summary:")
        print("================")
        print(json.dumps(summary, indent=2, default=str))
        return None


def cmd_sources(args: argparse.Namespace) -> int:
    config = load_app_config(args.config)
    if args.backend:
        config.capture.backend = args.backend
    backend = build_backend(config)
    if not backend.is_supported():
        print(f"Backend '{backend.name}' cannot capture in this environment")
        return 1

    print(f"\nSources ({backend.name}):")
    print("========")
    for option in backend.list_sources():
        print(f"  {option.monitor:2d}  {option.label}")
    print()
    return 0


def cmd_capture(args: argparse.Namespace) -> int:
    config = load_app_config(args.config)
    if args.backend:
        config.capture.backend = args.backend
    if args.interval is not None:
        config.capture.interval_sec = args.interval
    if args.kind:
        config.capture.source_kind = CaptureKind(args.kind)
    if args.region is not None:
        config.capture.region = list(args.region)
    if args.analyze:
        config.capture.realtime_analysis = True

    components = bootstrap_from_config_object(
        config,
        prompt=None if args.yes else console_prompt,
        on_error=lambda e: logger.error(f"Capture error: {e}"),
        with_analyzer=args.analyze,
    )
    controller = components["controller"]
    session_id = args.session or datetime.now().strftime("%Y%m%d_%H%M%S")

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())

    start_time = time.time()
    success = True
    try:
        with controller:
            try:
                controller.select_source()
                controller.start_capture(session_id)
            except CaptureError as e:
                logger.error(f"Could not start capture: {e}")
                success = False
            else:
                logger.info(f"Capturing session {session_id}, press Ctrl-C to stop")
                deadline = start_time + args.duration if args.duration else None
                while not done.is_set() and controller.is_capturing:
                    if deadline is not None and time.time() >= deadline:
                        break
                    done.wait(0.2)
                controller.stop_capture()
                if not controller.scheduler.flush(timeout=10.0):
                    logger.warning("Some screenshots were still being saved")

            summary = {
                "session": session_id,
                "timestamp": datetime.now().isoformat(),
                "success": success,
                "duration": time.time() - start_time,
                "backend": components["backend"].name,
                "screenshots": controller.screenshot_count,
                "metrics": controller.scheduler.metrics.to_dict(),
            }
    finally:
        signal.signal(signal.SIGINT, signal.SIG_DFL)

    write_summary(config, summary)
    return 0 if success else 1


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="screendoc",
        description="Capture periodic screenshots of a display source"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to config file (default: $SCREENDOC_CONFIG, config/app.yaml or defaults)"
    )
    parser.add_argument(
        "--backend",
        choices=["mss", "adb", "synthetic"],
        help="Override the display backend"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sources", help="List capturable sources")

    capture = sub.add_parser("capture", help="Preview a source and capture it on an interval")
    capture.add_argument(
        "--duration", "-d",
        type=float,
        default=0.0,
        help="Seconds to capture for (0 runs until Ctrl-C)"
    )
    capture.add_argument("--interval", "-i", type=float, help="Seconds between screenshots")
    capture.add_argument("--kind", choices=[k.value for k in CaptureKind], help="Source kind to request")
    capture.add_argument("--region", type=parse_region, help="Capture area 'x,y,w,h' within the monitor")
    capture.add_argument("--session", "-s", type=str, help="Session id (default: timestamp)")
    capture.add_argument("--analyze", action="store_true", help="Describe each screenshot with the vision model")
    capture.add_argument("--yes", "-y", action="store_true", help="Grant the first source without asking")

    args = parser.parse_args(argv)

    try:
        if args.command == "sources":
            return cmd_sources(args)
        return cmd_capture(args)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
