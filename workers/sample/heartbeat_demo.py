#!/usr/bin/env python3
"""
Sample periodic job.

Appends a timestamped heartbeat line to a file. Point a periodic config at
``workers.sample.heartbeat_demo:beat`` to schedule it.
"""

from __future__ import annotations

import argparse
import time
from datetime import datetime, timezone
from pathlib import Path


def beat(path: str, label: str = "heartbeat", fail: bool = False, delay_seconds: float = 0.0) -> Path:
    if delay_seconds > 0:
        time.sleep(delay_seconds)
    if fail:
        raise RuntimeError(f"{label} failed on request")
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(tz=timezone.utc).isoformat()
    with output_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{stamp} {label}\n")
    return output_path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write one heartbeat line.")
    parser.add_argument("--output", default="workers/sample/state/heartbeat.log")
    parser.add_argument("--label", default="heartbeat")
    parser.add_argument("--fail", action="store_true", help="Raise instead of writing")
    parser.add_argument("--delay-seconds", type=float, default=0.0)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        output_path = beat(args.output, label=args.label, fail=args.fail, delay_seconds=args.delay_seconds)
    except RuntimeError as exc:
        print(f"Error: {exc}")
        return 1
    print(f"Heartbeat written: label={args.label}, output={output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
