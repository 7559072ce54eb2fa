#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
import time

import requests

from slidecraft.client.progress_smoother import TERMINAL, ProgressSmoother
from slidecraft.config import settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a slide deck generation request with smoothed progress.")
    parser.add_argument("request_id", help="Generation request id returned by POST /api/decks/generate")
    parser.add_argument(
        "--api",
        default="http://localhost:8000/api",
        help="API base URL (default: http://localhost:8000/api)",
    )
    parser.add_argument("--poll", type=float, default=5.0, help="Seconds between state polls.")
    parser.add_argument(
        "--tick",
        type=float,
        default=settings.progress_tick_seconds,
        help="Seconds between smoothed progress steps.",
    )
    return parser.parse_args()


def _render(value: int, message: str) -> None:
    width = 30
    filled = int(width * value / 100)
    sys.stdout.write(f"\r[{'#' * filled}{'.' * (width - filled)}] {value:3d}% {message[:50]:<50}")
    sys.stdout.flush()


def main() -> int:
    args = parse_args()
    state_url = f"{args.api.rstrip('/')}/requests/{args.request_id}"
    message = ""
    smoother = ProgressSmoother(interval=args.tick, on_change=lambda value: _render(value, message))

    try:
        while True:
            response = requests.get(state_url, timeout=10)
            if response.status_code == 404:
                print(f"Request not found: {args.request_id}")
                return 1
            response.raise_for_status()
            state = response.json()
            message = state.get("message") or state.get("phase") or ""
            smoother.update(state.get("phase"), int(state.get("progress") or 0), state.get("message"))
            if state.get("phase") in TERMINAL:
                print()
                if state.get("phase") == "failed":
                    print(f"Generation failed: {state.get('error_message') or 'unknown error'}")
                    return 1
                print("Presentation ready")
                return 0
            time.sleep(args.poll)
    except requests.RequestException as exc:
        print(f"\nCould not reach API: {exc}")
        return 1
    finally:
        smoother.stop()


if __name__ == "__main__":
    raise SystemExit(main())
