#!/usr/bin/env python3
"""
Launch the voice call console against a call-record backend.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the voice call console for test calls with an agent.",
    )
    parser.add_argument("--host", default=None, help="Console bind host (default: CONSOLE_HOST).")
    parser.add_argument(
        "--port", type=int, default=None, help="Console bind port (default: CONSOLE_PORT)."
    )
    parser.add_argument(
        "--api-base",
        default=None,
        help="Call-record backend base URL (default: VOICE_API_BASE).",
    )
    parser.add_argument(
        "--join-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the agent to join (default: JOIN_TIMEOUT_SECONDS).",
    )
    parser.add_argument(
        "--mirror-dir",
        default=None,
        help="Directory for local transcript mirrors (default: TRANSCRIPT_MIRROR_DIR).",
    )
    parser.add_argument("--log-level", default="info", help="Uvicorn log level.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    if args.host:
        os.environ["CONSOLE_HOST"] = args.host
    if args.port is not None:
        os.environ["CONSOLE_PORT"] = str(args.port)
    if args.api_base:
        os.environ["VOICE_API_BASE"] = args.api_base
    if args.join_timeout is not None:
        os.environ["JOIN_TIMEOUT_SECONDS"] = str(args.join_timeout)
    if args.mirror_dir:
        os.environ["TRANSCRIPT_MIRROR_DIR"] = str(Path(args.mirror_dir).expanduser())

    from call_console import RUNTIME_CONFIG, app  # Import after env config

    print(
        f"Starting voice call console bind=http://{RUNTIME_CONFIG.console_host}:"
        f"{RUNTIME_CONFIG.console_port} api_base={RUNTIME_CONFIG.api_base} "
        f"join_timeout={RUNTIME_CONFIG.join_timeout_seconds:g}s "
        f"mirror_dir={RUNTIME_CONFIG.mirror_dir}"
    )
    uvicorn.run(
        app,
        host=RUNTIME_CONFIG.console_host,
        port=RUNTIME_CONFIG.console_port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
