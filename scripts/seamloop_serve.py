#!/usr/bin/env python3
"""Start the SeamLoop job service.

    python scripts/seamloop_serve.py
or
    uvicorn src.service.app:app --host 127.0.0.1 --port 8765
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

import uvicorn


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the SeamLoop service")
    parser.add_argument("--host", default=os.getenv("SEAMLOOP_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("SEAMLOOP_PORT", "8765")))
    parser.add_argument("--reload", action="store_true", help="Restart on source changes")
    parser.add_argument(
        "--log-level",
        default=os.getenv("SEAMLOOP_LOG_LEVEL", "info"),
        choices=["critical", "error", "warning", "info", "debug"],
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "src.service.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
