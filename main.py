"""
Attempt engine entrypoint.

Runs the HTTP service under uvicorn, or prints the effective settings.
"""

from __future__ import annotations

import argparse
import json
import logging

import uvicorn
from dotenv import load_dotenv

from packages.common.config import get_settings
from packages.common.logging import configure_logging

logger = logging.getLogger("attempts.main")


def _load_env() -> None:
    """Load environment variables from a `.env` file without overriding the process env."""
    if load_dotenv(override=False):
        logger.debug(".env loaded")


def main() -> None:
    """Parse CLI args and either serve the API or dump the resolved config."""
    _load_env()

    ap = argparse.ArgumentParser(prog="attempt-engine", description="Exam attempt engine")
    ap.add_argument("--mode", choices=["serve", "print-config"], default="serve")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--reload", action="store_true", help="Reload on code changes (dev only).")
    args = ap.parse_args()

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.JSON_LOGS, service=settings.SERVICE_NAME)

    if args.mode == "print-config":
        print(json.dumps(settings.model_dump(), indent=2, default=str))
        return

    logger.info("serving %s on %s:%d (env=%s)", settings.SERVICE_NAME, args.host, args.port, settings.ENV)
    uvicorn.run(
        "services.attempts.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
