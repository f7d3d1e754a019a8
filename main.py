"""
main.py: Server launcher.

    python main.py                      # settings from the environment
    python main.py --port 9000 --reload

See app.py for the FastAPI application and its wiring. The sweep worker runs
separately through scripts/run_sweep.py.
"""

from __future__ import annotations

import argparse

import uvicorn

from backend.utils.config import get_settings
from backend.utils.logger import configure_logging, get_logger


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the team availability API server.")
    parser.add_argument("--host", default=settings.server_host)
    parser.add_argument("--port", type=int, default=settings.server_port)
    parser.add_argument("--reload", action="store_true", help="Restart on source changes.")
    parser.add_argument("--log-level", default=settings.log_level)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_logging(args.log_level)
    get_logger("main").info(
        "Starting server | url=http://%s:%s | docs=http://%s:%s/docs | reload=%s",
        args.host,
        args.port,
        args.host,
        args.port,
        args.reload,
    )
    # log_config=None keeps uvicorn on the handlers installed above.
    uvicorn.run(
        "app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
