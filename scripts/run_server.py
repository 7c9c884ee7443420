"""Script to launch the prompt relay server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from prompt_relay.config import configure_logging, load_settings  # noqa: E402
from prompt_relay.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the prompt relay server.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $PROMPT_RELAY_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST"),
        help="Host to bind the server to (default: server.host from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ["PORT"]) if os.environ.get("PORT") else None,
        help="Port to bind the server to (default: server.port from config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: logging.level from config)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart the server when source files change (development only)",
    )
    args = parser.parse_args()

    settings = load_settings(args.config)
    configure_logging(settings.logging, args.log_level)

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    log_level = (args.log_level or settings.logging.level).lower()

    if args.reload:
        # The reloader re-imports the app in a worker process, so it needs an
        # import string and finds the config through the environment.
        if args.config:
            os.environ["PROMPT_RELAY_CONFIG"] = args.config
        uvicorn.run(
            "prompt_relay.server:create_app",
            factory=True,
            reload=True,
            reload_dirs=[SRC_DIR],
            app_dir=SRC_DIR,
            host=host,
            port=port,
            log_level=log_level,
        )
        return

    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
