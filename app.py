#!/usr/bin/env python3
"""
Bitaxe Dashboard - Entry Point
================================
One-command startup for the Bitaxe fleet dashboard.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port

This script:
    1. Loads environment variables from .env
    2. Loads process settings from server.yaml
    3. Creates the FastAPI web application (setup mode if config/config.json
       does not exist yet)
    4. Starts the uvicorn server

After starting, open the printed URL in a browser.
"""

import os
import shutil
import logging
import argparse
import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load settings, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Bitaxe Dashboard - Miner Fleet Operator Console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the dashboard (overrides server.yaml and PORT)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides server.yaml and HOST)",
    )
    parser.add_argument(
        "--log-level", type=str, default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("dashboard")

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Ensure server.yaml exists ---------------------------------------------
    settings_path = os.path.join(project_dir, "server.yaml")
    settings_example = os.path.join(project_dir, "server.yaml.example")
    if not os.path.exists(settings_path) and os.path.exists(settings_example):
        shutil.copy2(settings_example, settings_path)
        logger.info("Created server.yaml from template")

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Load settings to get web server address --------------------------------
    from dashboard.settings import ServerSettings
    settings = ServerSettings.load(project_dir)

    # Command-line args override settings file and environment
    host = args.host or settings.host
    port = args.port or settings.port
    if args.port:
        os.environ["PORT"] = str(args.port)

    logger.info("Bitaxe Dashboard v2.0 - http://%s:%s", host, port)

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "dashboard.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
