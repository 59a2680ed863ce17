#!/usr/bin/env python3
"""
MiSub Local Server - Entry Point
==================================
One-command startup for the local MiSub API emulator.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port

This script:
    1. Creates config.yaml from config.yaml.example on first run
    2. Loads environment variables from .env (ADMIN_PASSWORD, COOKIE_SECRET)
    3. Configures logging
    4. Starts uvicorn with the FastAPI app factory

Point the admin UI dev server (http://localhost:5173 by default) at the
printed address.
"""

import argparse
import logging
import os
import shutil

import uvicorn
from dotenv import load_dotenv

from misub.config import ConfigManager, DEFAULTS
from misub.routes import ENDPOINTS


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="MiSub - local API emulation server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number to listen on (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    args = parser.parse_args()

    project_dir = os.path.dirname(os.path.abspath(__file__))
    config_manager = ConfigManager(project_dir)

    # -- Ensure configuration file exists --------------------------------------
    config_example = os.path.join(project_dir, "config.yaml.example")
    if not os.path.exists(config_manager.config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_manager.config_path)
        print("[INIT] Created config.yaml from template")

    # -- Load environment variables from .env ----------------------------------
    if os.path.exists(config_manager.env_path):
        load_dotenv(config_manager.env_path)

    config = config_manager.load()

    # Command-line args override config file
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])
    log_level = str(config["web"].get("log_level", "info")).lower()

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    # -- Print startup banner --------------------------------------------------
    print()
    print("  MiSub local server")
    print(f"  Address : http://{host}:{port}")
    print(f"  KV      : {config['kv'].get('backend')} {config['kv'].get('path') or ''}")
    print()
    print("  Endpoints:")
    for route, label in ENDPOINTS.items():
        print(f"    {route:<32} {label}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "misub.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
