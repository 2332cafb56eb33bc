"""
SheetScan Service: Main Entry Point
===================================
Starts the Flask-based scanning microservice.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --debug            # Debug mode
"""

import argparse
import logging

from sheetscan.engine import ScanConfig, ScanEngine
from sheetscan.server import create_app

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="SheetScan Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--concurrency", type=int, default=None, help="In-flight recognition calls (3-5)")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    config = ScanConfig.from_env(concurrency=args.concurrency)
    if not config.api_key:
        logger.warning("GEMINI_API_KEY is not set; scans will fail until it is")

    app = create_app(engine=ScanEngine(config))
    logger.info(f"Recognition model: {config.model} (concurrency={config.concurrency})")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
