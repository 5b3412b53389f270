"""
Run script for starting the ConvAI relay server.

This script reads the relay settings, checks the provider credentials and
starts the FastAPI application with uvicorn.

Usage:
    python run.py [--port PORT] [--host HOST] [--log-level LEVEL]
"""

import argparse
import sys
from pathlib import Path

import uvicorn

sys.path.append(str(Path(__file__).parent))

from convai_relay.config.logging_config import configure_logging
from convai_relay.config.settings import Settings

settings = Settings.from_env()

# Configure logging
logger = configure_logging(settings.log_level)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Start the ConvAI relay server")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help="Port to run the server on (default: 8080 or PORT env var)",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help="Host to bind the server to (default: 0.0.0.0 or HOST env var)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO or LOG_LEVEL env var)",
    )
    return parser.parse_args()


def main():
    """Main entry point for starting the server."""
    args = parse_args()

    # Pushes and sessions fail without a key, the listing endpoints still work
    if not settings.api_key:
        logger.warning("ELEVENLABS_API_KEY environment variable not set")
    if not settings.agent_id:
        logger.warning("ELEVENLABS_AGENT_ID not set: /ws sessions need ?agent_id=")

    logger.info(f"Starting server on http://{args.host}:{args.port}")
    logger.info(f"Log level: {args.log_level}")
    logger.info(f"Projects directory: {settings.projects_dir}")

    uvicorn.run(
        "convai_relay.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        http="h11",
        access_log=False,
        reload=settings.reload,
    )


if __name__ == "__main__":
    main()
