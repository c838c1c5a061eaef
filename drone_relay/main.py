"""
Drone Relay Application

FastAPI application relaying the drone's video feed to browser viewers over
WebSocket, recording it on demand and relaying SDK commands and telemetry.
"""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from drone_relay.api.drone import router as drone_router
from drone_relay.api.stream import router as stream_router
from drone_relay.config import settings
from drone_relay.services.relay_service import get_relay_service
from drone_relay.utils.logging_setup import apply_rate_limit_filters, setup_logging
from drone_relay.utils.media_paths import get_path_manager

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

relay_loggers = [
    "drone_relay",
    "drone_relay.services",
    "drone_relay.services.transcoder",
    "drone_relay.services.viewer_registry",
    "drone_relay.services.command_relay",
    "drone_relay.services.recording",
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
]

verbosity_overrides = {
    "uvicorn": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}

rate_limit_config = {
    "drone_relay.services.transcoder": os.getenv("DRONE_RELAY_LOG_RATE_LIMIT_TRANSCODER", "30"),
    "drone_relay.services.viewer_registry": os.getenv("DRONE_RELAY_LOG_RATE_LIMIT_VIEWERS", "10"),
    "drone_relay.services.command_relay": os.getenv("DRONE_RELAY_LOG_RATE_LIMIT_COMMANDS", "30"),
}


def configure_logging(logs_dir: Path) -> None:
    """Install console and rotating file handlers for the whole process."""
    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    console_level = getattr(logging, settings.CONSOLE_LOG_LEVEL, log_level)

    setup_logging(
        logs_dir,
        log_level=log_level,
        retention_days=settings.LOG_RETENTION_DAYS,
        error_retention_days=settings.LOG_ERROR_RETENTION_DAYS,
        use_json=settings.LOG_JSON,
        console_level=console_level,
    )

    for logger_name in relay_loggers:
        target_logger = logging.getLogger(logger_name)
        if log_level <= logging.DEBUG:
            target_logger.setLevel(log_level)
        else:
            target_logger.setLevel(verbosity_overrides.get(logger_name, log_level))
        target_logger.propagate = True

    limits = {k: v for k, v in rate_limit_config.items() if v not in {None, ""}}
    apply_rate_limit_filters(limits, exempt_level=logging.WARNING)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown sequences."""
    session_marker = "=" * 72
    logger.info(session_marker)
    logger.info("Relay session starting | pid=%s", os.getpid())

    service = get_relay_service()
    # Unwritable media storage is fatal; let it propagate
    await service.startup()
    logger.info("Drone relay startup complete | media_root=%s", service.paths.root_path)

    try:
        yield
    finally:
        logger.info("Shutting down drone relay...")
        try:
            await service.shutdown()
        except Exception as exc:
            logger.error("Error during shutdown: %s", exc)
        logger.info("Relay session stopped | pid=%s", os.getpid())
        logger.info(session_marker)


def create_app() -> FastAPI:
    """Factory function to create the FastAPI app"""
    application = FastAPI(
        title="Drone Relay",
        description="Video, recording and telemetry relay for SDK-controlled drones",
        version=VERSION,
        lifespan=lifespan,
    )

    # Browser UI is served from other origins during development
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(drone_router)
    application.include_router(stream_router)

    @application.get("/health")
    async def health_check():
        return {"status": "healthy", "version": VERSION}

    return application


app = create_app()


def main():
    """Main function to run the server"""
    parser = argparse.ArgumentParser(
        description="Drone Relay Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m drone_relay.main                          # Start server on default port 3000
  python -m drone_relay.main --port 8080              # Start server on port 8080
  python -m drone_relay.main --media-root /srv/drone  # Store photos and recordings elsewhere
        """
    )
    parser.add_argument('--port', type=int, default=settings.PORT,
                        help=f'Port to run the server on (default: {settings.PORT})')
    parser.add_argument('--host', type=str, default=settings.HOST,
                        help=f'Host to bind the server to (default: {settings.HOST})')
    parser.add_argument('--media-root', type=str, default=None,
                        help='Directory holding photos, recordings and logs')
    parser.add_argument('--version', action='version', version=f'Drone Relay {VERSION}')

    args = parser.parse_args()

    if args.media_root:
        settings.MEDIA_ROOT = Path(args.media_root).resolve()

    paths = get_path_manager()
    try:
        paths.ensure_directories()
    except OSError as e:
        print(f"Cannot prepare media directories under {paths.root_path}: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(paths.logs_path)
    logger.info(f"Server will start on http://{args.host}:{args.port}")

    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level="info",
            access_log=False,
            log_config=None,
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
