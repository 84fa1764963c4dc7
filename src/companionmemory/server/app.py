"""FastAPI application for the companion-memory service."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..services import MemoryStore, create_memory_store
from ..services.pruning import retention_cutoff
from .config import CompanionMemoryConfig, PruningConfig
from .routes import router

# Global store instance (set during lifespan)
_memory_store: Optional[MemoryStore] = None
_config: Optional[CompanionMemoryConfig] = None

logger = logging.getLogger("companionmemory.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _memory_store, _config

    config: CompanionMemoryConfig = app.state.config

    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration errors: {errors}")

    logger.info("Starting companion-memory service")

    _config = config
    _memory_store = create_memory_store(config)
    loaded = await _memory_store.load()
    logger.info(f"Memory store initialized ({loaded} memories, db: {config.db.provider})")

    prune_task = None
    if config.pruning.enabled:
        prune_task = asyncio.create_task(_prune_loop(_memory_store, config.pruning))

    yield

    if prune_task is not None:
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down companion-memory service")
    await _memory_store.close()
    _memory_store = None
    _config = None


async def _prune_loop(store: MemoryStore, pruning: PruningConfig) -> None:
    """Background task that periodically prunes stale, unimportant memories.

    Runs every ``interval_hours``. Failures are logged and the loop keeps going.
    """
    interval = pruning.interval_hours * 60 * 60
    while True:
        try:
            await asyncio.sleep(interval)
            report = await store.prune_old_memories(
                retention_cutoff(pruning.retention_days),
                except_important_ones=True,
                deadline=pruning.deadline_seconds,
            )
            if report.has_failures:
                logger.warning(
                    f"Prune pass left {len(report.failed)} memories behind "
                    f"(removed {len(report.removed)})"
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled prune failed")


def create_app(config: Optional[CompanionMemoryConfig] = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        config: Service configuration. If None, loads from environment.

    Returns:
        Configured FastAPI application.
    """
    if config is None:
        config = CompanionMemoryConfig.from_env()

    app = FastAPI(
        title="Companion Memory",
        description="Long-term memory for an AI companion",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config

    # Server binds to 127.0.0.1; only local origins may call it from a browser
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        return {
            "service": "companion-memory",
            "version": __version__,
            "docs": "/docs",
        }

    return app


def run_server(
    config: Optional[CompanionMemoryConfig] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    log_level: str = "info",
):
    """Run the HTTP server.

    Args:
        config: Service configuration. If None, loads from environment.
        host: Override host from config.
        port: Override port from config.
        log_level: Logging level.
    """
    if config is None:
        config = CompanionMemoryConfig.from_env()

    if config.db.provider != "memory" and config.db.path != ":memory:":
        Path(config.db.path).mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app(config)

    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=log_level,
    )


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Companion Memory HTTP Server")
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to config file (default: ~/.companion-memory/config.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to bind to (default: 18791)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level",
    )

    args = parser.parse_args()

    if args.config:
        config = CompanionMemoryConfig.from_file(args.config)
    else:
        config = CompanionMemoryConfig.from_env()

    run_server(
        config=config,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
