#!/usr/bin/env python3
"""
Rebalancing Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the engine.

- api:       REST API (uvicorn), scheduler loop in the background
             when enabled in the configuration
- scheduler: trigger loop only
- scan:      one scheduler cycle, then exit

Compatible with PM2 process management; SIGINT/SIGTERM stop the
engine cleanly and interrupted operations resume on the next start.

============================================================
USAGE
============================================================
Direct execution:
    python app.py --mode api
    python app.py --mode scan --config config/rebalancing.yaml
    python app.py --mode api --memory --mock

With PM2:
    pm2 start app.py --interpreter python --name rebalancer -- --mode api

Environment-based configuration (see RebalancingEngineConfig.from_env):
    LOG_LEVEL=DEBUG REBALANCING_SCHEDULER_INTERVAL=60 python app.py

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.exceptions import ConfigurationError
from rebalancing_engine.config import RebalancingEngineConfig
from rebalancing_engine.router import register_exception_handlers, router
from rebalancing_engine.runtime import RebalancingEngine


logger = logging.getLogger(__name__)

MODES = ("api", "scheduler", "scan")


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="rebalancing-engine",
        description="Portfolio rebalancing engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Runtime Modes:
  api        - REST API with background scheduler
  scheduler  - Trigger loop only
  scan       - Run one scheduler cycle and exit

Examples:
  %(prog)s --mode api --port 8000
  %(prog)s --mode scan --config rebalancing.yaml
        """
    )

    parser.add_argument(
        "--mode", "-m",
        type=str,
        choices=MODES,
        default="api",
        help="Runtime mode (default: api)",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        metavar="PATH",
        help="YAML configuration file (default: environment variables)",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Keep strategies and operations in memory (no database)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use in-process mock collaborators",
    )
    parser.add_argument("--host", type=str, default=None, help="API host")
    parser.add_argument("--port", type=int, default=None, help="API port")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override the configured log level",
    )

    return parser


def build_config(args) -> RebalancingEngineConfig:
    """Configuration from YAML or environment, then CLI overrides."""
    if args.config is not None:
        config = RebalancingEngineConfig.from_yaml(args.config)
    else:
        config = RebalancingEngineConfig.from_env()

    if args.memory:
        config.database.use_memory = True
    if args.mock:
        config.collaborators.use_mock = True
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level
    return config


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================
# API
# ============================================================

def create_app(
    config: Optional[RebalancingEngineConfig] = None,
    engine: Optional[RebalancingEngine] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    The engine is started and stopped with the application.
    """
    engine = engine or RebalancingEngine(config or RebalancingEngineConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(
        title="Rebalancing Engine API",
        description="Portfolio rebalancing strategies and operations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.rebalancing_engine = engine
    app.include_router(router)
    register_exception_handlers(app)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "ok", "scheduler": engine.scheduler.get_status()}

    return app


# ============================================================
# MAIN FUNCTION
# ============================================================

async def run_scheduler(config: RebalancingEngineConfig) -> int:
    engine = RebalancingEngine(config)
    try:
        await engine.start(run_scheduler=False)
        logger.info("Starting trigger loop (press Ctrl+C to stop)...")
        await engine.scheduler.start()
        return 0
    finally:
        await engine.stop()


async def run_scan(config: RebalancingEngineConfig) -> int:
    engine = RebalancingEngine(config)
    try:
        await engine.start(run_scheduler=False)
        result = await engine.scheduler.run_cycle()
        await engine.service.wait_idle()

        print(json.dumps(result.to_dict(), indent=2))
        return 1 if result.errors else 0
    finally:
        await engine.stop()


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e.to_log_format()}", file=sys.stderr)
        return 1

    setup_logging(config.log_level)
    logger.info(f"Rebalancing engine starting in {args.mode} mode")

    try:
        if args.mode == "api":
            uvicorn.run(
                create_app(engine=RebalancingEngine(config)),
                host=config.api_host,
                port=config.api_port,
                log_level=config.log_level.lower(),
            )
            return 0
        if args.mode == "scheduler":
            return asyncio.run(run_scheduler(config))
        return asyncio.run(run_scan(config))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
