"""PerpScout — application entry point.

Boots the FastAPI status server and provides the CLI entry point that runs
the supervised trading loop.
"""

import logging

from fastapi import FastAPI

from perpscout.api.routers import router

app = FastAPI(title="PerpScout Status API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("perpscout")


def warn_if_live(testnet: bool) -> bool:
    """Log a prominent warning when trading against the live exchange.

    Returns ``True`` when *testnet* is off.
    """
    if not testnet:
        logger.warning("LIVE TRADING: real funds at risk!")
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire dependencies and run."""
    import argparse
    import asyncio
    import signal

    from perpscout.api.routers import configure_routers
    from perpscout.config import load_config
    from perpscout.exchange.gateway import ExchangeGateway
    from perpscout.repos.db import init_db
    from perpscout.repos.trade_repo import TradeRepo
    from perpscout.supervisor import Supervisor

    parser = argparse.ArgumentParser(description="PerpScout perpetual-futures trading bot")
    parser.add_argument("--env", dest="env_path", help="Path to a .env file")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading loop without the status API server",
    )
    args = parser.parse_args()

    config = load_config(args.env_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    init_db(config.db_path)
    warn_if_live(config.testnet)

    gateway = ExchangeGateway(config)
    trade_repo = TradeRepo(config.db_path)
    supervisor = Supervisor(config, gateway, trade_repo=trade_repo)
    configure_routers(trade_repo=trade_repo, supervisor=supervisor)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping gracefully.")
        supervisor.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engine_only(supervisor, gateway))
    else:
        asyncio.run(_run_with_api(supervisor, gateway, config.health_port))


async def _run_with_api(supervisor, gateway, port: int = 8080) -> None:
    """Start the API server and the supervised loop concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_supervisor():
        try:
            await supervisor.run()
        finally:
            server.should_exit = True

    logger.info("Status API available at http://localhost:%d", port)
    try:
        results = await asyncio.gather(
            server.serve(),
            _run_supervisor(),
            return_exceptions=True,
        )
        logger.info("PerpScout stopped. Results: %s", results)
    finally:
        await gateway.close()


async def _run_engine_only(supervisor, gateway) -> None:
    """Run the supervised loop without the API server."""
    logger.info("Starting PerpScout (no API)")
    try:
        await supervisor.run()
    finally:
        await gateway.close()
    logger.info("PerpScout stopped.")


if __name__ == "__main__":
    _run_cli()
