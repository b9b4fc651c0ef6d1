"""
Main entrypoint: periodic runtime (aggregation + fusion) in background threads
+ FastAPI server in main thread.

The runtime threads are daemons so the process stays alive for the API; on
SIGINT/SIGTERM the server shuts down and the lifespan stops the runtime.

Env: DB_PATH or DATABASE_URL, API_HOST, API_PORT, LOG_LEVEL, TRUSTPULSE_* thresholds.

API-only (no runtime): TRUSTPULSE_RUNTIME_ENABLED=0 uvicorn backend_trustpulse.api_server.app:app
"""

import os

# Configure structured JSON logging before other imports that may log
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Build settings, then run the FastAPI server; its lifespan starts the runtime."""
    from backend_trustpulse.config import get_settings

    settings = get_settings()
    logger.info(
        "main_config_loaded",
        storage="sqlalchemy" if settings.database_url else "sqlite",
        db_path=settings.db_path,
        runtime_enabled=settings.runtime_enabled,
        aggregation_period_sec=settings.aggregation_period_sec,
        fusion_period_sec=settings.fusion_period_sec,
    )

    from backend_trustpulse.api_server.app import app
    import uvicorn

    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
