from __future__ import annotations

from pathlib import Path

import uvicorn

from capledger.infrastructure.config import Settings, get_settings
from capledger.infrastructure.db import create_database_engine, initialise_database
from capledger.infrastructure.logging import get_logger

logger = get_logger(__name__)


def ensure_storage(settings: Settings) -> None:
    """Create the blob directory and any missing tables before the first request."""
    if settings.storage.backend == "filesystem":
        Path(settings.storage.blob_dir).mkdir(parents=True, exist_ok=True)

    engine = create_database_engine(settings.database)
    try:
        initialise_database(engine)
    finally:
        engine.dispose()


def main() -> None:
    settings = get_settings()
    ensure_storage(settings)
    logger.info(f"Starting server: {settings.get_environment_info()}")

    if not settings.catalog.directory or not Path(settings.catalog.directory).is_dir():
        print(f"[run-server] Catalog directory {settings.catalog.directory!r} not found; serving an empty catalog.")

    uvicorn.run(
        "capledger.web.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload,
    )


if __name__ == "__main__":
    main()
