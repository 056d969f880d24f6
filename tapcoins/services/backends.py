"""
tapcoins.services.backends — Gateway Selection
===============================================

Builds the one :class:`PersistenceGateway` a process uses, from config.
This is the only place that knows which stores exist.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tapcoins.services.memory_gateway import InMemoryGateway, JsonFileGateway

if TYPE_CHECKING:
    from tapcoins.config import TapcoinsConfig
    from tapcoins.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


def build_gateway(cfg: TapcoinsConfig, *, database_url: str | None = None) -> PersistenceGateway:
    """Return the gateway named by ``cfg.backend``.

    ``sql`` reads *database_url* or falls back to ``DATABASE_URL``.
    """
    if cfg.backend == "memory":
        gateway: PersistenceGateway = InMemoryGateway()
    elif cfg.backend == "file":
        gateway = JsonFileGateway(cfg.data_file)
    elif cfg.backend == "sql":
        from tapcoins.database.engine import create_db_engine, init_db
        from tapcoins.services.sql_gateway import SqlGateway

        engine = create_db_engine(database_url)
        init_db(engine)
        gateway = SqlGateway(engine)
    else:
        raise ValueError(f"Unknown backend {cfg.backend!r}")

    logger.info("Persistence backend: %s", gateway.name)
    return gateway
