from typing import Optional

from sqlalchemy.exc import ArgumentError, NoSuchModuleError

from liveflow.common.exceptions import configuration_error
from liveflow.logging import get_logger
from liveflow.settings import LiveFlowSettings, get_settings
from liveflow.storage.base import TableStore
from liveflow.storage.memory import InMemoryTableStore
from liveflow.storage.sql import SQLTableStore

logger = get_logger(__name__)


def create_store(settings: Optional[LiveFlowSettings] = None) -> TableStore:
    """Build the table store configured by ``settings.store``.

    A configured URL selects the SQL store; otherwise tables live in memory.
    """
    settings = settings or get_settings()
    store_settings = settings.store

    if store_settings.url:
        logger.info("store.created", extra={"store_type": "sql", "table_prefix": store_settings.table_prefix})
        try:
            return SQLTableStore(
                store_settings.url,
                table_prefix=store_settings.table_prefix,
                history_retention_versions=store_settings.history_retention_versions,
            )
        except (ArgumentError, NoSuchModuleError) as exc:
            raise configuration_error(
                f"Invalid table store URL: {exc}",
                config_key="store.url",
                cause=exc,
            ) from exc

    logger.info("store.created", extra={"store_type": "memory"})
    return InMemoryTableStore(history_retention_versions=store_settings.history_retention_versions)
