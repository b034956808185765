"""Application entry point."""

import asyncio
import logging
import sys

from shopledger.config import get_config
from shopledger.db import close_pool, get_pool
from shopledger.db.schema import migrate, schema_version


async def boot() -> None:
    """
    Boot sequence: load config → validate → initialize pool → migrate → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    logger = logging.getLogger(__name__)

    try:
        config = get_config()
        logger.info(f"Configuration loaded: env={config.env}, currency={config.currency}")

        await get_pool()
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )

        applied = await migrate()
        version = await schema_version()
        logger.info(f"Schema at version {version} ({applied} migrations applied)")

        await close_pool()
        logger.info("Application shutdown complete")

    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
