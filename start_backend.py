import os
import sys

import uvicorn

from diabetify.config import load_settings
from diabetify.database.database import ShardRouter
from diabetify.database.migration import init_shards
from diabetify.errors import ConfigError, ShardError
from diabetify.main import create_app
from diabetify.utils.logger import get_logger

logger = get_logger("start_backend")


def main():
    # 1. Configuration
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"--- CONFIGURATION FAILED: {e.message} ---")
        sys.exit(1)

    # 2. Every configured shard must be reachable before serving
    try:
        router = ShardRouter.from_settings(settings)
        init_shards(router)
    except (ConfigError, ShardError) as e:
        logger.error(f"--- SHARD STARTUP FAILED: {e.message} ---")
        sys.exit(1)
    logger.info(f"--- {len(router.shards())} SHARDS READY ---")

    # 3. Start the Backend
    logger.info("--- STARTING UVICORN SERVER ---")
    port = int(os.getenv("PORT", "8000"))
    app = create_app(settings, router=router)
    try:
        uvicorn.run(app, host="0.0.0.0", port=port)
    finally:
        router.dispose()


if __name__ == "__main__":
    main()
