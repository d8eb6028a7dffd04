"""Worker entry point: runs the delivery sweep without the web server.

Use with SCHEDULER_ENABLED=false on the web process. Both may run at once;
the Redis sweep lock keeps ticks from overlapping.

Run: python -m worker.main
"""

import asyncio
import logging
import sys

from app.channels.line import get_line_channel
from app.config import get_settings
from app.core.sweep import get_sweep_scheduler
from app.errors import ConfigurationError
from app.logging_config import setup_logging
from app.storage.redis import redis_storage

logger = logging.getLogger(__name__)


async def main() -> int:
    setup_logging()

    try:
        get_settings().require_credentials()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    await redis_storage.connect()
    try:
        await get_sweep_scheduler().run_forever()
    finally:
        await get_line_channel().close()
        await redis_storage.disconnect()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
