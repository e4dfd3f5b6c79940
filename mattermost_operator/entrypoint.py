import asyncio
import logging

from .config import settings
from . import operator


LOGGER = logging.getLogger(__name__)


def run():
    """
    Entrypoint for the Mattermost operator.
    """
    # Configure the logging before anything else is logged
    settings.logging.apply()
    LOGGER.info(
        "starting operator for %s (limit %d reconciling installations)",
        settings.api_group,
        settings.max_reconciling,
    )
    asyncio.run(operator.run())
