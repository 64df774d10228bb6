"""Test package for inbox_sync unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
