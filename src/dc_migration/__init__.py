"""dc-migrate - Move a data center's compute, storage and network resources between subscriptions."""

import logging

__version__ = "0.1.0"
__author__ = "DC Migration Team"
__license__ = "Apache-2.0"

# Suppress verbose third-party library logging
logging.getLogger("asyncio").setLevel(logging.WARNING)
