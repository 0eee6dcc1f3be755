"""Fallback deliverer that only records a log line.

Used by the CLI and in development when no transport is configured. Nothing
is retained in memory, and the code itself is never written to the log.
"""

from __future__ import annotations

import logging

from multiauth.delivery.base import Deliverer

logger = logging.getLogger(__name__)


class LogDeliverer(Deliverer):
    async def deliver(self, channel: str, destination: str, payload: dict) -> bool:
        logger.info(
            "Delivery via %s to %s (purpose=%s)", channel, destination, payload.get("purpose")
        )
        return True
