"""Delivery channel interface.

Email, SMS, and messenger transports each implement this. The engine only
looks at the boolean result, to tell the user whether a code went out.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class Deliverer(ABC):
    @abstractmethod
    async def deliver(self, channel: str, destination: str, payload: dict) -> bool:
        """Send ``payload`` to ``destination`` over ``channel``.

        Must not raise for transport failures; return False instead.
        """
