"""Notifier ABC: where confirmation messages are handed off.

The resolver treats dispatch as fire-and-forget: whether a message is
queued, sent immediately, or retried later is the notifier's business.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class Notifier(ABC):
    @abstractmethod
    async def send(
        self,
        to: str,
        from_: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Dispatch one message.

        Returns a dict describing what happened, e.g.
        ``{"queued": True, "id": 12}`` or ``{"queued": False, "message_id": "..."}``.
        """
