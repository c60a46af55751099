"""
Notification contract between a BrokerSession and its host.

Callbacks run on the session's notification thread, one at a time and in the
order the events arrived. They may call back into the session.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from selfsigned_mqtt.session import DeliveryToken

logger = logging.getLogger(__name__)


class SessionListener(Protocol):
    """
    What a host implements to hear from the session.
    Keep it small: the host decides retries and what to do with messages.
    """

    def on_connection_lost(self, cause: BaseException) -> None: ...

    def on_message_arrived(self, topic: str, payload: bytes) -> None: ...

    def on_delivery_complete(self, token: "DeliveryToken") -> None: ...


class LoggingListener:
    """Default listener: log every event and do nothing else."""

    def on_connection_lost(self, cause: BaseException) -> None:
        logger.warning("Connection lost: %s", cause)

    def on_message_arrived(self, topic: str, payload: bytes) -> None:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            text = f"<{len(payload)} bytes>"
        logger.info("Message arrived topic=%s payload=%s", topic, text)

    def on_delivery_complete(self, token: "DeliveryToken") -> None:
        logger.info("Delivery completed mid=%s topic=%s", token.message_id, token.topic)
