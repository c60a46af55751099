"""
Host-side lifecycle around the TLS factory and the broker session.

start(): pin the CA, connect, subscribe the configured filters.
stop():  disconnect and release the session.
Retry policy lives here, not in the session: reconnect() is called by the host
when it decides to, typically after on_connection_lost.
"""
from __future__ import annotations

import logging
from typing import Optional

from selfsigned_mqtt.config import ServiceConfig
from selfsigned_mqtt.errors import ProtocolError
from selfsigned_mqtt.listener import SessionListener
from selfsigned_mqtt.session import BrokerSession, SessionState
from selfsigned_mqtt.tls_factory import SecureTransportFactory, TrustAnchorTLSFactory

logger = logging.getLogger(__name__)


class BrokerService:
    def __init__(self, config: ServiceConfig, listener: Optional[SessionListener] = None) -> None:
        self.config = config
        self.factory = TrustAnchorTLSFactory(config.endpoint)
        self.session = BrokerSession(listener)
        self._transport: Optional[SecureTransportFactory] = None

    @property
    def broker_url(self) -> str:
        return self.factory.get_associated_broker_url()

    def start(self) -> None:
        """
        Build the pinned transport (once) and open the session.

        Certificate, protocol and trust store errors propagate before any
        network I/O happens; connect errors propagate as ConnectError.
        """
        if self._transport is None:
            self._transport = self.factory.build()
        self._connect()

    def reconnect(self) -> None:
        """Connect again after a lost connection; no-op while connected."""
        if self._transport is None:
            raise RuntimeError("start() must succeed before reconnect()")
        if self.session.state is not SessionState.DISCONNECTED:
            return
        logger.info("Reconnecting to %s", self.broker_url)
        self._connect()

    def _connect(self) -> None:
        cfg = self.config
        self.session.connect(
            self._transport,
            cfg.endpoint,
            cfg.client_id,
            keepalive_s=cfg.keepalive_s,
            connect_timeout_s=cfg.connect_timeout_s,
            username=cfg.username,
            password=cfg.password,
        )
        try:
            for topic_filter in cfg.subscriptions:
                self.session.subscribe(topic_filter)
        except Exception:
            # leave no half-subscribed session behind
            try:
                self.session.disconnect()
            except ProtocolError:
                logger.warning("Disconnect after failed subscribe was not clean")
            raise

    def stop(self) -> None:
        try:
            self.session.close()
        except ProtocolError:
            logger.exception("Clean disconnect from %s failed", self.broker_url)
        logger.info("Broker service stopped")
