"""
Error types raised by the TLS factory and the broker session.

Setup errors (certificate, protocol, trust store) are fatal: the caller must not
open a session after one of them. Connect errors are reported to the caller and
never retried here.
"""

from __future__ import annotations

from typing import Any, Optional


class SelfSignedMQTTError(Exception):
    """Base class for all selfsigned_mqtt errors."""


class CertificateError(SelfSignedMQTTError):
    """CA certificate input is absent, malformed, or holds more than one certificate."""


class UnsupportedProtocolError(SelfSignedMQTTError):
    """The requested TLS protocol string is not one we know how to pin."""


class TrustStoreInitError(SelfSignedMQTTError):
    """The trust store or TLS context could not be initialised."""


class ConnectError(SelfSignedMQTTError):
    """Connecting to the broker failed (socket, TLS handshake, or CONNACK)."""


class HandshakeError(ConnectError):
    """The TLS handshake failed for a reason other than certificate trust."""


class TrustValidationError(HandshakeError):
    """The broker presented a certificate that does not chain to the pinned CA."""


class BrokerRejectedError(ConnectError):
    """The broker answered CONNECT with a refusal."""

    def __init__(self, message: str, reason_code: Any = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class NotConnected(SelfSignedMQTTError):
    """An operation that needs a live connection was called while not connected."""


class AlreadyConnectingOrConnected(SelfSignedMQTTError):
    """connect() was called while the session was not Disconnected."""


class ProtocolError(SelfSignedMQTTError):
    """Broker or protocol level failure during subscribe, publish or disconnect."""


class InvalidTopicError(ProtocolError):
    """A topic name or filter breaks the MQTT topic rules."""


class ConnectionLostError(SelfSignedMQTTError):
    """Passed as the cause to on_connection_lost."""

    def __init__(self, message: str, reason_code: Optional[Any] = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
