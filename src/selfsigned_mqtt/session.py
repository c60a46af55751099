"""
BrokerSession: one MQTT connection over a pinned-CA TLS transport.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED
A lost connection goes CONNECTED -> DISCONNECTED and is reported through
on_connection_lost. Nothing here reconnects on its own.

Threads:
- paho's network thread (loop_start) runs the _on_* callbacks. They never take
  the session lock; they only queue work on the notification channel.
- the notification channel is a single-worker executor, so listener callbacks
  run one at a time in arrival order. It applies state changes under the
  session lock and calls the listener outside it.
- host threads call connect/subscribe/publish/disconnect.

disconnect() while connect() is in flight waits for the connect to finish or
fail, then applies to whatever state results.
A connection that drops while disconnect() is already under way is not
reported through on_connection_lost; disconnect() raises ProtocolError instead.
"""

from __future__ import annotations

import enum
import itertools
import json
import logging
import ssl
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from selfsigned_mqtt.config import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_KEEPALIVE_S,
    BrokerEndpointConfig,
)
from selfsigned_mqtt.errors import (
    AlreadyConnectingOrConnected,
    BrokerRejectedError,
    ConnectError,
    ConnectionLostError,
    HandshakeError,
    NotConnected,
    ProtocolError,
    TrustValidationError,
)
from selfsigned_mqtt.listener import LoggingListener, SessionListener
from selfsigned_mqtt.mqtt_topics import validate_topic_filter, validate_topic_name
from selfsigned_mqtt.tls_factory import SecureTransportFactory

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True, slots=True)
class DeliveryToken:
    """Handle returned by publish(); serial stays unique when message ids wrap."""

    message_id: int
    serial: int
    topic: str
    qos: int


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    topic: str
    payload: bytes = field(repr=False)
    qos: int


def _to_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (dict, list)):
        payload = json.dumps(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")


def _connack_failed(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return reason_code != 0


def _suback_failed(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return int(reason_code) >= 0x80


class _AckTracker:
    """
    Matches SUBACKs to subscribe() calls.

    paho may handle the SUBACK before subscribe() has looked at the message id,
    so results are parked until someone asks for them. A SUBACK that arrives
    after its waiter gave up is dropped, so a later subscribe() reusing the
    message id never sees it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiting: dict[int, threading.Event] = {}
        self._results: dict[int, Any] = {}
        self._abandoned: set[int] = set()
        self._generation = 0

    def resolve(self, mid: int, result: Any) -> None:
        with self._lock:
            if mid in self._abandoned:
                self._abandoned.discard(mid)
                return
            self._results[mid] = result
            event = self._waiting.pop(mid, None)
        if event is not None:
            event.set()

    def wait(self, mid: int, timeout: float) -> tuple[bool, Any]:
        with self._lock:
            self._abandoned.discard(mid)
            if mid in self._results:
                return True, self._results.pop(mid)
            generation = self._generation
            event = self._waiting[mid] = threading.Event()
        event.wait(timeout)
        with self._lock:
            if generation != self._generation:
                # cleared while waiting; anything stored now belongs to a newer connection
                return False, None
            self._waiting.pop(mid, None)
            if mid in self._results:
                return True, self._results.pop(mid)
            self._abandoned.add(mid)
        return False, None

    def clear(self) -> None:
        """Drop parked results and wake every waiter empty-handed."""
        with self._lock:
            events = list(self._waiting.values())
            self._waiting.clear()
            self._results.clear()
            self._abandoned.clear()
            self._generation += 1
        for event in events:
            event.set()


class BrokerSession:
    """
    Owns exactly one MQTT connection to the broker.

    subscribe() and publish() are refused with NotConnected unless the session
    is CONNECTED. Events from the broker reach the listener through a single
    notification thread.
    """

    def __init__(self, listener: Optional[SessionListener] = None) -> None:
        self._listener: SessionListener = listener or LoggingListener()

        self._lock = threading.Lock()
        self._state_changed = threading.Condition(self._lock)
        self._state = SessionState.DISCONNECTED

        self._client: Optional[mqtt.Client] = None
        self._client_id: Optional[str] = None
        self._endpoint: Optional[BrokerEndpointConfig] = None
        self._op_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S

        self._subscriptions: set[str] = set()
        self._pending: dict[int, tuple[DeliveryToken, OutboundMessage]] = {}
        self._serials = itertools.count(1)
        self._acks = _AckTracker()

        # CONNACK hand-off from paho's thread to connect()
        self._connack = threading.Event()
        self._connack_result: Optional[tuple[str, Any]] = None
        self._dropped: Optional[mqtt.Client] = None

        self._executor: Optional[ThreadPoolExecutor] = None

    # -------------------------
    # Introspection
    # -------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def subscriptions(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._subscriptions)

    @property
    def pending_deliveries(self) -> dict[DeliveryToken, OutboundMessage]:
        with self._lock:
            return {token: msg for token, msg in self._pending.values()}

    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    # -------------------------
    # Host operations
    # -------------------------
    def connect(
        self,
        transport: SecureTransportFactory,
        endpoint: BrokerEndpointConfig,
        client_id: str,
        *,
        keepalive_s: int = DEFAULT_KEEPALIVE_S,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """
        Open the TLS connection and complete the MQTT CONNECT exchange.

        Blocks for at most about connect_timeout_s (TCP connect, then CONNACK).
        Raises AlreadyConnectingOrConnected unless DISCONNECTED, and a
        ConnectError subclass on failure, after which the session is
        DISCONNECTED again.
        """
        if keepalive_s <= 0 or connect_timeout_s <= 0:
            raise ValueError("keepalive_s and connect_timeout_s must be > 0")

        with self._lock:
            if self._state is not SessionState.DISCONNECTED:
                raise AlreadyConnectingOrConnected(f"Session is {self._state.value}")
            self._set_state(SessionState.CONNECTING)
            self._client_id = client_id
            self._endpoint = endpoint
            self._op_timeout_s = connect_timeout_s
            self._ensure_notifier()

        client: Optional[mqtt.Client] = None
        try:
            client = self._new_client(transport, client_id, connect_timeout_s, username, password)
            self._open(client, endpoint, keepalive_s, connect_timeout_s)
            with self._lock:
                if self._dropped is client:
                    raise ConnectError(f"Connection to {endpoint.uri} dropped right after CONNACK")
                self._set_state(SessionState.CONNECTED)
        except BaseException:
            if client is not None:
                self._teardown(client)
            with self._lock:
                self._client = None
                self._set_state(SessionState.DISCONNECTED)
            raise

        logger.info("Connected to %s as %s", endpoint.uri, client_id)

    def subscribe(self, topic_filter: str, qos: int = 1) -> None:
        """
        Subscribe and wait for the SUBACK.

        Re-subscribing to a filter already held does no I/O.
        """
        validate_topic_filter(topic_filter)
        if qos not in (0, 1):
            raise ValueError("qos must be 0 or 1")

        with self._lock:
            client = self._require_connected()
            if topic_filter in self._subscriptions:
                logger.debug("Already subscribed: %s", topic_filter)
                return
            timeout = self._op_timeout_s

        try:
            result, mid = client.subscribe(topic_filter, qos=qos)
        except ValueError as exc:
            raise ProtocolError(f"Subscribe to {topic_filter} rejected: {exc}") from exc
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ProtocolError(f"Subscribe to {topic_filter} failed: {mqtt.error_string(result)}")

        acked, reason_codes = self._acks.wait(mid, timeout)
        if not acked:
            raise ProtocolError(f"No SUBACK for {topic_filter} within {timeout}s")
        if any(_suback_failed(rc) for rc in reason_codes):
            raise ProtocolError(f"Broker refused subscription to {topic_filter}: {reason_codes}")

        with self._lock:
            if self._client is not client or self._state is not SessionState.CONNECTED:
                raise ProtocolError(f"Connection lost while subscribing to {topic_filter}")
            self._subscriptions.add(topic_filter)
        logger.info("Subscribed: %s", topic_filter)

    def publish(self, topic: str, payload: Any = None, qos: int = 0, *, retain: bool = False) -> DeliveryToken:
        """
        Queue a message for the broker and return its delivery token.

        For qos 1 the token stays in pending_deliveries until the broker's
        acknowledgment has been handed to on_delivery_complete.
        """
        validate_topic_name(topic)
        if qos not in (0, 1):
            raise ValueError("qos must be 0 or 1")
        data = _to_bytes(payload)

        # The token is registered under the lock, and acknowledgments are
        # processed under the same lock, so an ack cannot overtake it.
        with self._lock:
            client = self._require_connected()
            try:
                info = client.publish(topic, payload=data, qos=qos, retain=retain)
            except ValueError as exc:
                raise ProtocolError(f"Publish to {topic} rejected: {exc}") from exc
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise ProtocolError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

            token = DeliveryToken(
                message_id=info.mid,
                serial=next(self._serials),
                topic=topic,
                qos=qos,
            )
            if qos > 0:
                self._pending[info.mid] = (token, OutboundMessage(topic=topic, payload=data, qos=qos))
        return token

    def disconnect(self) -> None:
        """
        Close the connection cleanly if possible; always ends DISCONNECTED.

        No-op when already DISCONNECTED (or being disconnected elsewhere).
        Raises ProtocolError if the clean shutdown failed.
        """
        with self._state_changed:
            while self._state is SessionState.CONNECTING:
                self._state_changed.wait()
            if self._state is not SessionState.CONNECTED:
                return
            self._set_state(SessionState.DISCONNECTING)
            client = self._client
            endpoint = self._endpoint

        error: Optional[BaseException] = None
        try:
            rc = client.disconnect()
            if rc != mqtt.MQTT_ERR_SUCCESS:
                error = ProtocolError(f"Clean disconnect failed: {mqtt.error_string(rc)}")
        except Exception as exc:
            error = exc
        finally:
            client.loop_stop()
            with self._lock:
                self._reset()
                self._set_state(SessionState.DISCONNECTED)
            self._acks.clear()

        logger.info("Disconnected from %s", endpoint.uri if endpoint else "broker")
        if isinstance(error, ProtocolError):
            raise error
        if error is not None:
            raise ProtocolError(f"Clean disconnect failed: {error}") from error

    def close(self) -> None:
        """Host teardown: disconnect if needed, then stop the notification channel."""
        try:
            self.disconnect()
        finally:
            executor, self._executor = self._executor, None
            if executor is not None:
                executor.shutdown(wait=False)

    # -------------------------
    # Connection plumbing
    # -------------------------
    def _set_state(self, state: SessionState) -> None:
        # caller holds self._lock
        if state is not self._state:
            logger.debug("Session state %s -> %s", self._state.value, state.value)
        self._state = state
        self._state_changed.notify_all()

    def _reset(self) -> None:
        # caller holds self._lock
        self._client = None
        self._subscriptions.clear()
        self._pending.clear()

    def _require_connected(self) -> mqtt.Client:
        # caller holds self._lock
        if self._state is not SessionState.CONNECTED or self._client is None:
            raise NotConnected(f"Session is {self._state.value}")
        return self._client

    def _ensure_notifier(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-notify")

    def _new_client(
        self,
        transport: SecureTransportFactory,
        client_id: str,
        connect_timeout_s: float,
        username: Optional[str],
        password: Optional[str],
    ) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
            reconnect_on_failure=False,
        )
        client.tls_set_context(transport.ssl_context)
        client.connect_timeout = connect_timeout_s
        if username:
            client.username_pw_set(username, password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe

        self._connack.clear()
        self._connack_result = None
        self._dropped = None
        with self._lock:
            self._client = client
        return client

    def _open(
        self,
        client: mqtt.Client,
        endpoint: BrokerEndpointConfig,
        keepalive_s: int,
        connect_timeout_s: float,
    ) -> None:
        try:
            client.connect(endpoint.host, endpoint.port, keepalive=keepalive_s)
        except ssl.SSLCertVerificationError as exc:
            raise TrustValidationError(
                f"Broker {endpoint.uri} presented a certificate not signed by the pinned CA: "
                f"{getattr(exc, 'verify_message', None) or exc}"
            ) from exc
        except ssl.SSLError as exc:
            raise HandshakeError(f"TLS handshake with {endpoint.uri} failed: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise ConnectError(f"Cannot connect to {endpoint.uri}: {exc}") from exc

        client.loop_start()

        if not self._connack.wait(connect_timeout_s):
            raise ConnectError(f"No CONNACK from {endpoint.uri} within {connect_timeout_s}s")
        kind, reason_code = self._connack_result or ("lost", None)
        if kind == "lost":
            raise ConnectError(f"Connection to {endpoint.uri} closed before CONNACK: {reason_code}")
        if _connack_failed(reason_code):
            raise BrokerRejectedError(
                f"Broker {endpoint.uri} refused the connection: {reason_code}",
                reason_code=reason_code,
            )

    def _teardown(self, client: mqtt.Client) -> None:
        try:
            client.disconnect()
        except Exception:
            logger.debug("Disconnect after failed connect raised", exc_info=True)
        client.loop_stop()

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if client is not self._client:
            return
        self._connack_result = ("connack", reason_code)
        self._connack.set()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if client is self._client:
            self._dropped = client
            if not self._connack.is_set():
                self._connack_result = ("lost", reason_code)
                self._connack.set()
        self._notify(self._handle_disconnect, client, reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._notify(self._deliver_message, client, msg.topic, bytes(msg.payload))

    def _on_publish(self, client: mqtt.Client, userdata: Any, mid: int, reason_code: Any = None, properties: Any = None) -> None:
        self._notify(self._complete_delivery, client, mid)

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_codes: Any, properties: Any = None) -> None:
        if client is self._client:
            self._acks.resolve(mid, list(reason_codes))

    def _notify(self, fn: Callable[..., None], *args: Any) -> None:
        executor = self._executor
        if executor is None:
            logger.debug("Notification channel closed; dropping %s", fn.__name__)
            return
        try:
            executor.submit(self._run_notification, fn, *args)
        except RuntimeError:
            logger.debug("Notification channel shut down; dropping %s", fn.__name__)

    # -------------------------
    # Notification channel (single worker)
    # -------------------------
    def _run_notification(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Session listener failed in %s", fn.__name__)

    def _handle_disconnect(self, client: mqtt.Client, reason_code: Any) -> None:
        with self._lock:
            if client is not self._client or self._state is not SessionState.CONNECTED:
                return
            self._reset()
            self._set_state(SessionState.DISCONNECTED)
            endpoint = self._endpoint
        self._acks.clear()
        client.loop_stop()

        where = endpoint.uri if endpoint else "broker"
        logger.warning("Connection to %s lost: %s", where, reason_code)
        self._listener.on_connection_lost(
            ConnectionLostError(f"Connection to {where} lost: {reason_code}", reason_code=reason_code)
        )

    def _deliver_message(self, client: mqtt.Client, topic: str, payload: bytes) -> None:
        if client is not self._client:
            return
        self._listener.on_message_arrived(topic, payload)

    def _complete_delivery(self, client: mqtt.Client, mid: int) -> None:
        with self._lock:
            if client is not self._client:
                return
            entry = self._pending.pop(mid, None)
        if entry is None:
            return
        token, _ = entry
        self._listener.on_delivery_complete(token)
