"""
selfsigned-mqtt entrypoint.

CLI:
  selfsigned-mqtt run                      -> connect, subscribe MQTT_SUBSCRIBE, log messages until SIGINT/SIGTERM
  selfsigned-mqtt probe                    -> TLS handshake only; report whether the broker chains to the pinned CA
  selfsigned-mqtt publish TOPIC MESSAGE    -> publish one message and wait for delivery
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from cryptography import x509

from selfsigned_mqtt.config import ConfigError, ServiceConfig, package_version
from selfsigned_mqtt.errors import SelfSignedMQTTError
from selfsigned_mqtt.listener import LoggingListener

logger = logging.getLogger(__name__)


def _configure_logging(level: Optional[str] = None) -> None:
    """
    Single log level for all scopes (session, tls, paho).
    Uses --log-level if provided, else SELFSIGNED_MQTT_LOG_LEVEL env, else INFO.
    """
    from selfsigned_mqtt.log_config import apply_log_level

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_log_level(level)


def _load_config() -> Optional[ServiceConfig]:
    from selfsigned_mqtt.config import load_config

    try:
        return load_config()
    except (ConfigError, SelfSignedMQTTError) as exc:
        logger.error("Configuration error: %s", exc)
        return None


@dataclass
class Runtime:
    shutdown: threading.Event
    lost: threading.Event
    service: Optional[object] = None


class _RunListener(LoggingListener):
    def __init__(self, rt: Runtime) -> None:
        self._rt = rt

    def on_connection_lost(self, cause: BaseException) -> None:
        super().on_connection_lost(cause)
        self._rt.lost.set()


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_service() -> int:
    """
    Runtime mode: connect, subscribe, block until shutdown.
    Returns process exit code.
    """
    from selfsigned_mqtt.service import BrokerService

    cfg = _load_config()
    if cfg is None:
        return 1

    rt = Runtime(shutdown=threading.Event(), lost=threading.Event())
    _install_signal_handlers(rt)

    service = BrokerService(cfg, _RunListener(rt))
    rt.service = service

    logger.info("============================================================")
    logger.info("selfsigned-mqtt")
    logger.info("Version: %s", package_version())
    logger.info("Broker: %s", service.broker_url)
    logger.info("Client id: %s", cfg.client_id)
    logger.info("============================================================")

    try:
        service.start()
    except SelfSignedMQTTError as exc:
        logger.error("Failed to start: %s", exc)
        service.stop()
        return 1

    logger.info("Running (shutdown via SIGINT/SIGTERM)")
    code = 0
    try:
        while not rt.shutdown.is_set():
            if rt.lost.is_set():
                if cfg.reconnect_delay_s <= 0:
                    logger.error("Connection lost and reconnect disabled; exiting")
                    code = 1
                    break
                if rt.shutdown.wait(timeout=cfg.reconnect_delay_s):
                    break
                rt.lost.clear()
                try:
                    service.reconnect()
                except SelfSignedMQTTError as exc:
                    logger.error("Reconnect failed: %s", exc)
                    rt.lost.set()
                continue
            rt.shutdown.wait(timeout=0.5)
    finally:
        _shutdown(rt)

    return code


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")
    if rt.service:
        try:
            rt.service.stop()
        except Exception:
            logger.exception("Error stopping broker service")


def probe_broker() -> int:
    """Handshake with the broker using only the pinned CA; print the outcome."""
    from selfsigned_mqtt.tls_factory import TrustAnchorTLSFactory

    cfg = _load_config()
    if cfg is None:
        return 1

    factory = TrustAnchorTLSFactory(cfg.endpoint)
    url = factory.get_associated_broker_url()
    try:
        transport = factory.build()
        with transport.create_connection(timeout=cfg.connect_timeout_s) as sock:
            peer_der = sock.getpeercert(binary_form=True)
            tls_version = sock.version()
    except SelfSignedMQTTError as exc:
        print(f"UNTRUSTED {url}: {exc}")
        return 1

    anchor = factory.trust_anchor
    peer = x509.load_der_x509_certificate(peer_der)
    print(f"TRUSTED {url} ({tls_version})")
    print(f"  peer subject:  {peer.subject.rfc4514_string()}")
    print(f"  peer issuer:   {peer.issuer.rfc4514_string()}")
    print(f"  pinned CA:     {anchor.subject}")
    print(f"  CA sha256:     {anchor.fingerprint()}")
    return 0


def publish_once(topic: str, message: str, qos: int, timeout_s: float) -> int:
    """Connect, publish one message, wait for the ack on qos 1, disconnect."""
    from selfsigned_mqtt.service import BrokerService

    cfg = _load_config()
    if cfg is None:
        return 1

    delivered = threading.Event()

    class _PublishListener(LoggingListener):
        def on_delivery_complete(self, token) -> None:
            super().on_delivery_complete(token)
            delivered.set()

    service = BrokerService(dataclasses.replace(cfg, subscriptions=()), _PublishListener())
    code = 0
    try:
        service.start()
        token = service.session.publish(topic, message, qos)
        logger.info("Published mid=%s to %s (qos %d)", token.message_id, topic, qos)
        if qos > 0 and not delivered.wait(timeout=timeout_s):
            logger.error("No delivery confirmation for mid=%s within %.1fs", token.message_id, timeout_s)
            code = 1
    except SelfSignedMQTTError as exc:
        logger.error("Publish failed: %s", exc)
        code = 1
    finally:
        service.stop()
    return code


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="selfsigned-mqtt")
    p.add_argument("--version", action="version", version=package_version())
    p.add_argument("--log-level", metavar="LEVEL", help="DEBUG, INFO, WARNING, ERROR")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Connect, subscribe MQTT_SUBSCRIBE and log arriving messages")
    sub.add_parser("probe", help="Check that the broker certificate chains to the pinned CA")

    pub = sub.add_parser("publish", help="Publish a single message")
    pub.add_argument("topic")
    pub.add_argument("message")
    pub.add_argument("--qos", type=int, choices=(0, 1), default=1)
    pub.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        metavar="S",
        help="Seconds to wait for the broker acknowledgment (qos 1)",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    if args.cmd == "run":
        raise SystemExit(run_service())

    if args.cmd == "probe":
        raise SystemExit(probe_broker())

    if args.cmd == "publish":
        raise SystemExit(publish_once(args.topic, args.message, args.qos, args.timeout))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
