from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

import selfsigned_mqtt.main as m
from selfsigned_mqtt.config import BrokerEndpointConfig, ServiceConfig
from selfsigned_mqtt.errors import ConnectError, ConnectionLostError
from selfsigned_mqtt.session import DeliveryToken

ENV_KEYS = ["BROKER_HOST", "BROKER_PORT", "BROKER_CA_CERT", "BROKER_TLS_PROTOCOL", "MQTT_CONNECT_TIMEOUT"]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    # main() sets the root log level
    root = logging.getLogger()
    previous = root.level
    yield
    root.setLevel(previous)


def _cfg(reconnect_delay_s=0, subscriptions=("a/#",)):
    return ServiceConfig(
        endpoint=BrokerEndpointConfig(host="broker.local", ca_certificate=b"x"),
        client_id="cli-1",
        subscriptions=subscriptions,
        reconnect_delay_s=reconnect_delay_s,
    )


class FakeService:
    """Stands in for BrokerService; behaviour is set per test through hooks."""

    instances: list["FakeService"] = []

    def __init__(self, config, listener=None):
        self.config = config
        self.listener = listener
        self.broker_url = "tls://broker.local:8883"
        self.started = 0
        self.reconnects = 0
        self.stopped = 0
        self.on_start = None
        self.on_reconnect = None
        self.on_publish = None
        self.session = SimpleNamespace(publish=self._publish)
        FakeService.instances.append(self)
        if FakeService.configure is not None:
            FakeService.configure(self)

    configure = None

    def start(self):
        self.started += 1
        if self.on_start:
            self.on_start(self)

    def reconnect(self):
        self.reconnects += 1
        if self.on_reconnect:
            self.on_reconnect(self)

    def stop(self):
        self.stopped += 1

    def _publish(self, topic, payload, qos):
        token = DeliveryToken(message_id=1, serial=1, topic=topic, qos=qos)
        if self.on_publish:
            self.on_publish(self, token)
        return token


@pytest.fixture
def fake_service(monkeypatch):
    FakeService.instances = []
    FakeService.configure = None
    # main imports BrokerService inside the functions
    monkeypatch.setattr("selfsigned_mqtt.service.BrokerService", FakeService)
    return FakeService


@pytest.fixture
def runtime(monkeypatch):
    """Capture the Runtime instead of installing real signal handlers."""
    captured = {}
    monkeypatch.setattr(m, "_install_signal_handlers", lambda rt: captured.setdefault("rt", rt))
    return captured


# -------------------------
# argument parsing
# -------------------------
def test_parser_requires_subcommand():
    p = m.build_parser()
    with pytest.raises(SystemExit):
        p.parse_args([])


def test_version_flag_exits(monkeypatch):
    monkeypatch.setattr(m, "package_version", lambda: "1.0.0")
    with pytest.raises(SystemExit) as exc:
        m.main(["--version"])
    assert exc.value.code == 0


def test_publish_rejects_qos2():
    with pytest.raises(SystemExit):
        m.build_parser().parse_args(["publish", "a/b", "x", "--qos", "2"])


def test_run_exits_with_run_service_code(monkeypatch):
    monkeypatch.setattr(m, "run_service", lambda: 7)
    with pytest.raises(SystemExit) as exc:
        m.main(["--log-level", "WARNING", "run"])
    assert exc.value.code == 7


def test_probe_exits_with_probe_code(monkeypatch):
    monkeypatch.setattr(m, "probe_broker", lambda: 3)
    with pytest.raises(SystemExit) as exc:
        m.main(["probe"])
    assert exc.value.code == 3


def test_publish_passes_arguments(monkeypatch):
    seen = {}

    def fake_publish(topic, message, qos, timeout_s):
        seen.update(topic=topic, message=message, qos=qos, timeout_s=timeout_s)
        return 0

    monkeypatch.setattr(m, "publish_once", fake_publish)
    with pytest.raises(SystemExit) as exc:
        m.main(["publish", "a/b", "hello", "--qos", "0", "--timeout", "2.5"])

    assert exc.value.code == 0
    assert seen == {"topic": "a/b", "message": "hello", "qos": 0, "timeout_s": 2.5}


# -------------------------
# run
# -------------------------
def test_run_fails_on_missing_config(fake_service, runtime):
    assert m.run_service() == 1
    assert fake_service.instances == []


def test_run_fails_when_start_fails(monkeypatch, fake_service, runtime):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())

    def _fail(svc):
        raise ConnectError("unreachable")

    fake_service.configure = lambda svc: setattr(svc, "on_start", _fail)

    assert m.run_service() == 1
    assert fake_service.instances[0].stopped == 1


def test_run_stops_cleanly_on_shutdown(monkeypatch, fake_service, runtime):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())
    fake_service.configure = lambda svc: setattr(svc, "on_start", lambda s: runtime["rt"].shutdown.set())

    assert m.run_service() == 0

    svc = fake_service.instances[0]
    assert svc.started == 1
    assert svc.stopped == 1


def test_run_exits_on_loss_without_reconnect(monkeypatch, fake_service, runtime):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg(reconnect_delay_s=0))

    def _lose(svc):
        svc.listener.on_connection_lost(ConnectionLostError("gone", reason_code=7))

    fake_service.configure = lambda svc: setattr(svc, "on_start", _lose)

    assert m.run_service() == 1
    assert fake_service.instances[0].reconnects == 0
    assert fake_service.instances[0].stopped == 1


def test_run_reconnects_after_delay(monkeypatch, fake_service, runtime):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg(reconnect_delay_s=1))

    def _lose(svc):
        svc.listener.on_connection_lost(ConnectionLostError("gone", reason_code=7))

    def _configure(svc):
        svc.on_start = _lose
        svc.on_reconnect = lambda s: runtime["rt"].shutdown.set()

    fake_service.configure = _configure

    assert m.run_service() == 0
    assert fake_service.instances[0].reconnects == 1


# -------------------------
# publish
# -------------------------
def test_publish_once_waits_for_delivery(monkeypatch, fake_service):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())
    fake_service.configure = lambda svc: setattr(
        svc, "on_publish", lambda s, token: s.listener.on_delivery_complete(token)
    )

    assert m.publish_once("a/b", "hello", 1, 1.0) == 0

    svc = fake_service.instances[0]
    # publish never subscribes
    assert svc.config.subscriptions == ()
    assert svc.stopped == 1


def test_publish_once_times_out_without_ack(monkeypatch, fake_service):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())

    assert m.publish_once("a/b", "hello", 1, 0.05) == 1
    assert fake_service.instances[0].stopped == 1


def test_publish_once_qos0_does_not_wait(monkeypatch, fake_service):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())

    assert m.publish_once("a/b", "hello", 0, 0.05) == 0


def test_publish_once_reports_connect_failure(monkeypatch, fake_service):
    monkeypatch.setattr(m, "_load_config", lambda: _cfg())

    def _fail(svc):
        raise ConnectError("unreachable")

    fake_service.configure = lambda svc: setattr(svc, "on_start", _fail)

    assert m.publish_once("a/b", "hello", 1, 1.0) == 1
    assert fake_service.instances[0].stopped == 1


# -------------------------
# probe against a local TLS server
# -------------------------
def _probe_env(monkeypatch, port, ca_path):
    monkeypatch.setenv("BROKER_HOST", "127.0.0.1")
    monkeypatch.setenv("BROKER_PORT", str(port))
    monkeypatch.setenv("BROKER_CA_CERT", str(ca_path))
    monkeypatch.setenv("MQTT_CONNECT_TIMEOUT", "5")


def test_probe_reports_trusted_broker(monkeypatch, capsys, pki, tls_server):
    port = tls_server(pki.server_cert_path, pki.server_key_path)
    _probe_env(monkeypatch, port, pki.ca_path)

    assert m.probe_broker() == 0

    out = capsys.readouterr().out
    assert f"TRUSTED tls://127.0.0.1:{port}" in out
    assert "Test Broker CA" in out


def test_probe_reports_untrusted_broker(monkeypatch, capsys, pki, tls_server):
    port = tls_server(pki.server_cert_path, pki.server_key_path)
    _probe_env(monkeypatch, port, pki.other_ca_path)

    assert m.probe_broker() == 1

    assert f"UNTRUSTED tls://127.0.0.1:{port}" in capsys.readouterr().out


def test_probe_fails_on_missing_config():
    assert m.probe_broker() == 1
