"""
Pytest configuration and shared fixtures
"""
import datetime
import ipaddress
import os
import socket
import ssl
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


def _name(common_name):
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "selfsigned-mqtt tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _validity(builder):
    now = datetime.datetime.now(datetime.timezone.utc)
    return builder.not_valid_before(now - datetime.timedelta(days=1)).not_valid_after(
        now + datetime.timedelta(days=30)
    )


def _make_ca(common_name):
    key = ec.generate_private_key(ec.SECP256R1())
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    cert = _validity(builder).sign(key, hashes.SHA256())
    return cert, key


def _make_server_cert(ca_cert, ca_key, dns_names, ip_addresses=()):
    key = ec.generate_private_key(ec.SECP256R1())
    san = [x509.DNSName(n) for n in dns_names]
    san += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses]
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(dns_names[0]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName(san), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    cert = _validity(builder).sign(ca_key, hashes.SHA256())
    return cert, key


def _write_pair(directory: Path, stem, cert, key):
    cert_path = directory / f"{stem}.crt"
    key_path = directory / f"{stem}.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@dataclass
class Pki:
    """A private CA, an unrelated CA, and server certificates for 127.0.0.1."""
    ca_cert: x509.Certificate
    ca_pem: bytes
    ca_der: bytes
    ca_path: Path
    other_ca_pem: bytes
    other_ca_path: Path
    server_cert_path: Path
    server_key_path: Path
    # signed by the pinned CA, but issued for a different host
    wrong_host_cert_path: Path
    wrong_host_key_path: Path
    # valid for 127.0.0.1, but signed by the unrelated CA
    foreign_cert_path: Path
    foreign_key_path: Path


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    directory = tmp_path_factory.mktemp("pki")

    ca_cert, ca_key = _make_ca("Test Broker CA")
    other_cert, other_key = _make_ca("Unrelated CA")

    ca_path, _ = _write_pair(directory, "ca", ca_cert, ca_key)
    other_ca_path, _ = _write_pair(directory, "other-ca", other_cert, other_key)

    server = _make_server_cert(ca_cert, ca_key, ["localhost"], ["127.0.0.1"])
    wrong_host = _make_server_cert(ca_cert, ca_key, ["broker.example.org"])
    foreign = _make_server_cert(other_cert, other_key, ["localhost"], ["127.0.0.1"])

    server_cert_path, server_key_path = _write_pair(directory, "server", *server)
    wrong_host_cert_path, wrong_host_key_path = _write_pair(directory, "wrong-host", *wrong_host)
    foreign_cert_path, foreign_key_path = _write_pair(directory, "foreign", *foreign)

    return Pki(
        ca_cert=ca_cert,
        ca_pem=ca_cert.public_bytes(serialization.Encoding.PEM),
        ca_der=ca_cert.public_bytes(serialization.Encoding.DER),
        ca_path=ca_path,
        other_ca_pem=other_cert.public_bytes(serialization.Encoding.PEM),
        other_ca_path=other_ca_path,
        server_cert_path=server_cert_path,
        server_key_path=server_key_path,
        wrong_host_cert_path=wrong_host_cert_path,
        wrong_host_key_path=wrong_host_key_path,
        foreign_cert_path=foreign_cert_path,
        foreign_key_path=foreign_key_path,
    )


@pytest.fixture
def tls_server():
    """
    Start a one-shot TLS server on 127.0.0.1; returns its port.

    The server completes (or fails) one handshake, then waits for the client
    to close the connection.
    """
    listeners = []
    threads = []

    def _start(cert_path, key_path):
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(str(cert_path), str(key_path))

        listener = socket.create_server(("127.0.0.1", 0))
        listener.settimeout(10)
        listeners.append(listener)

        def _serve():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            conn.settimeout(10)
            with conn:
                try:
                    with ctx.wrap_socket(conn, server_side=True) as tls:
                        tls.recv(1)
                except (ssl.SSLError, OSError):
                    pass

        t = threading.Thread(target=_serve, daemon=True)
        t.start()
        threads.append(t)
        return listener.getsockname()[1]

    yield _start

    for listener in listeners:
        listener.close()
    for t in threads:
        t.join(timeout=5)
