"""
TLS transport that trusts exactly one CA certificate.

The broker's certificate is signed by a CA that is not in the system trust
store. Instead of trusting that leaf certificate we pin the CA itself, so the
CA can re-issue the broker certificate without a client update, while any
chain that does not end at this CA is rejected, public roots included.
"""

from __future__ import annotations

import logging
import re
import socket
import ssl
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding

from selfsigned_mqtt.config import BrokerEndpointConfig, TlsProtocol
from selfsigned_mqtt.errors import (
    CertificateError,
    ConnectError,
    HandshakeError,
    TrustStoreInitError,
    TrustValidationError,
)

logger = logging.getLogger(__name__)

TRUST_ANCHOR_ALIAS = "ca"

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----.*?-----END \1-----", re.DOTALL)

# (minimum, maximum); None leaves the library default in place
_PROTOCOL_VERSIONS: dict[TlsProtocol, tuple[Optional[ssl.TLSVersion], Optional[ssl.TLSVersion]]] = {
    TlsProtocol.TLS: (None, None),
    TlsProtocol.TLS_1_1: (ssl.TLSVersion.TLSv1_1, ssl.TLSVersion.TLSv1_1),
    TlsProtocol.TLS_1_2: (ssl.TLSVersion.TLSv1_2, ssl.TLSVersion.TLSv1_2),
    TlsProtocol.TLS_1_3: (ssl.TLSVersion.TLSv1_3, ssl.TLSVersion.TLSv1_3),
}


def parse_ca_certificate(data: Union[bytes, bytearray, memoryview]) -> x509.Certificate:
    """
    Parse exactly one X.509 certificate from PEM or DER bytes.

    Raises CertificateError for empty input, unparsable input, or PEM input
    holding more than one certificate or anything besides PEM blocks.
    """
    raw = bytes(data or b"")
    if not raw.strip():
        raise CertificateError("CA certificate input is empty")

    if b"-----BEGIN" in raw:
        if _PEM_BLOCK.sub(b"", raw).strip():
            raise CertificateError("Unexpected data outside the PEM blocks of the CA certificate")
        try:
            certs = x509.load_pem_x509_certificates(raw)
        except ValueError as exc:
            raise CertificateError(f"Malformed PEM CA certificate: {exc}") from exc
        if len(certs) != 1:
            raise CertificateError(
                f"Expected exactly one CA certificate, found {len(certs)}"
            )
        return certs[0]

    try:
        return x509.load_der_x509_certificate(raw)
    except ValueError as exc:
        raise CertificateError(f"Malformed DER CA certificate: {exc}") from exc


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return bool(bc.value.ca)


@dataclass(frozen=True, slots=True)
class TrustAnchor:
    """The pinned CA and the single-entry trust store holding it."""

    certificate: x509.Certificate
    store: ssl.SSLContext = field(repr=False)
    alias: str = TRUST_ANCHOR_ALIAS

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def der(self) -> bytes:
        return self.certificate.public_bytes(Encoding.DER)

    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()


class SecureTransportFactory:
    """
    Mints TLS connections to the configured broker.

    Peer validation is done only by the wrapped context, whose CA store holds
    the pinned anchor and nothing else. Stateless apart from that context.
    """

    def __init__(self, context: ssl.SSLContext, endpoint: BrokerEndpointConfig, anchor: TrustAnchor) -> None:
        self._context = context
        self._endpoint = endpoint
        self._anchor = anchor

    @property
    def ssl_context(self) -> ssl.SSLContext:
        return self._context

    @property
    def endpoint(self) -> BrokerEndpointConfig:
        return self._endpoint

    @property
    def trust_anchor(self) -> TrustAnchor:
        return self._anchor

    def wrap_socket(self, sock: socket.socket) -> ssl.SSLSocket:
        """Run the TLS handshake on an already connected socket."""
        try:
            return self._context.wrap_socket(sock, server_hostname=self._endpoint.host)
        except ssl.SSLCertVerificationError as exc:
            raise TrustValidationError(
                f"Broker certificate not trusted by pinned CA {self._anchor.subject}: "
                f"{getattr(exc, 'verify_message', None) or exc}"
            ) from exc
        except ssl.SSLError as exc:
            raise HandshakeError(f"TLS handshake with {self._endpoint.uri} failed: {exc}") from exc

    def create_connection(self, timeout: Optional[float] = None) -> ssl.SSLSocket:
        """Open a new TCP connection to the endpoint and complete the TLS handshake."""
        ep = self._endpoint
        try:
            sock = socket.create_connection((ep.host, ep.port), timeout=timeout)
        except OSError as exc:
            raise ConnectError(f"Cannot reach {ep.uri}: {exc}") from exc
        try:
            return self.wrap_socket(sock)
        except ConnectError:
            sock.close()
            raise
        except OSError as exc:
            sock.close()
            raise ConnectError(f"Connection to {ep.uri} failed during handshake: {exc}") from exc


class TrustAnchorTLSFactory:
    """
    Builds a SecureTransportFactory that trusts one CA for one broker endpoint.

    Usage:
        factory = TrustAnchorTLSFactory(endpoint)
        transport = factory.build()
        session.connect(transport, endpoint, client_id)
    """

    def __init__(self, endpoint: BrokerEndpointConfig) -> None:
        self._endpoint = endpoint
        self._anchor: Optional[TrustAnchor] = None
        self._transport: Optional[SecureTransportFactory] = None

    @property
    def trust_anchor(self) -> Optional[TrustAnchor]:
        return self._anchor

    def build(
        self,
        ca_certificate: Optional[bytes] = None,
        protocol: Union[str, TlsProtocol, None] = None,
    ) -> SecureTransportFactory:
        """
        Parse the CA, build a single-entry trust store and a TLS context pinned
        to the requested protocol.

        Defaults to the CA bytes and protocol of the endpoint config. On any
        failure nothing is stored, so get_secure_socket_factory() keeps
        returning the previous value (None on first build).
        """
        raw = self._endpoint.ca_certificate if ca_certificate is None else ca_certificate
        proto = TlsProtocol.parse(self._endpoint.protocol if protocol is None else protocol)

        cert = parse_ca_certificate(raw)
        if not _is_ca(cert):
            logger.warning(
                "Pinned certificate %s is not marked as a CA; trusting it as a self-signed anchor",
                cert.subject.rfc4514_string(),
            )

        context = self._create_context(cert, proto)
        anchor = TrustAnchor(certificate=cert, store=context)
        transport = SecureTransportFactory(context, self._endpoint, anchor)

        self._anchor = anchor
        self._transport = transport
        logger.info(
            "Pinned CA %s (sha256 %s) for %s using %s",
            anchor.subject,
            anchor.fingerprint(),
            self._endpoint.uri,
            proto.value,
        )
        return transport

    def _create_context(self, cert: x509.Certificate, protocol: TlsProtocol) -> ssl.SSLContext:
        # PROTOCOL_TLS_CLIENT starts with an empty CA store, CERT_REQUIRED and
        # hostname checking; load_default_certs() must never be called on it.
        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.verify_mode = ssl.CERT_REQUIRED
            context.check_hostname = True

            minimum, maximum = _PROTOCOL_VERSIONS[protocol]
            if minimum is not None:
                context.minimum_version = minimum
            if maximum is not None:
                context.maximum_version = maximum

            context.load_verify_locations(cadata=cert.public_bytes(Encoding.DER))
        except (ssl.SSLError, ValueError, OSError) as exc:
            raise TrustStoreInitError(f"Cannot initialise trust store for {protocol.value}: {exc}") from exc

        loaded = context.cert_store_stats().get("x509", 0)
        if loaded != 1:
            raise TrustStoreInitError(f"Trust store holds {loaded} certificates, expected 1")
        return context

    def get_secure_socket_factory(self) -> Optional[SecureTransportFactory]:
        return self._transport

    def get_associated_broker_url(self) -> str:
        return self._endpoint.uri
