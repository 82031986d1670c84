"""TLS configuration built from certificate files."""

from __future__ import annotations

import enum
import ssl
from dataclasses import dataclass
from pathlib import Path


class CAType(enum.Enum):
    """Whether a CA bundle verifies clients or servers."""

    CLIENT = "client"
    SERVER = "server"


class ClientAuth(enum.Enum):
    """Client certificate policy on the server side."""

    NO_CLIENT_CERT = "no_client_cert"
    REQUIRE_AND_VERIFY_CLIENT_CERT = "require_and_verify_client_cert"


@dataclass
class TlsConfig:
    """TLS parameters; CA bundles are held as PEM text."""

    insecure_skip_verify: bool = False
    cert_file: str | None = None
    key_file: str | None = None
    root_cas: str | None = None
    client_cas: str | None = None
    client_auth: ClientAuth = ClientAuth.NO_CLIENT_CERT

    def create_context(self, server_side: bool = False) -> ssl.SSLContext:
        """Build an :class:`ssl.SSLContext` for a server or a client."""
        if server_side:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            if self.client_cas is not None:
                context.load_default_certs(ssl.Purpose.CLIENT_AUTH)
                context.load_verify_locations(cadata=self.client_cas)
            if self.client_auth is ClientAuth.REQUIRE_AND_VERIFY_CLIENT_CERT:
                context.verify_mode = ssl.CERT_REQUIRED
            else:
                context.verify_mode = ssl.CERT_NONE
        else:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            if self.insecure_skip_verify:
                # The chain is still verified; only the host name is not.
                context.check_hostname = False
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)
            if self.root_cas is not None:
                context.load_verify_locations(cadata=self.root_cas)
        if self.cert_file and self.key_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        return context


def _read_ca_bundle(ca_cert_file: str) -> str:
    try:
        data = Path(ca_cert_file).read_bytes()
    except OSError as exc:
        raise ValueError(f"failed to read file: {ca_cert_file}: {exc}") from exc
    try:
        pem = data.decode("ascii")
        ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT).load_verify_locations(cadata=pem)
    except (UnicodeDecodeError, ssl.SSLError, ValueError) as exc:
        raise ValueError(
            f"failed to load the provided TLS CA certificate: {ca_cert_file}"
        ) from exc
    return pem


def tls_config_from_files(
    cert_file: str,
    key_file: str,
    ca_cert_file: str,
    ca_type: CAType,
    skip_hostname_verification: bool,
) -> TlsConfig:
    """Build a :class:`TlsConfig` from key pair and CA files; raise ValueError on bad files."""
    config = TlsConfig(insecure_skip_verify=skip_hostname_verification)
    if cert_file and key_file:
        try:
            ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT).load_cert_chain(cert_file, key_file)
        except OSError as exc:
            raise ValueError(
                f"failed to load TLS key pair ({cert_file},{key_file}): {exc}"
            ) from exc
        config.cert_file = cert_file
        config.key_file = key_file
    if ca_cert_file:
        pem = _read_ca_bundle(ca_cert_file)
        if ca_type is CAType.CLIENT:
            config.client_cas = pem
        else:
            config.root_cas = pem
    return config