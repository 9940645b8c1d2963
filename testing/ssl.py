"""Create self-signed SSL certificates for testing secure relay servers.

Warning:
    None of the functions in this module are safe and should only be used
    for creating temporary self-signed certificates for testing.
"""

from __future__ import annotations

import datetime
import pathlib
import ssl
from typing import NamedTuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID


class SSLContextFixture(NamedTuple):
    """SSL fixture return type."""

    certfile: str
    keyfile: str
    ssl_context: ssl.SSLContext


@pytest.fixture(scope='session')
def ssl_context(tmp_path_factory: pytest.TempPathFactory) -> SSLContextFixture:
    """Create a server SSL context from a self-signed certificate."""
    tmp_path = tmp_path_factory.mktemp('ssl-context-fixture')
    certfile = tmp_path / 'cert.pem'
    keyfile = tmp_path / 'key.pem'
    cert, key = create_self_signed_cert('localhost')
    write_cert_key_pair(cert, key, certfile, keyfile)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certfile, keyfile=keyfile)

    return SSLContextFixture(str(certfile), str(keyfile), context)


def create_self_signed_cert(
    hostname: str,
    days: int = 1,
) -> tuple[Certificate, RSAPrivateKey]:
    """Create a certificate for `hostname` signed by its own key."""
    key = generate_private_key(public_exponent=65537, key_size=2048)

    # Subject and issuer are the same for a self-signed certificate
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Huddle Testing'),
            x509.NameAttribute(NameOID.COMMON_NAME, hostname),
        ],
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    return cert, key


def write_cert_key_pair(
    cert: Certificate,
    key: RSAPrivateKey,
    certfile: str | pathlib.Path,
    keyfile: str | pathlib.Path,
) -> None:
    """Write a certificate and its unencrypted private key in PEM format."""
    with open(keyfile, 'wb') as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    with open(certfile, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
