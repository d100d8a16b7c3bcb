"""
dashboard/tests/helpers.py

Test doubles shared across modules: self-signed certificates standing in for
CA-issued ones, a recording issuer, and a polling helper.
"""

import threading
import time
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def make_cert(hostname, valid_for=timedelta(days=90), valid_from=None, san=None):
    """Return (key PEM, cert PEM) for a self-signed P-256 certificate."""
    key   = ec.generate_private_key(ec.SECP256R1())
    start = valid_from or datetime.now(UTC) - timedelta(minutes=5)
    name  = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + valid_for)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in (san or [hostname])]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key_pem, cert.public_bytes(serialization.Encoding.PEM)


class FakeIssuer:
    """Issuer that mints self-signed certificates and records every call."""

    def __init__(self, valid_for=timedelta(days=90), delay=0.0, error=None):
        self.valid_for = valid_for
        self.delay     = delay
        self.error     = error
        self.calls     = []
        self._lock     = threading.Lock()

    def issue(self, hostname):
        with self._lock:
            self.calls.append(hostname)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return make_cert(hostname, self.valid_for)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
