"""
dashboard/certs.py

Automatic TLS certificates for an allow-listed set of hostnames.

Flow for a TLS handshake:
    SNI callback → CertificateManager.lookup(server_name)
        1. host policy (allow-list)            → HostNotAllowed
        2. in-memory context, still fresh      → reuse
        3. disk cache (DirCache), still valid  → load
        4. nothing usable                      → background issuance,
                                                  CertificatePending (handshake fails)
The SNI callback runs on the event loop, so it never waits for the CA.
get_context() is the blocking variant (prefetch): it issues in the caller.
A certificate inside the renewal window keeps being served while one
background renewal per host runs; failed background issuance backs off.

Cache layout (one file per entry, mode 0600, directory mode 0700):
    certs/<hostname>           PEM chain, then PEM PKCS#8 private key
    certs/acme_account+key     PEM account key (written by AcmeIssuer)

Issuance for a given host is single-flight: background issuance, renewals
and prefetch all serialise on the same per-host lock.
"""

import logging
import os
import ssl
import tempfile
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)

DEFAULT_RENEW_BEFORE = timedelta(days=30)
DEFAULT_RETRY_AFTER  = timedelta(minutes=1)
MAX_RETRY_AFTER      = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CertificateError(Exception):
    """A certificate could not be provided for a handshake."""


class HostNotAllowed(CertificateError):
    pass


class IssuanceError(CertificateError):
    pass


class CertificatePending(CertificateError):
    """No usable certificate yet; one is being obtained in the background."""


class CacheMiss(KeyError):
    pass


# ---------------------------------------------------------------------------
# Host policy
# ---------------------------------------------------------------------------

HostPolicy = Callable[[str], None]


def normalize_host(name: str) -> str:
    return name.strip().lower().rstrip(".")


def host_whitelist(*hosts: str) -> HostPolicy:
    """Policy that accepts only the given hostnames (case-insensitive)."""
    allowed = frozenset(normalize_host(h) for h in hosts)

    def policy(name: str) -> None:
        if normalize_host(name) not in allowed:
            raise HostNotAllowed(f"host {name!r} not configured in allow-list")

    return policy


# ---------------------------------------------------------------------------
# Disk cache
# ---------------------------------------------------------------------------

class DirCache:
    """Directory-backed key/value store for certificate material."""

    def __init__(self, root) -> None:
        self.root = Path(root)

    def path(self, name: str) -> Path:
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"invalid cache key {name!r}")
        return self.root / name

    def get(self, name: str) -> bytes:
        try:
            return self.path(name).read_bytes()
        except FileNotFoundError:
            raise CacheMiss(name) from None

    def put(self, name: str, data: bytes) -> Path:
        """Write atomically: readers see either the old entry or the new one."""
        target = self.path(name)
        self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp, 0o600)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return target

    def delete(self, name: str) -> None:
        self.path(name).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------

class Issuer(Protocol):
    def issue(self, hostname: str) -> tuple[bytes, bytes]:
        """Return (private key PEM, certificate chain PEM) for hostname."""
        ...


def make_bundle(key_pem: bytes, chain_pem: bytes) -> bytes:
    """Cache entry format: chain first, key last (ssl.load_cert_chain reads both)."""
    return chain_pem.rstrip(b"\n") + b"\n" + key_pem.rstrip(b"\n") + b"\n"


def check_bundle(bundle: bytes, hostname: str, now: Optional[datetime] = None) -> datetime:
    """
    Validate a cached bundle for hostname and return the leaf's expiry.

    Raises CertificateError when the bundle does not parse, the key does not
    belong to the leaf, the leaf does not name the host, or it has expired.
    """
    now = now or datetime.now(UTC)
    try:
        leaf = x509.load_pem_x509_certificate(bundle)
        key  = serialization.load_pem_private_key(bundle, password=None)
    except ValueError as e:
        raise CertificateError(f"{hostname}: unreadable certificate bundle: {e}") from e

    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    if key.public_key().public_bytes(enc, fmt) != leaf.public_key().public_bytes(enc, fmt):
        raise CertificateError(f"{hostname}: private key does not match certificate")

    try:
        san   = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = {normalize_host(n) for n in san.value.get_values_for_type(x509.DNSName)}
    except x509.ExtensionNotFound:
        names = set()
    if hostname not in names:
        raise CertificateError(f"{hostname}: certificate is for {sorted(names)}")

    if leaf.not_valid_before_utc > now:
        raise CertificateError(f"{hostname}: certificate not valid until {leaf.not_valid_before_utc}")
    if leaf.not_valid_after_utc <= now:
        raise CertificateError(f"{hostname}: certificate expired at {leaf.not_valid_after_utc}")
    return leaf.not_valid_after_utc


def server_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CertificateManager:
    """
    Provides per-host ssl.SSLContext objects, issuing certificates on demand.

    Two entry points:
        get_context(name)  blocks until a certificate is available (prefetch, tests)
        lookup(name)       never waits on the CA; used from the SNI callback,
                           which runs on the server's event loop

    Background issuance (first certificate from a handshake, or renewal) is
    retried with exponential backoff after a failure, starting at
    retry_after and capped at MAX_RETRY_AFTER.

    Args:
        host_policy:  raises HostNotAllowed for names we must not serve
        cache:        DirCache holding issued bundles
        issuer:       object with issue(hostname) -> (key_pem, chain_pem)
        renew_before: start renewing this long before expiry
        hosts:        allow-listed names, used only by prefetch()
        retry_after:  first backoff after a failed background issuance
    """

    def __init__(
        self,
        host_policy: HostPolicy,
        cache: DirCache,
        issuer: Issuer,
        renew_before: timedelta = DEFAULT_RENEW_BEFORE,
        hosts: tuple[str, ...] = (),
        retry_after: timedelta = DEFAULT_RETRY_AFTER,
    ) -> None:
        self.host_policy  = host_policy
        self.cache        = cache
        self.issuer       = issuer
        self.renew_before = renew_before
        self.hosts        = tuple(normalize_host(h) for h in hosts)
        self.retry_after  = retry_after

        self._contexts: dict[str, tuple[ssl.SSLContext, datetime]] = {}
        self._locks:    dict[str, threading.Lock] = {}
        self._pending:  set[str] = set()
        # host -> (consecutive failures, earliest next attempt)
        self._failures: dict[str, tuple[int, datetime]] = {}
        self._guard = threading.Lock()

    def _host_lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    def _fresh(self, name: str, now: datetime) -> Optional[ssl.SSLContext]:
        """In-memory context for name, scheduling a renewal if it is close to expiry."""
        entry = self._contexts.get(name)
        if entry is None:
            return None
        ctx, not_after = entry
        if not_after <= now:
            return None
        if not_after - now <= self.renew_before:
            self._schedule(name)
        return ctx

    def get_context(self, server_name: str) -> ssl.SSLContext:
        """
        Return a TLS context holding a valid certificate for server_name.

        Blocks while a certificate is being issued; concurrent callers for the
        same host wait on the same issuance instead of starting their own.
        """
        name = normalize_host(server_name)
        self.host_policy(name)

        ctx = self._fresh(name, datetime.now(UTC))
        if ctx is not None:
            return ctx

        with self._host_lock(name):
            now = datetime.now(UTC)
            ctx = self._fresh(name, now)
            if ctx is None:
                ctx = self._try_cached(name, now)
            if ctx is None:
                ctx = self._issue(name)
            return ctx

    def lookup(self, server_name: str) -> ssl.SSLContext:
        """
        Like get_context, but never waits for the CA.

        Serves from memory or the disk cache. When neither holds a usable
        certificate, issuance is started on a background thread and
        CertificatePending is raised; a later handshake picks up the result.
        """
        name = normalize_host(server_name)
        self.host_policy(name)

        ctx = self._fresh(name, datetime.now(UTC))
        if ctx is not None:
            return ctx

        lock = self._host_lock(name)
        if lock.acquire(blocking=False):
            try:
                now = datetime.now(UTC)
                ctx = self._fresh(name, now)
                if ctx is None:
                    ctx = self._try_cached(name, now)
            finally:
                lock.release()
            if ctx is not None:
                return ctx
            self._schedule(name)
        raise CertificatePending(f"{name}: no certificate yet, issuance in progress or backing off")

    def _try_cached(self, name: str, now: datetime) -> Optional[ssl.SSLContext]:
        try:
            return self._load_cached(name, now)
        except CacheMiss:
            return None
        except CertificateError as e:
            logger.warning("Discarding cached certificate: %s", e)
            return None

    def _load_cached(self, name: str, now: datetime) -> ssl.SSLContext:
        bundle    = self.cache.get(name)
        not_after = check_bundle(bundle, name, now)
        ctx       = self._load(name, not_after)
        if not_after - now <= self.renew_before:
            self._schedule(name)
        logger.info("Loaded cached certificate for %s (expires %s)", name, not_after.isoformat())
        return ctx

    def _issue(self, name: str) -> ssl.SSLContext:
        logger.info("Requesting certificate for %s", name)
        try:
            key_pem, chain_pem = self.issuer.issue(name)
        except IssuanceError:
            raise
        except Exception as e:
            raise IssuanceError(f"{name}: {e}") from e
        bundle    = make_bundle(key_pem, chain_pem)
        not_after = check_bundle(bundle, name)
        self.cache.put(name, bundle)
        ctx = self._load(name, not_after)
        logger.info("Issued certificate for %s (expires %s)", name, not_after.isoformat())
        return ctx

    def _load(self, name: str, not_after: datetime) -> ssl.SSLContext:
        ctx = server_context()
        try:
            ctx.load_cert_chain(self.cache.path(name))
        except (ssl.SSLError, OSError) as e:
            raise CertificateError(f"{name}: cannot load certificate: {e}") from e
        self._contexts[name] = (ctx, not_after)
        return ctx

    # -- background issuance -------------------------------------------------

    def _schedule(self, name: str) -> None:
        """Start one background issuance for name unless one is running or backing off."""
        now = datetime.now(UTC)
        with self._guard:
            if name in self._pending:
                return
            failure = self._failures.get(name)
            if failure is not None and now < failure[1]:
                return
            self._pending.add(name)
        threading.Thread(target=self._background_issue, args=(name,), name=f"issue-{name}", daemon=True).start()

    def _background_issue(self, name: str) -> None:
        try:
            with self._host_lock(name):
                # A blocking caller may have done the work while we waited
                entry = self._contexts.get(name)
                if entry is None or entry[1] - datetime.now(UTC) <= self.renew_before:
                    self._issue(name)
        except CertificateError as e:
            self._record_failure(name, e)
        else:
            with self._guard:
                self._failures.pop(name, None)
        finally:
            with self._guard:
                self._pending.discard(name)

    def _record_failure(self, name: str, error: CertificateError) -> None:
        with self._guard:
            count = self._failures.get(name, (0, None))[0] + 1
            delay = min(self.retry_after * 2 ** min(count - 1, 16), MAX_RETRY_AFTER)
            self._failures[name] = (count, datetime.now(UTC) + delay)
        logger.error(
            "Certificate issuance failed for %s (attempt %d, next try in %s): %s",
            name, count, delay, error,
        )

    def prefetch(self, wait: bool = True) -> None:
        """
        Obtain certificates for every allow-listed host up front.

        With wait=False, hosts without a usable cached certificate are issued
        on background threads and this returns immediately.
        """
        for name in self.hosts:
            try:
                if wait:
                    self.get_context(name)
                else:
                    self.lookup(name)
            except CertificatePending:
                logger.info("Issuing certificate for %s in the background", name)
            except CertificateError as e:
                logger.error("Prefetch failed for %s: %s", name, e)

    # -- TLS -----------------------------------------------------------------

    def _sni_callback(self, ssl_obj: ssl.SSLObject, server_name: Optional[str], _base: ssl.SSLContext):
        if not server_name:
            logger.warning("TLS handshake without server name rejected")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            ssl_obj.context = self.lookup(server_name)
        except HostNotAllowed as e:
            logger.warning("TLS handshake rejected: %s", e)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        except CertificatePending as e:
            logger.info("TLS handshake refused: %s", e)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        except CertificateError as e:
            logger.error("TLS handshake failed for %s: %s", server_name, e)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def tls_context(self) -> ssl.SSLContext:
        """Server context that picks the certificate from the SNI name."""
        ctx = server_context()
        ctx.sni_callback = self._sni_callback
        return ctx
