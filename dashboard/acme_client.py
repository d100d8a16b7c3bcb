"""
dashboard/acme_client.py

ACME v2 issuer (Let's Encrypt by default) answering HTTP-01 challenges.

Issuance for one host:
    new order (CSR for the host, fresh P-256 key)
      → publish key authorisation for each HTTP-01 token
      → answer challenge, poll until the order is valid, finalize
      → retract tokens
The tokens are served by dashboard.challenge_server, which calls
challenge_response(token) on this object.

The account key is created on first use and kept in the certificate cache
under ACCOUNT_KEY_NAME, so restarts reuse the same ACME account.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

import josepy as jose
from acme import challenges, client, crypto_util, errors, messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from dashboard.certs import CacheMiss, DirCache, IssuanceError
from dashboard.config import LETSENCRYPT_DIRECTORY

logger = logging.getLogger(__name__)

ACCOUNT_KEY_NAME = "acme_account+key"
USER_AGENT       = "dashboard-autocert/0.1"
ORDER_TIMEOUT    = 90.0  # seconds to wait for validation + finalize


def _private_pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


class AcmeIssuer:
    """
    Issues certificates through an ACME directory.

    Args:
        cache:         where the account key lives
        directory_url: ACME directory (Let's Encrypt production by default)
        email:         optional contact address for the account
        timeout:       seconds to wait for an order to become valid
    """

    def __init__(
        self,
        cache: DirCache,
        directory_url: str = LETSENCRYPT_DIRECTORY,
        email: Optional[str] = None,
        timeout: float = ORDER_TIMEOUT,
    ) -> None:
        self.cache         = cache
        self.directory_url = directory_url
        self.email         = email
        self.timeout       = timeout

        self._tokens: dict[str, str] = {}
        self._tokens_lock = threading.Lock()
        self._client: Optional[client.ClientV2] = None
        self._client_lock = threading.Lock()

    # -- HTTP-01 tokens ------------------------------------------------------

    def challenge_response(self, token: str) -> Optional[str]:
        """Key authorisation for an in-flight HTTP-01 token, or None."""
        with self._tokens_lock:
            return self._tokens.get(token)

    def _publish(self, token: str, validation: str) -> None:
        with self._tokens_lock:
            self._tokens[token] = validation

    def _retract(self, token: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(token, None)

    # -- account -------------------------------------------------------------

    def _account_key(self) -> jose.JWKRSA:
        try:
            pem = self.cache.get(ACCOUNT_KEY_NAME)
        except CacheMiss:
            logger.info("Creating ACME account key")
            pem = _private_pem(rsa.generate_private_key(public_exponent=65537, key_size=2048))
            self.cache.put(ACCOUNT_KEY_NAME, pem)
        return jose.JWKRSA(key=serialization.load_pem_private_key(pem, password=None))

    def _acme(self) -> client.ClientV2:
        with self._client_lock:
            if self._client is None:
                net       = client.ClientNetwork(self._account_key(), user_agent=USER_AGENT)
                directory = client.ClientV2.get_directory(self.directory_url, net)
                acme      = client.ClientV2(directory, net=net)
                registration = messages.NewRegistration.from_data(
                    email=self.email, terms_of_service_agreed=True,
                )
                try:
                    acme.new_account(registration)
                    logger.info("Registered ACME account at %s", self.directory_url)
                except errors.ConflictError as e:
                    # Key already registered: bind the existing account.
                    acme.query_registration(
                        messages.RegistrationResource(uri=e.location, body=messages.Registration())
                    )
                self._client = acme
            return self._client

    # -- issuance ------------------------------------------------------------

    @staticmethod
    def _http01(authz: messages.AuthorizationResource) -> messages.ChallengeBody:
        for challenge in authz.body.challenges:
            if isinstance(challenge.chall, challenges.HTTP01):
                return challenge
        raise IssuanceError(f"{authz.body.identifier.value}: CA offered no http-01 challenge")

    def issue(self, hostname: str) -> tuple[bytes, bytes]:
        """Run one ACME order for hostname; returns (key PEM, chain PEM)."""
        key_pem = _private_pem(ec.generate_private_key(ec.SECP256R1()))
        csr_pem = crypto_util.make_csr(key_pem, [hostname])

        published: list[str] = []
        try:
            acme  = self._acme()
            order = acme.new_order(csr_pem)
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                challenge = self._http01(authz)
                response, validation = challenge.response_and_validation(acme.net.key)
                token = challenge.chall.encode("token")
                self._publish(token, validation)
                published.append(token)
                acme.answer_challenge(challenge, response)
            deadline = datetime.now() + timedelta(seconds=self.timeout)
            order = acme.poll_and_finalize(order, deadline=deadline)
        except IssuanceError:
            raise
        except Exception as e:
            raise IssuanceError(f"{hostname}: {e}") from e
        finally:
            for token in published:
                self._retract(token)

        return key_pem, order.fullchain_pem.encode()
