#!/usr/bin/env python3
"""
serve.py

Run the dashboard over HTTPS with automatically issued certificates.

    python serve.py                              # hosts/ports from DASHBOARD_* env or defaults
    python serve.py --port 8443 --http-port 0    # no HTTP-01 responder (certs must be cached)
    python serve.py --staging --email ops@example.com

Listeners:
    :8080  TLS  — dashboard app (static files + /dashboard websocket)
    :80    HTTP — ACME HTTP-01 challenge responder, redirects everything else

Exits with status 1 if a listener cannot bind or the TLS context cannot be built.
"""

import argparse
import logging
import ssl
import sys
from datetime import timedelta
from typing import Optional

import uvicorn
from pydantic import ValidationError

from dashboard.acme_client import AcmeIssuer
from dashboard.certs import CertificateManager, DirCache, host_whitelist
from dashboard.challenge_server import ChallengeServer
from dashboard.config import Settings
from dashboard.main import create_app
from dashboard.stream import StreamRegistry

logger = logging.getLogger("dashboard.serve")

LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"


class DashboardServer(uvicorn.Server):
    """uvicorn server that stops live point streams as soon as shutdown begins."""

    def __init__(self, config: uvicorn.Config, streams: StreamRegistry) -> None:
        super().__init__(config)
        self.streams = streams

    def handle_exit(self, sig, frame) -> None:
        self.streams.stop_all()
        super().handle_exit(sig, frame)


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="HTTPS dashboard server with automatic certificates")
    p.add_argument("--hosts",      help="comma-separated allow-list of hostnames")
    p.add_argument("--bind",       help="listen address")
    p.add_argument("--port",       type=int, help="TLS port")
    p.add_argument("--http-port",  type=int, help="HTTP-01 responder port (0 disables)")
    p.add_argument("--static-dir", help="document root for static files")
    p.add_argument("--cache-dir",  help="certificate cache directory")
    p.add_argument("--email",      dest="acme_email", help="ACME account contact")
    p.add_argument("--staging",    action="store_true", help="use the Let's Encrypt staging CA")
    p.add_argument("--prefetch",   action="store_true", default=None,
                   help="obtain certificates for all hosts before serving")
    p.add_argument("--log-level",  help="DEBUG, INFO, WARNING, ...")
    return p.parse_args(argv)


def load_settings(args: argparse.Namespace, environ=None) -> Settings:
    """Environment first, then command-line flags on top."""
    base = Settings.from_env(environ)
    overrides = {
        k: v for k, v in vars(args).items()
        if k in Settings.model_fields and v is not None
    }
    if args.staging:
        overrides["acme_directory"] = LETSENCRYPT_STAGING
    return Settings(**{**base.model_dump(), **overrides})


def build_certificate_manager(settings: Settings) -> tuple[CertificateManager, AcmeIssuer]:
    cache  = DirCache(settings.cache_dir)
    issuer = AcmeIssuer(cache, settings.acme_directory, settings.acme_email)
    manager = CertificateManager(
        host_whitelist(*settings.hosts),
        cache,
        issuer,
        renew_before=timedelta(days=settings.renew_before_days),
        hosts=settings.hosts,
    )
    return manager, issuer


def build_server(settings: Settings, tls: ssl.SSLContext) -> DashboardServer:
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.bind,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    config.load()
    # uvicorn builds its own context only from cert files; ours selects certs by SNI
    config.ssl = tls
    return DashboardServer(config, app.state.streams)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ValidationError as e:
        logger.critical("Invalid configuration: %s", e)
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    manager, issuer = build_certificate_manager(settings)
    try:
        tls = manager.tls_context()
    except (ssl.SSLError, ValueError) as e:
        logger.critical("Cannot build TLS configuration: %s", e)
        return 1

    challenge: Optional[ChallengeServer] = None
    if settings.http_port:
        try:
            challenge = ChallengeServer(
                issuer.challenge_response, settings.bind, settings.http_port, https_port=settings.port,
            )
        except OSError as e:
            logger.critical("Cannot bind HTTP-01 responder on port %d: %s", settings.http_port, e)
            return 1
        challenge.start()

    # Blocking prefetch delays startup; otherwise missing certificates are
    # issued in the background while the server comes up
    manager.prefetch(wait=settings.prefetch)

    server = build_server(settings, tls)
    logger.info(
        "Dashboard on https://%s:%d for %s (static root %s)",
        settings.bind, settings.port, ", ".join(settings.hosts), settings.static_dir,
    )
    try:
        server.run()
    finally:
        if challenge is not None:
            challenge.stop()

    # uvicorn returns without starting when the listener cannot bind
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(main())
