"""
dashboard/challenge_server.py

Plain-HTTP listener for ACME HTTP-01 validation.

    GET|HEAD /.well-known/acme-challenge/<token>  → key authorisation (200) or 404
    GET|HEAD anything else                        → 302 to the https:// URL
    other methods                                 → 400

Runs on its own thread so a handshake blocked on issuance never stops the CA
from reaching the token.
"""

import http.server
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

Responder = Callable[[str], Optional[str]]


class _Handler(http.server.BaseHTTPRequestHandler):
    responder:  Responder = staticmethod(lambda token: None)
    https_port: int       = 443

    def _send(self, status: int, body: bytes = b"", headers: Optional[dict] = None) -> None:
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _redirect_target(self) -> str:
        host = (self.headers.get("Host") or "").rsplit(":", 1)[0] or "localhost"
        if self.https_port != 443:
            host = f"{host}:{self.https_port}"
        return f"https://{host}{self.path}"

    def do_GET(self):
        if self.path.startswith(ACME_CHALLENGE_PREFIX):
            token      = self.path[len(ACME_CHALLENGE_PREFIX):]
            validation = self.responder(token)
            if validation is None:
                logger.warning("Unknown ACME challenge token requested: %s", token)
                self._send(404, b"Not Found\n")
            else:
                logger.info("Served ACME challenge token %s", token)
                self._send(200, validation.encode())
            return
        self._send(302, b"", {"Location": self._redirect_target()})

    do_HEAD = do_GET

    def _reject(self):
        self._send(400, b"Use HTTPS\n")

    do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _reject

    def log_message(self, fmt, *args):
        # Suppress per-request noise for successful requests; keep the rest
        if len(args) < 2 or str(args[1]) not in ("200", "302"):
            logger.info("%s - %s", self.address_string(), fmt % args)


class ChallengeServer:
    """
    Threaded HTTP server answering ACME HTTP-01 challenges.

    Binding happens in __init__, so a port conflict raises OSError at
    construction time.
    """

    def __init__(self, responder: Responder, host: str = "0.0.0.0", port: int = 80,
                 https_port: int = 443) -> None:
        handler = type("ChallengeHandler", (_Handler,), {
            "responder":  staticmethod(responder),
            "https_port": https_port,
        })
        self._httpd  = http.server.ThreadingHTTPServer((host, port), handler)
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._httpd.server_address[1]

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="acme-http01", daemon=True,
        )
        self._thread.start()
        logger.info("ACME HTTP-01 responder listening on port %d", self.port)

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
