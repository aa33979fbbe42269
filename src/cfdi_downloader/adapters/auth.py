"""
Session/auth manager — signed Autentica call and a cached access token.

Implements the TokenProvider port.

The SAT token lives five minutes; it is cached for ``token_lifetime``
(four minutes by default) so a request built just before expiry still
reaches the service with a live token. The cache holds zero or one token
and is guarded by a lock: concurrent callers never see a half-written
token, and when two of them refresh at once the last writer wins.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from cfdi_downloader.adapters.signer import RequestSigner
from cfdi_downloader.adapters.soap import ACTION_AUTHENTICATE, build_auth_envelope, read_auth_token
from cfdi_downloader.domain.errors import AuthenticationError, TransportError
from cfdi_downloader.domain.models import AuthToken, KeyMaterial
from cfdi_downloader.domain.ports import Transport

log = structlog.get_logger()


class SatAuthenticator:
    """Obtain and cache SAT access tokens for one e.firma."""

    def __init__(
        self,
        key_material: KeyMaterial,
        transport: Transport,
        auth_url: str,
        token_lifetime: timedelta = timedelta(minutes=4),
        safety_margin: timedelta = timedelta(0),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._key_material = key_material
        self._transport = transport
        self._auth_url = auth_url
        self._token_lifetime = token_lifetime
        self._safety_margin = safety_margin
        self._clock = clock
        self._signer = RequestSigner(key_material.signing_key, clock=clock)
        self._lock = threading.Lock()
        self._token: AuthToken | None = None

    def authenticate(self) -> AuthToken:
        """
        Return the cached token while valid, otherwise authenticate again.

        Raises AuthenticationError for a fault, a missing token or a failed
        transport; the transport error is kept as its cause.
        """
        with self._lock:
            cached = self._token
        if cached is not None and cached.is_valid(self._clock(), self._safety_margin):
            return cached

        token = self._request_token()
        with self._lock:
            self._token = token
        log.info("auth.token_acquired", expires_at=token.expires_at.isoformat())
        return token

    def invalidate(self) -> None:
        """Drop the cached token; the next call authenticates again."""
        with self._lock:
            self._token = None
        log.debug("auth.token_invalidated")

    def _request_token(self) -> AuthToken:
        signed = self._signer.sign_timestamp()
        envelope = build_auth_envelope(signed, self._key_material.certificate_der)
        try:
            response = self._transport.post(self._auth_url, envelope, ACTION_AUTHENTICATE)
        except TransportError as e:
            raise AuthenticationError(f"Authentication call failed: {e}") from e
        value = read_auth_token(response)
        return AuthToken(value=value, expires_at=self._clock() + self._token_lifetime)
