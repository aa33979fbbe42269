"""
Request lifecycle controller — create, verify and download against the SAT.

Implements the DownloadClient port.

  authenticate ──▶ AuthToken (session check)
  create_request ──▶ IdSolicitud
  verify_request ──▶ VerificationResult (EstadoSolicitud, IdsPaquetes, ...)
  download_package ──▶ zip bytes

There is no background polling: the caller decides when to verify again and
applies each poll with DownloadRequest.with_verification().

A call answered with 401 or 403 means the service no longer accepts the
cached token: it is invalidated and the call is sent once more with a fresh
one. A second rejection fails the call.

Internally each call raises domain errors; the public methods convert them
into Result failures with Result.from_computation, so nothing leaks to the
pipeline as an exception.
"""

from __future__ import annotations

from datetime import date

import structlog

from cfdi_downloader.adapters.soap import (
    ACTION_CREATE,
    ACTION_DOWNLOAD,
    ACTION_VERIFY,
    build_create_envelope,
    build_download_envelope,
    build_verify_envelope,
    read_package,
    read_request_id,
    read_verification,
)
from cfdi_downloader.config import ServiceSettings, normalize_rfc
from cfdi_downloader.domain.errors import InvalidPackageFormatError, PackageDownloadError, TransportError
from cfdi_downloader.domain.models import AuthToken, DocumentKind, VerificationResult
from cfdi_downloader.domain.ports import TokenProvider, Transport
from cfdi_downloader.result import ErrorCode, Result

log = structlog.get_logger()

ZIP_MAGIC = b"PK"
MIN_PACKAGE_SIZE = 4
TOKEN_REJECTED_STATUSES = frozenset({401, 403})


class SatDownloadClient:
    """Drive the three-call bulk-download protocol for one requester RFC."""

    def __init__(
        self,
        rfc: str,
        token_provider: TokenProvider,
        transport: Transport,
        settings: ServiceSettings | None = None,
    ) -> None:
        self._rfc = normalize_rfc(rfc)
        self._token_provider = token_provider
        self._transport = transport
        self._settings = settings or ServiceSettings()

    def authenticate(self) -> Result[AuthToken]:
        """Obtain (or reuse) the access token without calling any other service."""
        return Result.from_computation(
            self._token_provider.authenticate,
            ErrorCode.AUTHENTICATION_ERROR,
            "Authentication failed",
        )

    def create_request(
        self,
        start: date,
        end: date,
        kind: DocumentKind,
        issuer_rfc: str | None = None,
        receiver_rfc: str | None = None,
    ) -> Result[str]:
        """
        Submit SolicitaDescarga for the whole days ``start`` through ``end``.

        Returns Result[str] with the IdSolicitud, a VALIDATION_ERROR failure
        when ``start`` is after ``end``, or a failure carrying
        RequestCreationError / AuthenticationError / TransportError.
        """
        if start > end:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Start date {start.isoformat()} is after end date {end.isoformat()}",
            )
        return Result.from_computation(
            lambda: self._do_create(start, end, kind, issuer_rfc, receiver_rfc),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Download request creation failed",
        )

    def verify_request(self, request_id: str) -> Result[VerificationResult]:
        """
        Poll VerificaSolicitudDescarga once.

        An unknown EstadoSolicitud is reported as-is (status Unknown, not terminal).
        """
        return Result.from_computation(
            lambda: self._do_verify(request_id),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Download request verification failed",
        )

    def download_package(self, package_id: str) -> Result[bytes]:
        """
        Fetch one package and check it is a zip archive.

        Fails with PackageDownloadError when nothing was delivered and with
        InvalidPackageFormatError when the bytes lack the zip magic.
        """
        return Result.from_computation(
            lambda: self._do_download(package_id),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Package download failed",
        )

    def _post(self, url: str, envelope: str, action: str, binary: bool = False) -> str | bytes:
        token = self._token_provider.authenticate().value
        try:
            return self._transport.post(url, envelope, action, token=token, binary=binary)
        except TransportError as e:
            if e.status_code not in TOKEN_REJECTED_STATUSES:
                raise
            log.warning("auth.token_rejected", url=url, status_code=e.status_code)
            self._token_provider.invalidate()
        token = self._token_provider.authenticate().value
        return self._transport.post(url, envelope, action, token=token, binary=binary)

    def _do_create(
        self,
        start: date,
        end: date,
        kind: DocumentKind,
        issuer_rfc: str | None,
        receiver_rfc: str | None,
    ) -> str:
        envelope = build_create_envelope(
            self._rfc,
            start,
            end,
            kind,
            issuer_rfc=normalize_rfc(issuer_rfc) if issuer_rfc else None,
            receiver_rfc=normalize_rfc(receiver_rfc) if receiver_rfc else None,
        )
        response = self._post(self._settings.request_url, envelope, ACTION_CREATE)
        request_id = read_request_id(response)
        log.info(
            "request.created",
            request_id=request_id,
            start=start.isoformat(),
            end=end.isoformat(),
            kind=kind.value,
        )
        return request_id

    def _do_verify(self, request_id: str) -> VerificationResult:
        envelope = build_verify_envelope(self._rfc, request_id)
        response = self._post(self._settings.verify_url, envelope, ACTION_VERIFY)
        verification = read_verification(response, request_id)
        log.info(
            "request.verified",
            request_id=request_id,
            status=verification.status_label,
            status_code=verification.status_code,
            cfdi_count=verification.cfdi_count,
            packages=len(verification.package_ids),
        )
        return verification

    def _do_download(self, package_id: str) -> bytes:
        envelope = build_download_envelope(self._rfc, package_id)
        response = self._post(self._settings.download_url, envelope, ACTION_DOWNLOAD, binary=True)
        data = response if isinstance(response, bytes) else response.encode("utf-8")
        if data and not data.startswith(ZIP_MAGIC) and data.lstrip().startswith(b"<"):
            data = read_package(data)
        if not data:
            raise PackageDownloadError(f"Package {package_id} is empty")
        if len(data) < MIN_PACKAGE_SIZE or not data.startswith(ZIP_MAGIC):
            raise InvalidPackageFormatError(f"Package {package_id} is not a zip archive")
        log.info("package.downloaded", package_id=package_id, size_bytes=len(data))
        return data
