"""
Domain errors — the exception taxonomy of the download client.

Each exception carries the railway ErrorCode it maps to, so that
Result.from_computation() keeps the right code when an adapter boundary
converts it into a Failure.

  Credential problems (not retryable, fix the files or passphrase):
    KeyFormatError, KeySignCapabilityError
  Transport problems (retried inside the transport, then surfaced):
    TransportError
  Protocol problems (never retried by the client, the caller decides):
    AuthenticationError, RequestCreationError, RequestVerificationError,
    PackageDownloadError, InvalidPackageFormatError
  Document problems (only for unparseable input streams):
    MalformedDocumentError

Messages keep the underlying cause text but never include key material.
"""

from __future__ import annotations

from cfdi_downloader.result import ErrorCode


class CfdiDownloadError(Exception):
    """Base class for every error raised by this package."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR


class KeyFormatError(CfdiDownloadError):
    """The private key (or certificate) could not be read in any supported format."""

    code = ErrorCode.VALIDATION_ERROR


class KeySignCapabilityError(CfdiDownloadError):
    """A key was loaded but it cannot produce RSA signatures."""

    code = ErrorCode.VALIDATION_ERROR


class TransportError(CfdiDownloadError):
    """
    The HTTP POST failed after exhausting the retry budget, or hit a 4xx.

    ``attempts`` is the number of attempts actually made and ``last_cause``
    the exception raised by the final one. ``body`` keeps the text of the
    last HTTP response, if any, so a server message is not lost.
    """

    code = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(
        self,
        url: str,
        attempts: int,
        last_cause: BaseException,
        status_code: int | None = None,
        timed_out: bool = False,
        body: str = "",
    ) -> None:
        self.url = url
        self.attempts = attempts
        self.last_cause = last_cause
        self.status_code = status_code
        self.body = body
        if timed_out:
            self.code = ErrorCode.TIMEOUT_ERROR
        super().__init__(
            f"POST {url} failed after {attempts} attempt(s): "
            f"{type(last_cause).__name__}: {last_cause}"
        )


class AuthenticationError(CfdiDownloadError):
    """The authentication call returned a fault or no token."""

    code = ErrorCode.AUTHENTICATION_ERROR


class RequestCreationError(CfdiDownloadError):
    """SolicitaDescarga returned a fault or a response without IdSolicitud."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class RequestVerificationError(CfdiDownloadError):
    """VerificaSolicitudDescarga returned a fault or an unreadable response."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class PackageDownloadError(CfdiDownloadError):
    """Descargar returned a fault or an empty package."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class InvalidPackageFormatError(CfdiDownloadError):
    """The downloaded bytes are not a zip archive."""

    code = ErrorCode.TECHNICAL_ERROR


class MalformedDocumentError(CfdiDownloadError):
    """A CFDI byte stream is not well-formed XML."""

    code = ErrorCode.VALIDATION_ERROR
