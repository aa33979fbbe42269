"""
Ports — Protocol-based interfaces between the pipeline and its adapters.

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing): adapters satisfy the contract
simply by implementing the methods, and tests substitute MagicMocks.

Download flow (caller-driven, no background polling):
  1. TokenProvider        → signed Autentica call, cached short-lived token
  2. DownloadClient       → create request → verify (poll) → download package
  3. PackageExtractor     → zip bytes → (filename, xml bytes) pairs
  4. DocumentParser       → xml bytes + own RFC → TaxDocumentRecord | None
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from typing import Protocol, runtime_checkable

from cfdi_downloader.domain.models import (
    AuthToken,
    DocumentKind,
    TaxDocumentRecord,
    VerificationResult,
)
from cfdi_downloader.result import Result


@runtime_checkable
class Transport(Protocol):
    """
    Port: POST a SOAP body to one endpoint, retrying transient failures.

    Raises TransportError once the retry budget is spent or on a 4xx.
    Returns the body as text, or as bytes when ``binary`` is set.
    """

    def post(
        self,
        url: str,
        body: str,
        soap_action: str,
        token: str | None = None,
        binary: bool = False,
    ) -> str | bytes: ...


@runtime_checkable
class TokenProvider(Protocol):
    """
    Port: hand out a valid access token, authenticating when needed.

    Raises AuthenticationError when no token can be had.
    ``invalidate`` drops the cached token after the service rejected it.
    """

    def authenticate(self) -> AuthToken: ...

    def invalidate(self) -> None: ...


@runtime_checkable
class DownloadClient(Protocol):
    """Port: the three-call bulk-download protocol, plus a session check."""

    def authenticate(self) -> Result[AuthToken]: ...

    def create_request(
        self,
        start: date,
        end: date,
        kind: DocumentKind,
        issuer_rfc: str | None = None,
        receiver_rfc: str | None = None,
    ) -> Result[str]: ...

    def verify_request(self, request_id: str) -> Result[VerificationResult]: ...

    def download_package(self, package_id: str) -> Result[bytes]: ...


@runtime_checkable
class PackageExtractor(Protocol):
    """
    Port: list the XML members of a downloaded package.

    Raises InvalidPackageFormatError for a corrupt archive.
    """

    def extract(self, package: bytes) -> Sequence[tuple[str, bytes]]: ...


@runtime_checkable
class DocumentParser(Protocol):
    """
    Port: turn one CFDI into a classified record.

    Returns None for documents that are not a supported comprobante.
    Raises MalformedDocumentError when the bytes are not XML at all.
    """

    def parse(self, xml: bytes, own_rfc: str) -> TaxDocumentRecord | None: ...
