"""
Pipeline — ROP orchestration of the bulk-download workflow.

All I/O is injected via ports (Protocol interfaces); this module only
chains stages with flat_map so the first failure short-circuits the rest:

  submit_request(range, kind)
    → DownloadRequest (Submitted)
  poll_request(request)                          caller re-polls until terminal
    → DownloadRequest (Accepted / InProgress / Completed / ...)
  collect_records(request)
    → ensure Completed
      → download_package(id) for each package id
        → extract .xml members
          → parse each member (optionally on a thread pool)
            → list[TaxDocumentRecord]
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import structlog

from cfdi_downloader.domain.errors import MalformedDocumentError
from cfdi_downloader.domain.models import (
    DocumentKind,
    DownloadRequest,
    RequestStatus,
    TaxDocumentRecord,
)
from cfdi_downloader.domain.ports import DocumentParser, DownloadClient, PackageExtractor
from cfdi_downloader.result import ErrorCode, Result

log = structlog.get_logger()


def submit_request(
    client: DownloadClient,
    start: date,
    end: date,
    kind: DocumentKind,
    issuer_rfc: str | None = None,
    receiver_rfc: str | None = None,
) -> Result[DownloadRequest]:
    """Create a request and wrap its id in a Submitted DownloadRequest."""
    return client.create_request(start, end, kind, issuer_rfc, receiver_rfc).map(
        lambda request_id: DownloadRequest(
            id=request_id,
            start=start,
            end=end,
            kind=kind,
            issuer_rfc=issuer_rfc,
            receiver_rfc=receiver_rfc,
        )
    )


def poll_request(client: DownloadClient, request: DownloadRequest) -> Result[DownloadRequest]:
    """
    Verify once and apply the result.

    A request that is already terminal is returned without calling the service.
    """
    if request.is_terminal:
        return Result.success(request)
    return client.verify_request(request.id).map(request.with_verification)


def _parse_member(
    parser: DocumentParser, own_rfc: str, member: tuple[str, bytes]
) -> TaxDocumentRecord | None:
    filename, xml = member
    try:
        return parser.parse(xml, own_rfc)
    except MalformedDocumentError as e:
        log.warning("parser.malformed_document", filename=filename, error=str(e))
        return None


def _parse_members(
    members: Sequence[tuple[str, bytes]],
    parser: DocumentParser,
    own_rfc: str,
    workers: int,
) -> list[TaxDocumentRecord]:
    if workers > 1 and len(members) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            parsed = list(executor.map(lambda m: _parse_member(parser, own_rfc, m), members))
    else:
        parsed = [_parse_member(parser, own_rfc, m) for m in members]
    records = [record for record in parsed if record is not None]
    log.info("package.parsed", documents=len(members), records=len(records))
    return records


def parse_package(
    package: bytes,
    extractor: PackageExtractor,
    parser: DocumentParser,
    own_rfc: str,
    workers: int = 1,
) -> Result[list[TaxDocumentRecord]]:
    """
    Extract a package and parse every XML member, in archive order.

    Unsupported documents are dropped and malformed ones skipped with a
    warning. A corrupt archive fails with TECHNICAL_ERROR carrying the
    InvalidPackageFormatError.
    """
    return Result.from_computation(
        lambda: extractor.extract(package),
        ErrorCode.TECHNICAL_ERROR,
        "Package extraction failed",
    ).flat_map(
        lambda members: Result.from_computation(
            lambda: _parse_members(members, parser, own_rfc, workers),
            ErrorCode.TECHNICAL_ERROR,
            "Package parsing failed",
        )
    )


def collect_records(
    client: DownloadClient,
    request: DownloadRequest,
    extractor: PackageExtractor,
    parser: DocumentParser,
    own_rfc: str,
    workers: int = 1,
) -> Result[list[TaxDocumentRecord]]:
    """
    Download and parse every package of a Completed request.

    Packages are fetched one after another; the first failed download stops
    the chain. Records keep package order, then archive order.
    """
    return (
        Result.success(request)
        .ensure(
            lambda r: r.status is RequestStatus.COMPLETED,
            ErrorCode.VALIDATION_ERROR,
            f"Request {request.id} is {request.status.label}, not Completed",
        )
        .flat_map(lambda r: Result.all_of(client.download_package(pid) for pid in r.package_ids))
        .flat_map(
            lambda packages: Result.all_of(
                parse_package(package, extractor, parser, own_rfc, workers) for package in packages
            )
        )
        .map(lambda batches: [record for batch in batches for record in batch])
        .peek(
            lambda records: log.info(
                "pipeline.records_collected",
                request_id=request.id,
                packages=len(request.package_ids),
                records=len(records),
            )
        )
        .peek_failure(
            lambda error: log.error(
                "pipeline.collect_failed",
                request_id=request.id,
                error_code=error.code.value,
                message=error.message,
            )
        )
    )
