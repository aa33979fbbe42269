"""
Application entry point — wires dependencies and runs one CLI command.

Composition root: creates concrete adapters from AppSettings and hands them
to the pipeline. This is the ONLY place where concrete classes are
instantiated; everything else depends on Protocol interfaces.

Commands (caller-driven, one protocol step per invocation):
  authenticate                             (checks the e.firma, prints token expiry)
  create   --start D --end D [--kind CFDI|Metadata] [--issuer RFC] [--receiver RFC]
  verify   REQUEST_ID
  download PACKAGE_ID [--output-dir DIR]
  parse    FILE [FILE ...] [--rfc RFC]      (.zip packages or .xml documents)
  extract  PACKAGE [PACKAGE ...] [--output-dir DIR]

Results go to stdout (request id, JSON); logs go to stderr. Exit code 1 on
any failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from datetime import date, timedelta
from pathlib import Path

import structlog

from cfdi_downloader import __version__
from cfdi_downloader.adapters.auth import SatAuthenticator
from cfdi_downloader.adapters.cfdi_parser import CfdiParser
from cfdi_downloader.adapters.flat_export import flatten_record
from cfdi_downloader.adapters.http_client import SoapTransport
from cfdi_downloader.adapters.key_loader import load_key_material
from cfdi_downloader.adapters.package_reader import ZipPackageReader
from cfdi_downloader.adapters.sat_client import SatDownloadClient
from cfdi_downloader.config import AppSettings
from cfdi_downloader.domain.models import (
    Credential,
    DocumentKind,
    KeyMaterial,
    TaxDocumentRecord,
    VerificationResult,
)
from cfdi_downloader.pipeline import parse_package, submit_request
from cfdi_downloader.result import ErrorCode, ExecutionContext, LoggingExecutionContext, Result

log = structlog.get_logger()


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for human-readable console logging on stderr.

    stdout is reserved for command output so it can be piped.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _load_credential(settings: AppSettings) -> Credential:
    return Credential(
        certificate=settings.credential.certificate_path.read_bytes(),
        private_key=settings.credential.key_path.read_bytes(),
        passphrase=settings.credential.passphrase.get_secret_value(),
        rfc=settings.credential.rfc,
    )


def _create_client(settings: AppSettings, key_material: KeyMaterial) -> SatDownloadClient:
    service = settings.service
    transport = SoapTransport(
        timeout=service.timeout_seconds,
        max_attempts=service.max_attempts,
        retry_delay=service.retry_delay_seconds,
    )
    authenticator = SatAuthenticator(
        key_material=key_material,
        transport=transport,
        auth_url=service.auth_url,
        token_lifetime=timedelta(seconds=service.token_lifetime_seconds),
        safety_margin=timedelta(seconds=service.token_safety_margin_seconds),
    )
    return SatDownloadClient(
        rfc=settings.credential.rfc,
        token_provider=authenticator,
        transport=transport,
        settings=service,
    )


def _create_adapters(settings: AppSettings) -> Result[SatDownloadClient]:
    """
    Read the e.firma files, load the key and build the download client.

    Unreadable files and unusable keys come back as VALIDATION_ERROR failures.
    """
    return (
        Result.from_computation(
            lambda: _load_credential(settings),
            ErrorCode.VALIDATION_ERROR,
            "Credential files could not be read",
        )
        .flat_map(load_key_material)
        .map(lambda key_material: _create_client(settings, key_material))
    )


# ─────────────────────── Commands ───────────────────────


def _cmd_authenticate(settings: AppSettings) -> Result[str]:
    return (
        _create_adapters(settings)
        .flat_map(lambda client: client.authenticate())
        .map(lambda token: json.dumps({"authenticated": True, "expires_at": token.expires_at.isoformat()}))
    )


def _cmd_create(args: argparse.Namespace, settings: AppSettings) -> Result[str]:
    return _create_adapters(settings).flat_map(
        lambda client: submit_request(
            client,
            args.start,
            args.end,
            DocumentKind(args.kind),
            issuer_rfc=args.issuer,
            receiver_rfc=args.receiver,
        )
    ).map(lambda request: request.id)


def _cmd_verify(args: argparse.Namespace, settings: AppSettings) -> Result[str]:
    def render(verification: VerificationResult) -> str:
        payload = asdict(verification)
        payload["package_ids"] = list(verification.package_ids)
        payload["status_label"] = verification.status_label
        payload["is_terminal"] = verification.status.is_terminal
        return json.dumps(payload, ensure_ascii=False)

    return (
        _create_adapters(settings)
        .flat_map(lambda client: client.verify_request(args.request_id))
        .map(render)
    )


def _cmd_download(args: argparse.Namespace, settings: AppSettings) -> Result[str]:
    def save(package: bytes) -> str:
        args.output_dir.mkdir(parents=True, exist_ok=True)
        target = args.output_dir / f"{args.package_id}.zip"
        target.write_bytes(package)
        return str(target)

    return (
        _create_adapters(settings)
        .flat_map(lambda client: client.download_package(args.package_id))
        .flat_map(
            lambda package: Result.from_computation(
                lambda: save(package), ErrorCode.TECHNICAL_ERROR, "Package could not be saved"
            )
        )
    )


def _parse_file(path: Path, rfc: str, parser: CfdiParser, workers: int) -> Result[list[TaxDocumentRecord]]:
    data = Result.from_computation(
        lambda: path.read_bytes(), ErrorCode.VALIDATION_ERROR, f"Could not read {path}"
    )
    if path.suffix.lower() == ".zip":
        return data.flat_map(lambda raw: parse_package(raw, ZipPackageReader(), parser, rfc, workers))
    return data.flat_map(
        lambda raw: Result.from_computation(
            lambda: [record for record in (parser.parse(raw, rfc),) if record is not None],
            ErrorCode.VALIDATION_ERROR,
            f"Could not parse {path}",
        )
    )


def _cmd_parse(args: argparse.Namespace, rfc: str, workers: int) -> Result[str]:
    parser = CfdiParser()
    return Result.all_of(_parse_file(path, rfc, parser, workers) for path in args.files).map(
        lambda batches: "\n".join(
            json.dumps(flatten_record(record), default=str, ensure_ascii=False)
            for batch in batches
            for record in batch
        )
    )


def _extract_package(path: Path, output_dir: Path, reader: ZipPackageReader) -> list[str]:
    written = []
    for name, data in reader.extract(path.read_bytes()):
        target = output_dir / Path(name).name
        target.write_bytes(data)
        written.append(str(target))
    log.info("package.extracted", package=str(path), documents=len(written))
    return written


def _cmd_extract(args: argparse.Namespace) -> Result[str]:
    """Write the .xml members of each package into --output-dir, dropping member folders."""
    reader = ZipPackageReader()

    def extract(path: Path) -> Result[list[str]]:
        return Result.from_computation(
            lambda: _extract_package(path, args.output_dir, reader),
            ErrorCode.VALIDATION_ERROR,
            f"Could not extract {path}",
        )

    return (
        Result.from_computation(
            lambda: args.output_dir.mkdir(parents=True, exist_ok=True),
            ErrorCode.TECHNICAL_ERROR,
            f"Could not create {args.output_dir}",
        )
        .flat_map(lambda _: Result.all_of(extract(path) for path in args.packages))
        .map(lambda batches: "\n".join(target for batch in batches for target in batch))
    )


# ─────────────────────── CLI ───────────────────────


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cfdi-downloader",
        description="Bulk-download CFDI from the SAT and classify them.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("authenticate", help="authenticate with the e.firma and report the token expiry")

    create = commands.add_parser("create", help="submit a bulk-download request")
    create.add_argument("--start", type=date.fromisoformat, required=True, help="first day, YYYY-MM-DD")
    create.add_argument("--end", type=date.fromisoformat, required=True, help="last day, YYYY-MM-DD")
    create.add_argument("--kind", choices=[k.value for k in DocumentKind], default=DocumentKind.CFDI.value)
    create.add_argument("--issuer", default=None, help="only documents issued by this RFC")
    create.add_argument("--receiver", default=None, help="only documents received by this RFC")

    verify = commands.add_parser("verify", help="poll a request once")
    verify.add_argument("request_id")

    download = commands.add_parser("download", help="download one package as <id>.zip")
    download.add_argument("package_id")
    download.add_argument("--output-dir", type=Path, default=Path("."))

    parse = commands.add_parser("parse", help="parse .zip packages or .xml files to JSON lines")
    parse.add_argument("files", nargs="+", type=Path)
    parse.add_argument("--rfc", default=None, help="requester RFC (defaults to CREDENTIAL__RFC)")
    parse.add_argument("--workers", type=int, default=None, help="parser threads per package")

    extract = commands.add_parser("extract", help="write the .xml documents of .zip packages to a folder")
    extract.add_argument("packages", nargs="+", type=Path)
    extract.add_argument("--output-dir", type=Path, default=Path("."))
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run one command, print its output. Returns the exit code."""
    args = build_arg_parser().parse_args(argv)

    settings: AppSettings | None = None
    if args.command != "extract" and not (args.command == "parse" and args.rfc):
        try:
            settings = AppSettings()
        except Exception as e:
            print(f"FATAL: Configuration error: {e}", file=sys.stderr)  # noqa: T201
            return 1

    configure_structlog(settings.log_level if settings else "INFO")
    log.info("app.starting", version=__version__, command=args.command)

    context: ExecutionContext = LoggingExecutionContext(operation=f"cli.{args.command}")
    match args.command:
        case "authenticate":
            result = context.execute(lambda: _cmd_authenticate(settings))
        case "create":
            result = context.execute(lambda: _cmd_create(args, settings))
        case "verify":
            result = context.execute(lambda: _cmd_verify(args, settings))
        case "download":
            result = context.execute(lambda: _cmd_download(args, settings))
        case "extract":
            result = context.execute(lambda: _cmd_extract(args))
        case _:
            rfc = args.rfc or settings.credential.rfc
            workers = args.workers or (settings.service.parse_workers if settings else 1)
            result = context.execute(lambda: _cmd_parse(args, rfc, workers))

    if result.is_failure():
        print(f"ERROR: {result.error()}", file=sys.stderr)  # noqa: T201
        return 1
    output = result.value()
    if output:
        print(output)  # noqa: T201
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
