"""
Shared test fixtures and helpers for the cfdi-downloader test suite.

Provides:
  - ResultAssertions: expressive checks for Result values
  - RSA key / self-signed certificate fixtures generated with cryptography
  - CFDI XML builders (3.3 / 4.0, concepts, taxes, complements)
  - SAT SOAP response builders and a zip package builder
"""

from __future__ import annotations

import io
import zipfile
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from cfdi_downloader.domain.models import KeyMaterial
from cfdi_downloader.result import ErrorCode, FailureDescription, Result

T = TypeVar("T")

OWN_RFC = "GOGR810728TV5"
OTHER_RFC = "AAA010101AAA"
TEST_UUID = "6F1A2B3C-4D5E-6F70-8192-A3B4C5D6E7F8"

NS_BY_VERSION = {"3.3": "http://www.sat.gob.mx/cfd/3", "4.0": "http://www.sat.gob.mx/cfd/4"}


# ─────────────────────── Result assertions ───────────────────────


class ResultAssertions:
    """Expressive test assertions for Result values."""

    @staticmethod
    def assert_success(result: Result[T], message: str = "") -> T:
        context = f" — {message}" if message else ""
        assert result.is_success(), (
            f"Expected Success but got Failure("
            f"{result.error().code.value}: {result.error().message!r}){context}"
        )
        return result.value()

    @staticmethod
    def assert_failure(
        result: Result[T],
        expected_code: ErrorCode | None = None,
        message: str = "",
    ) -> FailureDescription:
        context = f" — {message}" if message else ""
        assert result.is_failure(), f"Expected Failure but got Success({result.value()!r}){context}"
        error = result.error()
        if expected_code is not None:
            assert error.code == expected_code, (
                f"Expected error code {expected_code.value} "
                f"but got {error.code.value}: {error.message!r}{context}"
            )
        return error

    @staticmethod
    def assert_failure_message_contains(result: Result[T], substring: str) -> None:
        assert result.is_failure(), f"Expected Failure but got Success({result.value()!r})"
        error = result.error()
        assert substring.lower() in error.message.lower(), (
            f"Expected failure message to contain {substring!r} but message was: {error.message!r}"
        )


# ─────────────────────── Key material ───────────────────────


def make_certificate(key: rsa.RSAPrivateKey, common_name: str = "TEST E.FIRMA") -> x509.Certificate:
    """Self-signed certificate for ``key``, valid for one day."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(rsa_key)


@pytest.fixture(scope="session")
def certificate_der(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(Encoding.DER)


@pytest.fixture()
def key_material(rsa_key: rsa.RSAPrivateKey, certificate_der: bytes) -> KeyMaterial:
    return KeyMaterial(signing_key=rsa_key, certificate_der=certificate_der)


# ─────────────────────── CFDI builders ───────────────────────


def concept(
    description: str,
    transfers: Sequence[tuple[str, str]] = (),
    withholdings: Sequence[tuple[str, str]] = (),
) -> str:
    """A cfdi:Concepto with per-concept (tax_code, amount) transfers and withholdings."""
    taxes = ""
    if transfers or withholdings:
        traslados = "".join(
            f'<cfdi:Traslado Base="100.00" Impuesto="{code}" TipoFactor="Tasa" '
            f'TasaOCuota="0.160000" Importe="{amount}"/>'
            for code, amount in transfers
        )
        retenciones = "".join(
            f'<cfdi:Retencion Base="100.00" Impuesto="{code}" TipoFactor="Tasa" '
            f'TasaOCuota="0.100000" Importe="{amount}"/>'
            for code, amount in withholdings
        )
        taxes = "<cfdi:Impuestos>"
        if traslados:
            taxes += f"<cfdi:Traslados>{traslados}</cfdi:Traslados>"
        if retenciones:
            taxes += f"<cfdi:Retenciones>{retenciones}</cfdi:Retenciones>"
        taxes += "</cfdi:Impuestos>"
    return (
        f'<cfdi:Concepto ClaveProdServ="01010101" Cantidad="1" ClaveUnidad="E48" '
        f'Descripcion="{description}" ValorUnitario="100.00" Importe="100.00">{taxes}</cfdi:Concepto>'
    )


def comprobante_taxes(
    transfers: Sequence[tuple[str, str]] = (),
    withholdings: Sequence[tuple[str, str]] = (),
) -> str:
    """A comprobante-level cfdi:Impuestos block."""
    block = "<cfdi:Impuestos>"
    if withholdings:
        block += "<cfdi:Retenciones>" + "".join(
            f'<cfdi:Retencion Impuesto="{code}" Importe="{amount}"/>' for code, amount in withholdings
        ) + "</cfdi:Retenciones>"
    if transfers:
        block += "<cfdi:Traslados>" + "".join(
            f'<cfdi:Traslado Impuesto="{code}" TipoFactor="Tasa" TasaOCuota="0.160000" Importe="{amount}"/>'
            for code, amount in transfers
        ) + "</cfdi:Traslados>"
    return block + "</cfdi:Impuestos>"


def cfdi_xml(
    version: str = "4.0",
    doc_type: str = "I",
    issuer_rfc: str = OTHER_RFC,
    receiver_rfc: str = OWN_RFC,
    concepts: str = "",
    taxes: str = "",
    complement: str = "",
    extra_attributes: str = "",
    namespace: str | None = None,
) -> bytes:
    """Build a minimal but realistic comprobante."""
    ns = namespace or NS_BY_VERSION.get(version, NS_BY_VERSION["4.0"])
    receiver_regime = ' RegimenFiscalReceptor="612" DomicilioFiscalReceptor="06000"' if version == "4.0" else ""
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<cfdi:Comprobante xmlns:cfdi="{ns}"'
        ' xmlns:tfd="http://www.sat.gob.mx/TimbreFiscalDigital"'
        ' xmlns:pago20="http://www.sat.gob.mx/Pagos20"'
        ' xmlns:pago10="http://www.sat.gob.mx/Pagos"'
        ' xmlns:implocal="http://www.sat.gob.mx/implocal"'
        f' Version="{version}" Serie="A" Folio="123" Fecha="2024-03-15T10:20:30"'
        ' FormaPago="03" MetodoPago="PUE" SubTotal="1000.00" Descuento="10.50"'
        f' Moneda="MXN" Total="1149.50" TipoDeComprobante="{doc_type}"{extra_attributes}>'
        f'<cfdi:Emisor Rfc="{issuer_rfc}" Nombre="Emisora SA de CV" RegimenFiscal="601"/>'
        f'<cfdi:Receptor Rfc="{receiver_rfc}" Nombre="Receptor Uno"{receiver_regime} UsoCFDI="G03"/>'
        f"<cfdi:Conceptos>{concepts}</cfdi:Conceptos>"
        f"{taxes}"
        "<cfdi:Complemento>"
        f'<tfd:TimbreFiscalDigital Version="1.1" UUID="{TEST_UUID}" FechaTimbrado="2024-03-15T10:21:00"/>'
        f"{complement}"
        "</cfdi:Complemento>"
        "</cfdi:Comprobante>"
    )
    return xml.encode("utf-8")


def zip_package(members: Sequence[tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in members:
            archive.writestr(name, data)
    return buffer.getvalue()


# ─────────────────────── SAT SOAP responses ───────────────────────

_ENVELOPE = (
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"'
    ' xmlns:u="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd">'
    "<s:Header/><s:Body>{body}</s:Body></s:Envelope>"
)


def auth_response(token: str = "eyJhbGciOiJodHRwOi8vd3d3") -> str:
    return _ENVELOPE.format(
        body='<AutenticaResponse xmlns="http://DescargaMasivaTerceros.gob.mx">'
        f"<AutenticaResult>{token}</AutenticaResult></AutenticaResponse>"
    )


def create_response(request_id: str = "4e3c5f1a-7b2d-4c1e-9a8f-0123456789ab", code: str = "5000") -> str:
    id_attribute = f' IdSolicitud="{request_id}"' if request_id else ""
    return _ENVELOPE.format(
        body='<SolicitaDescargaResponse xmlns="http://DescargaMasivaTerceros.sat.gob.mx">'
        f'<SolicitaDescargaResult{id_attribute} CodEstatus="{code}" Mensaje="Solicitud Aceptada"/>'
        "</SolicitaDescargaResponse>"
    )


def verify_response(
    status: int = 3,
    package_ids: Sequence[str] = (),
    cfdi_count: int = 0,
    request_status_code: str = "5000",
    message: str = "Solicitud Aceptada",
) -> str:
    packages = "".join(f"<IdsPaquetes>{package_id}</IdsPaquetes>" for package_id in package_ids)
    return _ENVELOPE.format(
        body='<VerificaSolicitudDescargaResponse xmlns="http://DescargaMasivaTerceros.sat.gob.mx">'
        f'<VerificaSolicitudDescargaResult CodEstatus="5000" EstadoSolicitud="{status}"'
        f' CodigoEstadoSolicitud="{request_status_code}" NumeroCFDIs="{cfdi_count}" Mensaje="{message}">'
        f"{packages}</VerificaSolicitudDescargaResult></VerificaSolicitudDescargaResponse>"
    )


def download_response(payload_b64: str, code: str = "5000") -> str:
    return (
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">'
        '<s:Header><h:respuesta xmlns:h="http://DescargaMasivaTerceros.sat.gob.mx"'
        f' CodEstatus="{code}" Mensaje="Solicitud Aceptada"/></s:Header>'
        '<s:Body><RespuestaDescargaMasivaTercerosSalida xmlns="http://DescargaMasivaTerceros.sat.gob.mx">'
        f"<Paquete>{payload_b64}</Paquete>"
        "</RespuestaDescargaMasivaTercerosSalida></s:Body></s:Envelope>"
    )


def fault_response(text: str = "An error occurred when verifying the security for the message.") -> str:
    return _ENVELOPE.format(
        body="<s:Fault><faultcode>a:InvalidSecurity</faultcode>"
        f'<faultstring xml:lang="en-US">{text}</faultstring></s:Fault>'
    )
