"""
SOAP envelopes and response readers for the SAT Descarga Masiva services.

Adapter layer — uses lxml to build the three token-authorized request
envelopes (attribute values are escaped by the serializer, so an RFC such as
"A&B010101AAA" travels as "A&amp;B010101AAA") and to read responses.

The authentication envelope is a fixed template instead: its Timestamp must
carry exactly the created/expires pair that was digested by the signer, and
every value interpolated into it is base64, a UUID or an ISO instant.

Responses are matched by local-name() so the readers do not depend on which
prefix (s:, soap:, a:) the service chose for a given reply.
"""

from __future__ import annotations

import base64
import binascii
from datetime import date

from lxml import etree

from cfdi_downloader.domain.errors import (
    AuthenticationError,
    CfdiDownloadError,
    PackageDownloadError,
    RequestCreationError,
    RequestVerificationError,
)
from cfdi_downloader.domain.models import DocumentKind, SignedTimestamp, VerificationResult

NS_SOAP = "http://schemas.xmlsoap.org/soap/envelope/"
NS_DES = "http://DescargaMasivaTerceros.sat.gob.mx"
NS_DS = "http://www.w3.org/2000/09/xmldsig#"

ACTION_AUTHENTICATE = "http://DescargaMasivaTerceros.gob.mx/IAutenticacion/Autentica"
ACTION_CREATE = "http://DescargaMasivaTerceros.sat.gob.mx/ISolicitaDescargaService/SolicitaDescarga"
ACTION_VERIFY = (
    "http://DescargaMasivaTerceros.sat.gob.mx/IVerificaSolicitudDescargaService/VerificaSolicitudDescarga"
)
ACTION_DOWNLOAD = "http://DescargaMasivaTerceros.sat.gob.mx/IDescargaMasivaTercerosService/Descargar"

_AUTH_ENVELOPE = (
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"'
    ' xmlns:u="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd">'
    "<s:Header>"
    '<ActivityId CorrelationId="{correlation_id}"'
    ' xmlns="http://schemas.microsoft.com/2004/09/ServiceModel/Diagnostics">'
    "00000000-0000-0000-0000-000000000000</ActivityId>"
    '<o:Security s:mustUnderstand="1"'
    ' xmlns:o="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd">'
    '<u:Timestamp u:Id="_0">'
    "<u:Created>{created}</u:Created>"
    "<u:Expires>{expires}</u:Expires>"
    "</u:Timestamp>"
    '<o:BinarySecurityToken u:Id="{token_id}"'
    ' ValueType="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-x509-token-profile-1.0#X509v3"'
    ' EncodingType="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-soap-message-security-1.0#Base64Binary">'
    "{certificate}</o:BinarySecurityToken>"
    '<Signature xmlns="http://www.w3.org/2000/09/xmldsig#">'
    "<SignedInfo>"
    '<CanonicalizationMethod Algorithm="http://www.w3.org/2001/10/xml-exc-c14n#"/>'
    '<SignatureMethod Algorithm="http://www.w3.org/2000/09/xmldsig#rsa-sha1"/>'
    '<Reference URI="#_0">'
    "<Transforms>"
    '<Transform Algorithm="http://www.w3.org/2001/10/xml-exc-c14n#"/>'
    "</Transforms>"
    '<DigestMethod Algorithm="http://www.w3.org/2000/09/xmldsig#sha1"/>'
    "<DigestValue>{digest}</DigestValue>"
    "</Reference>"
    "</SignedInfo>"
    "<SignatureValue>{signature}</SignatureValue>"
    "<KeyInfo>"
    "<o:SecurityTokenReference>"
    '<o:Reference ValueType="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-x509-token-profile-1.0#X509v3"'
    ' URI="#{token_id}"/>'
    "</o:SecurityTokenReference>"
    "</KeyInfo>"
    "</Signature>"
    "</o:Security>"
    "</s:Header>"
    "<s:Body>"
    '<Autentica xmlns="http://DescargaMasivaTerceros.gob.mx"/>'
    "</s:Body>"
    "</s:Envelope>"
)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


# ─────────────────────── Envelopes ───────────────────────


def build_auth_envelope(signed: SignedTimestamp, certificate_der: bytes) -> str:
    return _AUTH_ENVELOPE.format(
        correlation_id=signed.correlation_id,
        created=signed.created,
        expires=signed.expires,
        token_id=signed.token_id,
        certificate=base64.b64encode(certificate_der).decode("ascii"),
        digest=signed.digest_value,
        signature=signed.signature_value,
    )


def _envelope(operation: str, child: str, **attributes: str) -> str:
    envelope = etree.Element(
        f"{{{NS_SOAP}}}Envelope", nsmap={"soapenv": NS_SOAP, "des": NS_DES, "xd": NS_DS}
    )
    etree.SubElement(envelope, f"{{{NS_SOAP}}}Header")
    body = etree.SubElement(envelope, f"{{{NS_SOAP}}}Body")
    wrapper = etree.SubElement(body, f"{{{NS_DES}}}{operation}")
    node = etree.SubElement(wrapper, f"{{{NS_DES}}}{child}")
    for name, value in attributes.items():
        node.set(name, value)
    return etree.tostring(envelope, encoding="unicode")


def build_create_envelope(
    rfc: str,
    start: date,
    end: date,
    kind: DocumentKind,
    issuer_rfc: str | None = None,
    receiver_rfc: str | None = None,
) -> str:
    attributes = {
        "RfcSolicitante": rfc,
        "FechaInicial": f"{start.isoformat()}T00:00:00.000",
        "FechaFinal": f"{end.isoformat()}T23:59:59.000",
        "TipoSolicitud": kind.value,
    }
    if issuer_rfc:
        attributes["RfcEmisor"] = issuer_rfc
    if receiver_rfc:
        attributes["RfcReceptor"] = receiver_rfc
    return _envelope("SolicitaDescarga", "solicitud", **attributes)


def build_verify_envelope(rfc: str, request_id: str) -> str:
    return _envelope(
        "VerificaSolicitudDescarga", "solicitud", IdSolicitud=request_id, RfcSolicitante=rfc
    )


def build_download_envelope(rfc: str, package_id: str) -> str:
    return _envelope("Descargar", "peticionDescarga", IdPaquete=package_id, RfcSolicitante=rfc)


# ─────────────────────── Response readers ───────────────────────


def _parse(body: str | bytes, error: type[CfdiDownloadError]) -> etree._Element:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    try:
        return etree.fromstring(raw, _PARSER)
    except etree.XMLSyntaxError as e:
        raise error(f"Response is not valid XML: {e}") from e


def _first(root: etree._Element, local_name: str) -> etree._Element | None:
    found = root.xpath(f"//*[local-name()='{local_name}']")
    return found[0] if found else None


def _raise_for_fault(root: etree._Element, error: type[CfdiDownloadError]) -> None:
    fault = _first(root, "Fault")
    if fault is None:
        return
    text = fault.xpath("string(*[local-name()='faultstring'])").strip()
    if not text:
        text = fault.xpath("string(*[local-name()='detail'])").strip()
    raise error(f"SOAP Fault: {text or 'unknown service fault'}")


def is_fault(body: str | bytes) -> bool:
    """True when ``body`` is a SOAP envelope carrying a Fault."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    if not raw.lstrip().startswith(b"<"):
        return False
    try:
        root = etree.fromstring(raw, _PARSER)
    except etree.XMLSyntaxError:
        return False
    return _first(root, "Fault") is not None


def _status_suffix(node: etree._Element) -> str:
    code = node.get("CodEstatus")
    message = node.get("Mensaje")
    if code is None and message is None:
        return ""
    return f" (CodEstatus={code or ''}, Mensaje={message or ''})"


def read_auth_token(body: str | bytes) -> str:
    root = _parse(body, AuthenticationError)
    _raise_for_fault(root, AuthenticationError)
    result = _first(root, "AutenticaResult")
    token = (result.text or "").strip() if result is not None else ""
    if not token:
        raise AuthenticationError("Authentication response has no AutenticaResult")
    return token


def read_request_id(body: str | bytes) -> str:
    root = _parse(body, RequestCreationError)
    _raise_for_fault(root, RequestCreationError)
    result = _first(root, "SolicitaDescargaResult")
    if result is None:
        raise RequestCreationError("Response has no SolicitaDescargaResult")
    request_id = (result.get("IdSolicitud") or "").strip()
    if not request_id:
        raise RequestCreationError("Response has no IdSolicitud" + _status_suffix(result))
    return request_id


def _as_int(value: str | None) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


def read_verification(body: str | bytes, request_id: str) -> VerificationResult:
    root = _parse(body, RequestVerificationError)
    _raise_for_fault(root, RequestVerificationError)
    result = _first(root, "VerificaSolicitudDescargaResult")
    if result is None:
        raise RequestVerificationError("Response has no VerificaSolicitudDescargaResult")
    package_ids = tuple(
        text.strip()
        for text in result.xpath("*[local-name()='IdsPaquetes']/text()")
        if text.strip()
    )
    return VerificationResult(
        request_id=request_id,
        status_code=_as_int(result.get("EstadoSolicitud")),
        request_status_code=result.get("CodigoEstadoSolicitud", ""),
        service_code=result.get("CodEstatus", ""),
        message=result.get("Mensaje", ""),
        cfdi_count=_as_int(result.get("NumeroCFDIs")),
        package_ids=package_ids,
    )


def read_package(body: bytes) -> bytes:
    """
    Decode the base64 Paquete carried by a Descargar SOAP response.

    Returns b"" when the element is missing or empty; the caller decides
    whether that is an error.
    """
    root = _parse(body, PackageDownloadError)
    _raise_for_fault(root, PackageDownloadError)
    package = _first(root, "Paquete")
    payload = "".join((package.text or "").split()) if package is not None else ""
    if not payload:
        respuesta = _first(root, "respuesta")
        if respuesta is not None and respuesta.get("CodEstatus", "5000") != "5000":
            raise PackageDownloadError("Package not delivered" + _status_suffix(respuesta))
        return b""
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise PackageDownloadError(f"Paquete is not valid base64: {e}") from e
