"""
CFDI parser adapter — comprobante XML to a classified TaxDocumentRecord.

Adapter layer — implements the DocumentParser port using lxml.

Pipeline:
  xml bytes
    → lxml: fromstring() (no entity resolution, no network)
    → version gate: Comprobante 3.3 / 4.0, anything else → None
    → classification against the requester RFC (exactly one DocumentRole)
    → flat fields, per-concept tax sums, local taxes
    → Pagos 2.0 or Pagos 1.0 complement → ordered PaymentEntry tuples
    → TaxDocumentRecord (domain model)

Missing nodes and unparseable numbers degrade to "" / Decimal(0); only bytes
that are not XML at all raise MalformedDocumentError. The parser holds no
state and is safe to call from several threads at once.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

import structlog
from lxml import etree

from cfdi_downloader.config import normalize_rfc
from cfdi_downloader.domain.errors import MalformedDocumentError
from cfdi_downloader.domain.models import (
    ONE,
    ZERO,
    DocumentRole,
    PaymentEntry,
    PaymentTotals,
    RelatedDocumentEntry,
    TaxCategory,
    TaxDocumentRecord,
    TaxEntry,
)

log = structlog.get_logger()

NS_CFDI_33 = "http://www.sat.gob.mx/cfd/3"
NS_CFDI_40 = "http://www.sat.gob.mx/cfd/4"
NS_PAGOS_20 = "http://www.sat.gob.mx/Pagos20"
NS_PAGOS_10 = "http://www.sat.gob.mx/Pagos"
NS_TFD = "http://www.sat.gob.mx/TimbreFiscalDigital"
NS_IMPLOCAL = "http://www.sat.gob.mx/implocal"

SUPPORTED_VERSIONS = frozenset({"3.3", "4.0"})

TAX_ISR = "001"
TAX_VAT = "002"
TAX_EXCISE = "003"

CONCEPT_SEPARATOR = " | "

REGIME_LABELS: dict[str, str] = {
    "601": "General de Ley Personas Morales",
    "603": "Personas Morales con Fines no Lucrativos",
    "605": "Sueldos y Salarios e Ingresos Asimilados a Salarios",
    "606": "Arrendamiento",
    "608": "Demás ingresos",
    "609": "Consolidación",
    "610": "Residentes en el Extranjero sin Establecimiento Permanente en México",
    "611": "Ingresos por Dividendos (socios y accionistas)",
    "612": "Personas Físicas con Actividades Empresariales y Profesionales",
    "614": "Ingresos por intereses",
    "616": "Sin obligaciones fiscales",
    "620": "Sociedades Cooperativas de Producción que optan por diferir sus ingresos",
    "621": "Incorporación Fiscal",
    "622": "Actividades Agrícolas, Ganaderas, Silvícolas y Pesqueras",
    "623": "Opcional para Grupos de Sociedades",
    "624": "Coordinados",
    "625": "Régimen de las Actividades Empresariales con ingresos a través de Plataformas Tecnológicas",
    "626": "Régimen Simplificado de Confianza",
}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


# ─────────────────────── Small readers ───────────────────────


def _attr(node: etree._Element | None, *names: str) -> str:
    """First non-empty attribute among ``names`` (3.2-era files use lowercase)."""
    if node is None:
        return ""
    for name in names:
        value = node.get(name)
        if value:
            return value
    return ""


def _decimal(value: str, default: Decimal = ZERO) -> Decimal:
    if not value:
        return default
    try:
        number = Decimal(value.strip())
    except InvalidOperation:
        return default
    return number if number.is_finite() else default


def translate_regime(code: str) -> str:
    """Human label for a SAT c_RegimenFiscal code."""
    if not code:
        return ""
    return REGIME_LABELS.get(code, f"Régimen no identificado: {code}")


def _first(root: etree._Element, namespace: str, local_name: str) -> etree._Element | None:
    return next(root.iter(f"{{{namespace}}}{local_name}"), None)


# ─────────────────────── Classification ───────────────────────


def classify(
    document_type: str,
    issuer_rfc: str,
    receiver_rfc: str,
    own_rfc: str,
    is_payment: bool,
) -> DocumentRole:
    """
    Decide the role of a document for the requester ``own_rfc``.

    Payment complements that match neither party fall back to "received";
    there is no rule that would justify that default, but downstream
    reports rely on it.
    """
    own = normalize_rfc(own_rfc)
    receiver_matches = normalize_rfc(receiver_rfc) == own
    if is_payment:
        if receiver_matches:
            return DocumentRole.PAYMENT_RECEIVED
        if normalize_rfc(issuer_rfc) == own:
            return DocumentRole.PAYMENT_ISSUED
        return DocumentRole.PAYMENT_RECEIVED
    if document_type == "I":
        return DocumentRole.EXPENSE if receiver_matches else DocumentRole.INCOME
    return DocumentRole.UNCLASSIFIED


# ─────────────────────── Taxes ───────────────────────


def _sum_concept_taxes(root: etree._Element, ns: str, category: TaxCategory, tax_code: str) -> Decimal:
    item = "Traslado" if category is TaxCategory.TRANSFERRED else "Retencion"
    total = ZERO
    for concept in root.iter(f"{{{ns}}}Concepto"):
        for taxes in concept.iterfind(f"{{{ns}}}Impuestos"):
            for entry in taxes.iter(f"{{{ns}}}{item}"):
                if _attr(entry, "Impuesto", "impuesto") == tax_code:
                    total += _decimal(_attr(entry, "Importe", "importe"))
    return total


def _comprobante_level_fallback(
    root: etree._Element, ns: str, category: TaxCategory, tax_code: str, total: Decimal
) -> Decimal:
    """
    3.3 only: use the comprobante-level figure when the concepts summed to zero.

    The first matching entry wins. A non-zero but incomplete per-concept sum
    is kept as is, so the total can under-report.
    """
    group, item = (
        ("Traslados", "Traslado") if category is TaxCategory.TRANSFERRED else ("Retenciones", "Retencion")
    )
    taxes = root.find(f"{{{ns}}}Impuestos")
    if taxes is None:
        return total
    block = taxes.find(f"{{{ns}}}{group}")
    if block is None:
        return total
    for entry in block.iterfind(f"{{{ns}}}{item}"):
        if _attr(entry, "Impuesto", "impuesto") == tax_code and total == ZERO:
            total = _decimal(_attr(entry, "Importe", "importe"))
    return total


def _tax_total(root: etree._Element, ns: str, version: str, category: TaxCategory, tax_code: str) -> Decimal:
    total = _sum_concept_taxes(root, ns, category, tax_code)
    if version == "3.3":
        total = _comprobante_level_fallback(root, ns, category, tax_code, total)
    return total


def _local_taxes(root: etree._Element) -> Decimal:
    return sum(
        (_decimal(_attr(node, "Importe", "importe")) for node in root.iter(f"{{{NS_IMPLOCAL}}}TrasladosLocales")),
        ZERO,
    )


def _complement_taxes(node: etree._Element | None, suffix: str) -> tuple[TaxEntry, ...]:
    """Withheld then transferred entries of an ImpuestosP / ImpuestosDR node."""
    if node is None:
        return ()
    entries: list[TaxEntry] = []
    for withheld in node.iter(f"{{{NS_PAGOS_20}}}Retencion{suffix}"):
        entries.append(
            TaxEntry(
                category=TaxCategory.WITHHELD,
                tax_code=_attr(withheld, f"Impuesto{suffix}"),
                amount=_decimal(_attr(withheld, f"Importe{suffix}")),
            )
        )
    for transferred in node.iter(f"{{{NS_PAGOS_20}}}Traslado{suffix}"):
        entries.append(
            TaxEntry(
                category=TaxCategory.TRANSFERRED,
                tax_code=_attr(transferred, f"Impuesto{suffix}"),
                amount=_decimal(_attr(transferred, f"Importe{suffix}")),
                base=_decimal(_attr(transferred, f"Base{suffix}")),
                rate=_attr(transferred, f"TasaOCuota{suffix}"),
            )
        )
    return tuple(entries)


# ─────────────────────── Payment complement ───────────────────────


def _related_document(node: etree._Element, ns: str) -> RelatedDocumentEntry:
    is_v20 = ns == NS_PAGOS_20
    return RelatedDocumentEntry(
        document_id=_attr(node, "IdDocumento"),
        series=_attr(node, "Serie"),
        folio=_attr(node, "Folio"),
        currency=_attr(node, "MonedaDR"),
        installment=_attr(node, "NumParcialidad"),
        previous_balance=_decimal(_attr(node, "ImpSaldoAnt")),
        amount_paid=_decimal(_attr(node, "ImpPagado")),
        outstanding_balance=_decimal(_attr(node, "ImpSaldoInsoluto")),
        tax_object=_attr(node, "ObjetoImpDR") if is_v20 else "",
        equivalence=_decimal(_attr(node, "EquivalenciaDR"), ONE) if is_v20 else ONE,
        taxes=_complement_taxes(node.find(f"{{{ns}}}ImpuestosDR"), "DR") if is_v20 else (),
    )


def _payment(node: etree._Element, ns: str) -> PaymentEntry:
    is_v20 = ns == NS_PAGOS_20
    return PaymentEntry(
        date=_attr(node, "FechaPago"),
        payment_form=_attr(node, "FormaDePagoP"),
        currency=_attr(node, "MonedaP"),
        amount=_decimal(_attr(node, "Monto")),
        exchange_rate=_decimal(_attr(node, "TipoCambioP"), ONE),
        operation_number=_attr(node, "NumOperacion"),
        payer_bank_rfc=_attr(node, "RfcEmisorCtaOrd"),
        payer_bank_name=_attr(node, "NomBancoOrdExt"),
        payer_account=_attr(node, "CtaOrdenante"),
        payee_bank_rfc=_attr(node, "RfcEmisorCtaBen"),
        payee_account=_attr(node, "CtaBeneficiario"),
        taxes=_complement_taxes(node.find(f"{{{ns}}}ImpuestosP"), "P") if is_v20 else (),
        related_documents=tuple(
            _related_document(related, ns) for related in node.iter(f"{{{ns}}}DoctoRelacionado")
        ),
    )


def _payments_node(root: etree._Element) -> tuple[etree._Element, str] | None:
    for ns in (NS_PAGOS_20, NS_PAGOS_10):
        node = _first(root, ns, "Pagos")
        if node is not None:
            return node, ns
    return None


def _payment_totals(node: etree._Element, ns: str) -> PaymentTotals:
    if ns != NS_PAGOS_20:
        return PaymentTotals()
    totals = node.find(f"{{{NS_PAGOS_20}}}Totales")
    # Totals live on pago20:Totales; some generators put them on Pagos itself.
    source = totals if totals is not None else node
    return PaymentTotals(
        withheld_vat=_decimal(_attr(source, "TotalRetencionesIVA")),
        withheld_isr=_decimal(_attr(source, "TotalRetencionesISR")),
        transferred_vat16_base=_decimal(_attr(source, "TotalTrasladosBaseIVA16")),
        transferred_vat16_tax=_decimal(_attr(source, "TotalTrasladosImpuestoIVA16")),
    )


# ─────────────────────── Parser ───────────────────────


class CfdiParser:
    """
    Parse CFDI 3.3 / 4.0 comprobantes into TaxDocumentRecord values.

    Implements the DocumentParser port.
    """

    def parse(self, xml: bytes, own_rfc: str) -> TaxDocumentRecord | None:
        """
        Parse raw XML bytes.

        Returns None when the document is not a supported comprobante.
        Raises MalformedDocumentError when the bytes are not XML.
        """
        try:
            root = etree.fromstring(xml, _PARSER)
        except etree.XMLSyntaxError as e:
            raise MalformedDocumentError(f"Document is not well-formed XML: {e}") from e
        return self.parse_tree(root, own_rfc)

    def parse_tree(self, root: etree._Element, own_rfc: str) -> TaxDocumentRecord | None:
        """Parse an already-built lxml tree (root element)."""
        qname = etree.QName(root)
        if qname.localname != "Comprobante" or qname.namespace not in (NS_CFDI_33, NS_CFDI_40):
            log.warning("parser.not_a_comprobante", root=qname.text)
            return None
        version = _attr(root, "Version", "version")
        if version not in SUPPORTED_VERSIONS:
            log.warning("parser.unsupported_version", version=version or None)
            return None

        ns = qname.namespace
        issuer = root.find(f"{{{ns}}}Emisor")
        receiver = root.find(f"{{{ns}}}Receptor")
        document_type = _attr(root, "TipoDeComprobante", "tipoDeComprobante")
        payments = _payments_node(root)
        issuer_rfc = _attr(issuer, "Rfc", "rfc")
        receiver_rfc = _attr(receiver, "Rfc", "rfc")

        role = classify(
            document_type,
            issuer_rfc,
            receiver_rfc,
            own_rfc,
            is_payment=payments is not None or document_type == "P",
        )
        stamp = _first(root, NS_TFD, "TimbreFiscalDigital")
        concepts = [
            description
            for concept in root.iter(f"{{{ns}}}Concepto")
            if (description := _attr(concept, "Descripcion", "descripcion"))
        ]

        payments_version: str | None = None
        totals: PaymentTotals | None = None
        entries: tuple[PaymentEntry, ...] = ()
        if payments is not None:
            node, payments_ns = payments
            payments_version = _attr(node, "Version") or ("2.0" if payments_ns == NS_PAGOS_20 else "1.0")
            totals = _payment_totals(node, payments_ns)
            entries = tuple(_payment(pago, payments_ns) for pago in node.iter(f"{{{payments_ns}}}Pago"))

        return TaxDocumentRecord(
            version=version,
            role=role,
            folio=_attr(root, "Folio", "folio"),
            uuid=_attr(stamp, "UUID", "uuid"),
            date=_attr(root, "Fecha", "fecha")[:10],
            issuer_name=_attr(issuer, "Nombre", "nombre"),
            issuer_rfc=issuer_rfc,
            issuer_regime=translate_regime(_attr(issuer, "RegimenFiscal", "regimenFiscal")),
            receiver_name=_attr(receiver, "Nombre", "nombre"),
            receiver_rfc=receiver_rfc,
            receiver_regime=(
                translate_regime(_attr(receiver, "RegimenFiscalReceptor")) if version == "4.0" else ""
            ),
            payment_form=_attr(root, "FormaPago", "formaPago"),
            payment_method=_attr(root, "MetodoPago", "metodoPago"),
            cfdi_use=_attr(receiver, "UsoCFDI", "usoCFDI"),
            concepts=CONCEPT_SEPARATOR.join(concepts),
            subtotal=_decimal(_attr(root, "SubTotal", "subTotal")),
            discount=_decimal(_attr(root, "Descuento", "descuento")),
            vat=_tax_total(root, ns, version, TaxCategory.TRANSFERRED, TAX_VAT),
            excise=_tax_total(root, ns, version, TaxCategory.TRANSFERRED, TAX_EXCISE),
            local_tax=_local_taxes(root),
            withheld_isr=_tax_total(root, ns, version, TaxCategory.WITHHELD, TAX_ISR),
            withheld_vat=_tax_total(root, ns, version, TaxCategory.WITHHELD, TAX_VAT),
            total=_decimal(_attr(root, "Total", "total")),
            currency=_attr(root, "Moneda", "moneda"),
            exchange_rate=_decimal(_attr(root, "TipoCambio", "tipoCambio"), ONE),
            payments_version=payments_version,
            payment_totals=totals,
            payments=entries,
        )
