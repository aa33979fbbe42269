"""
Unit tests for the CFDI parser — version gate, classification, field
extraction, tax totals and payment complements.

Documents are built with the helpers in tests/conftest.py so each test
states only the part of the comprobante it cares about.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from cfdi_downloader.adapters.cfdi_parser import CfdiParser, classify, translate_regime
from cfdi_downloader.domain.errors import MalformedDocumentError
from cfdi_downloader.domain.models import ONE, DocumentRole, TaxCategory, TaxDocumentRecord
from tests.conftest import (
    OTHER_RFC,
    OWN_RFC,
    TEST_UUID,
    cfdi_xml,
    comprobante_taxes,
    concept,
)

PAYMENTS_20 = (
    '<pago20:Pagos Version="2.0">'
    '<pago20:Totales TotalRetencionesIVA="10.00" TotalRetencionesISR="5.00"'
    ' TotalTrasladosBaseIVA16="1000.00" TotalTrasladosImpuestoIVA16="160.00" MontoTotalPagos="1160.00"/>'
    '<pago20:Pago FechaPago="2024-03-10T12:00:00" FormaDePagoP="03" MonedaP="MXN" TipoCambioP="1"'
    ' Monto="1160.00" NumOperacion="OP-1" RfcEmisorCtaOrd="BBA830831LJ2" NomBancoOrdExt="BBVA"'
    ' CtaOrdenante="0123456789" RfcEmisorCtaBen="BSM970519DU8" CtaBeneficiario="9876543210">'
    '<pago20:DoctoRelacionado IdDocumento="ABC-123" Serie="F" Folio="77" MonedaDR="MXN"'
    ' EquivalenciaDR="1" NumParcialidad="1" ImpSaldoAnt="1160.00" ImpPagado="1160.00"'
    ' ImpSaldoInsoluto="0.00" ObjetoImpDR="02">'
    "<pago20:ImpuestosDR>"
    "<pago20:RetencionesDR>"
    '<pago20:RetencionDR BaseDR="1000.00" ImpuestoDR="002" TipoFactorDR="Tasa"'
    ' TasaOCuotaDR="0.010000" ImporteDR="10.00"/>'
    "</pago20:RetencionesDR>"
    "<pago20:TrasladosDR>"
    '<pago20:TrasladoDR BaseDR="1000.00" ImpuestoDR="002" TipoFactorDR="Tasa"'
    ' TasaOCuotaDR="0.160000" ImporteDR="160.00"/>'
    "</pago20:TrasladosDR>"
    "</pago20:ImpuestosDR>"
    "</pago20:DoctoRelacionado>"
    "<pago20:ImpuestosP>"
    "<pago20:TrasladosP>"
    '<pago20:TrasladoP BaseP="1000.00" ImpuestoP="002" TipoFactorP="Tasa"'
    ' TasaOCuotaP="0.160000" ImporteP="160.00"/>'
    "</pago20:TrasladosP>"
    "</pago20:ImpuestosP>"
    "</pago20:Pago>"
    '<pago20:Pago FechaPago="2024-03-20T09:00:00" FormaDePagoP="02" MonedaP="MXN" Monto="10.00"/>'
    "</pago20:Pagos>"
)

PAYMENTS_10 = (
    '<pago10:Pagos Version="1.0">'
    '<pago10:Pago FechaPago="2021-05-01T10:00:00" FormaDePagoP="03" MonedaP="USD" TipoCambioP="19.85"'
    ' Monto="500.00">'
    '<pago10:DoctoRelacionado IdDocumento="X-1" MonedaDR="USD" MetodoDePagoDR="PPD" NumParcialidad="2"'
    ' ImpSaldoAnt="1000.00" ImpPagado="500.00" ImpSaldoInsoluto="500.00"/>'
    "</pago10:Pago>"
    "</pago10:Pagos>"
)


@pytest.fixture()
def parser() -> CfdiParser:
    return CfdiParser()


def _parse(parser: CfdiParser, xml: bytes, own_rfc: str = OWN_RFC) -> TaxDocumentRecord:
    record = parser.parse(xml, own_rfc)
    assert record is not None
    return record


class TestVersionGate:
    """
    GIVEN documents that are not supported comprobantes
    WHEN they are parsed
    THEN None is returned, except for non-XML bytes which raise.
    """

    @pytest.mark.parametrize("version", ["3.2", "1.0", ""])
    def test_unsupported_version(self, parser: CfdiParser, version: str) -> None:
        xml = cfdi_xml(version=version, namespace="http://www.sat.gob.mx/cfd/3")
        assert parser.parse(xml, OWN_RFC) is None

    def test_not_a_comprobante(self, parser: CfdiParser) -> None:
        assert parser.parse(b"<retenciones:Retenciones xmlns:retenciones='urn:x'/>", OWN_RFC) is None

    def test_foreign_namespace(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(namespace="http://example.com/not-cfdi")
        assert parser.parse(xml, OWN_RFC) is None

    def test_malformed_bytes(self, parser: CfdiParser) -> None:
        with pytest.raises(MalformedDocumentError):
            parser.parse(b"<cfdi:Comprobante", OWN_RFC)

    @pytest.mark.parametrize("version", ["3.3", "4.0"])
    def test_supported_versions(self, parser: CfdiParser, version: str) -> None:
        assert _parse(parser, cfdi_xml(version=version)).version == version


class TestClassification:
    """
    GIVEN documents of each type and party combination
    WHEN they are parsed for the requester RFC
    THEN exactly the expected role is assigned.
    """

    def test_issued_invoice_is_income(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(issuer_rfc=OWN_RFC, receiver_rfc=OTHER_RFC))
        assert record.role is DocumentRole.INCOME

    def test_received_invoice_is_expense(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(issuer_rfc=OTHER_RFC, receiver_rfc=OWN_RFC))
        assert record.role is DocumentRole.EXPENSE

    def test_rfc_match_ignores_case_and_whitespace(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(receiver_rfc=OWN_RFC), own_rfc=f"  {OWN_RFC.lower()} ")
        assert record.role is DocumentRole.EXPENSE

    @pytest.mark.parametrize("doc_type", ["E", "T", "N"])
    def test_other_types_are_unclassified(self, parser: CfdiParser, doc_type: str) -> None:
        assert _parse(parser, cfdi_xml(doc_type=doc_type)).role is DocumentRole.UNCLASSIFIED

    def test_payment_issued(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(doc_type="P", issuer_rfc=OWN_RFC, receiver_rfc=OTHER_RFC, complement=PAYMENTS_20)
        assert _parse(parser, xml).role is DocumentRole.PAYMENT_ISSUED

    def test_payment_received(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(doc_type="P", issuer_rfc=OTHER_RFC, receiver_rfc=OWN_RFC, complement=PAYMENTS_20)
        assert _parse(parser, xml).role is DocumentRole.PAYMENT_RECEIVED

    def test_payment_of_third_parties_defaults_to_received(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(doc_type="P", issuer_rfc=OTHER_RFC, receiver_rfc="XAXX010101000", complement=PAYMENTS_20)
        assert _parse(parser, xml).role is DocumentRole.PAYMENT_RECEIVED

    @pytest.mark.parametrize(
        ("document_type", "issuer", "receiver", "is_payment", "expected"),
        [
            ("I", OWN_RFC, OTHER_RFC, False, DocumentRole.INCOME),
            ("I", OTHER_RFC, OWN_RFC, False, DocumentRole.EXPENSE),
            ("I", OWN_RFC, OWN_RFC, False, DocumentRole.EXPENSE),
            ("P", OWN_RFC, OWN_RFC, True, DocumentRole.PAYMENT_RECEIVED),
            ("I", OWN_RFC, OTHER_RFC, True, DocumentRole.PAYMENT_ISSUED),
            ("E", OWN_RFC, OTHER_RFC, False, DocumentRole.UNCLASSIFIED),
        ],
    )
    def test_classify_table(
        self, document_type: str, issuer: str, receiver: str, is_payment: bool, expected: DocumentRole
    ) -> None:
        assert classify(document_type, issuer, receiver, OWN_RFC, is_payment) is expected


class TestFieldExtraction:
    """
    GIVEN a complete 4.0 invoice
    WHEN it is parsed
    THEN the flat fields carry the comprobante values.
    """

    def test_header_fields(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(concepts=concept("Servicio")))
        assert record.folio == "123"
        assert record.uuid == TEST_UUID
        assert record.date == "2024-03-15"
        assert record.issuer_name == "Emisora SA de CV"
        assert record.issuer_rfc == OTHER_RFC
        assert record.receiver_name == "Receptor Uno"
        assert record.receiver_rfc == OWN_RFC
        assert record.payment_form == "03"
        assert record.payment_method == "PUE"
        assert record.cfdi_use == "G03"
        assert record.currency == "MXN"

    def test_amounts(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml())
        assert record.subtotal == Decimal("1000.00")
        assert record.discount == Decimal("10.50")
        assert record.total == Decimal("1149.50")
        assert record.exchange_rate == ONE

    def test_regimes_are_translated(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(version="4.0"))
        assert record.issuer_regime == "General de Ley Personas Morales"
        assert record.receiver_regime == "Personas Físicas con Actividades Empresariales y Profesionales"

    def test_receiver_regime_blank_for_33(self, parser: CfdiParser) -> None:
        assert _parse(parser, cfdi_xml(version="3.3")).receiver_regime == ""

    def test_concepts_joined_in_order(self, parser: CfdiParser) -> None:
        concepts = concept("Licencia") + concept("") + concept("Soporte anual")
        assert _parse(parser, cfdi_xml(concepts=concepts)).concepts == "Licencia | Soporte anual"

    def test_unparseable_number_degrades(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml(extra_attributes=' TipoCambio="n/a"'))
        assert record.exchange_rate == ONE

    def test_not_a_payment_complement(self, parser: CfdiParser) -> None:
        record = _parse(parser, cfdi_xml())
        assert record.payments_version is None
        assert record.payment_totals is None
        assert record.payments == ()


class TestRegimeTranslation:
    def test_known(self) -> None:
        assert translate_regime("626") == "Régimen Simplificado de Confianza"

    def test_unknown(self) -> None:
        assert translate_regime("999") == "Régimen no identificado: 999"

    def test_empty(self) -> None:
        assert translate_regime("") == ""


class TestTaxTotals:
    """
    GIVEN concepts with transferred and withheld taxes
    WHEN the document is parsed
    THEN per-code totals are summed across concepts.
    """

    def test_vat_sums_every_concept(self, parser: CfdiParser) -> None:
        concepts = concept("A", transfers=[("002", "16.00")]) + concept("B", transfers=[("002", "8.00")])
        assert _parse(parser, cfdi_xml(concepts=concepts)).vat == Decimal("24.00")

    def test_excise_and_withholdings(self, parser: CfdiParser) -> None:
        concepts = concept(
            "A",
            transfers=[("002", "16.00"), ("003", "26.50")],
            withholdings=[("001", "10.00"), ("002", "10.67")],
        ) + concept("B", withholdings=[("001", "1.25")])
        record = _parse(parser, cfdi_xml(concepts=concepts))
        assert record.vat == Decimal("16.00")
        assert record.excise == Decimal("26.50")
        assert record.withheld_isr == Decimal("11.25")
        assert record.withheld_vat == Decimal("10.67")

    def test_comprobante_level_taxes_ignored_for_40(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(version="4.0", taxes=comprobante_taxes(transfers=[("002", "160.00")]))
        assert _parse(parser, xml).vat == Decimal(0)

    def test_33_falls_back_to_comprobante_level(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(
            version="3.3",
            concepts=concept("Sin impuestos"),
            taxes=comprobante_taxes(transfers=[("002", "160.00")], withholdings=[("001", "100.00")]),
        )
        record = _parse(parser, xml)
        assert record.vat == Decimal("160.00")
        assert record.withheld_isr == Decimal("100.00")

    def test_33_nonzero_concept_sum_wins(self, parser: CfdiParser) -> None:
        xml = cfdi_xml(
            version="3.3",
            concepts=concept("A", transfers=[("002", "16.00")]),
            taxes=comprobante_taxes(transfers=[("002", "160.00")]),
        )
        assert _parse(parser, xml).vat == Decimal("16.00")

    def test_local_taxes(self, parser: CfdiParser) -> None:
        local = (
            '<implocal:ImpuestosLocales version="1.0" TotaldeRetenciones="0.00" TotaldeTraslados="35.00">'
            '<implocal:TrasladosLocales ImpLocTrasladado="ISH" TasadeTraslado="3.00" Importe="30.00"/>'
            '<implocal:TrasladosLocales ImpLocTrasladado="Saneamiento" TasadeTraslado="0.50" Importe="5.00"/>'
            "</implocal:ImpuestosLocales>"
        )
        assert _parse(parser, cfdi_xml(complement=local)).local_tax == Decimal("35.00")


class TestPayments20:
    """
    GIVEN a Pagos 2.0 complement with two payments
    WHEN it is parsed
    THEN totals, payments, related documents and their taxes come out in order.
    """

    @pytest.fixture()
    def record(self, parser: CfdiParser) -> TaxDocumentRecord:
        return _parse(parser, cfdi_xml(doc_type="P", issuer_rfc=OWN_RFC, complement=PAYMENTS_20))

    def test_version_and_totals(self, record: TaxDocumentRecord) -> None:
        assert record.payments_version == "2.0"
        assert record.payment_totals is not None
        assert record.payment_totals.withheld_vat == Decimal("10.00")
        assert record.payment_totals.withheld_isr == Decimal("5.00")
        assert record.payment_totals.transferred_vat16_base == Decimal("1000.00")
        assert record.payment_totals.transferred_vat16_tax == Decimal("160.00")

    def test_payments_in_document_order(self, record: TaxDocumentRecord) -> None:
        assert [p.date for p in record.payments] == ["2024-03-10T12:00:00", "2024-03-20T09:00:00"]
        first = record.payments[0]
        assert first.payment_form == "03"
        assert first.amount == Decimal("1160.00")
        assert first.operation_number == "OP-1"
        assert first.payer_bank_rfc == "BBA830831LJ2"
        assert first.payer_bank_name == "BBVA"
        assert first.payer_account == "0123456789"
        assert first.payee_bank_rfc == "BSM970519DU8"
        assert first.payee_account == "9876543210"

    def test_missing_exchange_rate_defaults_to_one(self, record: TaxDocumentRecord) -> None:
        assert record.payments[1].exchange_rate == ONE
        assert record.payments[1].related_documents == ()

    def test_payment_taxes(self, record: TaxDocumentRecord) -> None:
        (tax,) = record.payments[0].taxes
        assert tax.category is TaxCategory.TRANSFERRED
        assert tax.tax_code == "002"
        assert tax.base == Decimal("1000.00")
        assert tax.rate == "0.160000"
        assert tax.amount == Decimal("160.00")

    def test_related_document(self, record: TaxDocumentRecord) -> None:
        (related,) = record.payments[0].related_documents
        assert related.document_id == "ABC-123"
        assert related.series == "F"
        assert related.folio == "77"
        assert related.currency == "MXN"
        assert related.installment == "1"
        assert related.previous_balance == Decimal("1160.00")
        assert related.amount_paid == Decimal("1160.00")
        assert related.outstanding_balance == Decimal("0.00")
        assert related.tax_object == "02"
        assert related.equivalence == ONE

    def test_related_document_taxes_withheld_first(self, record: TaxDocumentRecord) -> None:
        taxes = record.payments[0].related_documents[0].taxes
        assert [t.category for t in taxes] == [TaxCategory.WITHHELD, TaxCategory.TRANSFERRED]
        assert taxes[0].amount == Decimal("10.00")
        assert taxes[1].base == Decimal("1000.00")

    def test_totals_on_pagos_node(self, parser: CfdiParser) -> None:
        complement = (
            '<pago20:Pagos Version="2.0" TotalRetencionesIVA="1.00" TotalTrasladosImpuestoIVA16="16.00">'
            '<pago20:Pago FechaPago="2024-03-10T12:00:00" Monto="116.00"/>'
            "</pago20:Pagos>"
        )
        record = _parse(parser, cfdi_xml(doc_type="P", complement=complement))
        assert record.payment_totals is not None
        assert record.payment_totals.withheld_vat == Decimal("1.00")
        assert record.payment_totals.transferred_vat16_tax == Decimal("16.00")


class TestPayments10:
    """
    GIVEN a 3.3 comprobante with a Pagos 1.0 complement
    WHEN it is parsed
    THEN totals are zero and 2.0-only fields keep their defaults.
    """

    @pytest.fixture()
    def record(self, parser: CfdiParser) -> TaxDocumentRecord:
        return _parse(parser, cfdi_xml(version="3.3", doc_type="P", complement=PAYMENTS_10))

    def test_version_and_zero_totals(self, record: TaxDocumentRecord) -> None:
        assert record.role is DocumentRole.PAYMENT_RECEIVED
        assert record.payments_version == "1.0"
        assert record.payment_totals is not None
        assert record.payment_totals.withheld_vat == Decimal(0)
        assert record.payment_totals.transferred_vat16_tax == Decimal(0)

    def test_payment_and_related_document(self, record: TaxDocumentRecord) -> None:
        (payment,) = record.payments
        assert payment.currency == "USD"
        assert payment.exchange_rate == Decimal("19.85")
        assert payment.taxes == ()
        (related,) = payment.related_documents
        assert related.document_id == "X-1"
        assert related.installment == "2"
        assert related.outstanding_balance == Decimal("500.00")
        assert related.tax_object == ""
        assert related.equivalence == ONE
        assert related.taxes == ()
