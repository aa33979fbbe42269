"""
Legacy flat export — TaxDocumentRecord to the single-level column dict.

Spreadsheet and DIOT reports consume one flat row per document, with the
repeated payment structures spelled out as indexed columns (1-based):

  FECHA_PAGO_<i>, MONTO_PAGO_<i>, ...             one per payment
  ID_DOCUMENTO_<i>_<j>, IMP_PAGADO_<i>_<j>, ...   one per related document
  RETENCION_<code>_PAGO_<i>                       withheld tax of a payment
  TRASLADO_<code>_{BASE,TASA,IMPORTE}_DR_<i>_<j>  transferred tax of a related document

Column names and the Spanish role labels are a contract with those reports.
The flattening lives only here; the rest of the package works on the typed record.
"""

from __future__ import annotations

from decimal import Decimal

from cfdi_downloader.domain.models import (
    DocumentRole,
    TaxCategory,
    TaxDocumentRecord,
    TaxEntry,
)

FlatValue = str | Decimal
FlatRecord = dict[str, FlatValue]

ROLE_LABELS: dict[DocumentRole, str] = {
    DocumentRole.INCOME: "Ingreso",
    DocumentRole.EXPENSE: "Gasto",
    DocumentRole.PAYMENT_ISSUED: "ComplementoPagoEmitido",
    DocumentRole.PAYMENT_RECEIVED: "ComplementoPagoRecibido",
    DocumentRole.UNCLASSIFIED: "Desconocido",
}


def _flatten_taxes(row: FlatRecord, taxes: tuple[TaxEntry, ...], suffix: str) -> None:
    # Several entries with the same tax code overwrite each other: last one wins.
    for tax in taxes:
        if tax.category is TaxCategory.WITHHELD:
            row[f"RETENCION_{tax.tax_code}_{suffix}"] = tax.amount
        else:
            row[f"TRASLADO_{tax.tax_code}_BASE_{suffix}"] = tax.base if tax.base is not None else Decimal(0)
            row[f"TRASLADO_{tax.tax_code}_TASA_{suffix}"] = tax.rate
            row[f"TRASLADO_{tax.tax_code}_IMPORTE_{suffix}"] = tax.amount


def flatten_record(record: TaxDocumentRecord) -> FlatRecord:
    """Render one record with the legacy column names, in legacy column order."""
    row: FlatRecord = {
        "VERSION_CFDI": record.version,
        "TIPO_DOCUMENTO": ROLE_LABELS[record.role],
        "FOLIO": record.folio,
        "FOLIO_FISCAL": record.uuid,
        "FECHA_CFDI": record.date,
        "NOMBRE_EMISOR": record.issuer_name,
        "RFC_EMISOR": record.issuer_rfc,
        "FORMA_DE_PAGO": record.payment_form,
        "METODO_DE_PAGO": record.payment_method,
        "REGIMEN_RECEPTOR": record.receiver_regime,
        "CONCEPTO": record.concepts,
        "SUBTOTAL": record.subtotal,
        "DESCUENTO": record.discount,
        "IVA": record.vat,
        "IEPS": record.excise,
        "IMPUESTO_LOCAL": record.local_tax,
        "RETENCION_ISR": record.withheld_isr,
        "RETENCION_IVA": record.withheld_vat,
        "TOTAL": record.total,
        "MONEDA": record.currency,
        "TIPO_DE_CAMBIO": record.exchange_rate,
        "USO_DE_CFDI": record.cfdi_use,
        "NOMBRE_RECEPTOR": record.receiver_name,
        "RFC_RECEPTOR": record.receiver_rfc,
        "REGIMEN_EMISOR": record.issuer_regime,
    }
    if record.payments_version is None:
        return row

    totals = record.payment_totals
    row["VERSION_PAGOS"] = record.payments_version
    row["TOTAL_RETENCIONES_IVA"] = totals.withheld_vat if totals else Decimal(0)
    row["TOTAL_RETENCIONES_ISR"] = totals.withheld_isr if totals else Decimal(0)
    row["TOTAL_TRASLADOS_BASE_IVA16"] = totals.transferred_vat16_base if totals else Decimal(0)
    row["TOTAL_TRASLADOS_IMPUESTO_IVA16"] = totals.transferred_vat16_tax if totals else Decimal(0)

    for i, payment in enumerate(record.payments, start=1):
        row[f"FECHA_PAGO_{i}"] = payment.date
        row[f"FORMA_DE_PAGO_{i}"] = payment.payment_form
        row[f"MONEDA_PAGO_{i}"] = payment.currency
        row[f"MONTO_PAGO_{i}"] = payment.amount
        row[f"TIPO_CAMBIO_PAGO_{i}"] = payment.exchange_rate
        row[f"NUM_OPERACION_{i}"] = payment.operation_number
        row[f"RFC_EMISOR_CTA_ORD_{i}"] = payment.payer_bank_rfc
        row[f"NOMBRE_BANCO_ORD_EXT_{i}"] = payment.payer_bank_name
        row[f"CTA_ORDENANTE_{i}"] = payment.payer_account
        row[f"RFC_EMISOR_CTA_BEN_{i}"] = payment.payee_bank_rfc
        row[f"CTA_BENEFICIARIO_{i}"] = payment.payee_account
        _flatten_taxes(row, payment.taxes, f"PAGO_{i}")

        for j, related in enumerate(payment.related_documents, start=1):
            index = f"{i}_{j}"
            row[f"ID_DOCUMENTO_{index}"] = related.document_id
            row[f"SERIE_DR_{index}"] = related.series
            row[f"FOLIO_DR_{index}"] = related.folio
            row[f"MONEDA_DR_{index}"] = related.currency
            row[f"NUM_PARCIALIDAD_{index}"] = related.installment
            row[f"IMP_SALDO_ANT_{index}"] = related.previous_balance
            row[f"IMP_PAGADO_{index}"] = related.amount_paid
            row[f"IMP_SALDO_INSOLUTO_{index}"] = related.outstanding_balance
            row[f"OBJETO_IMP_DR_{index}"] = related.tax_object
            row[f"EQUIVALENCIA_DR_{index}"] = related.equivalence
            _flatten_taxes(row, related.taxes, f"DR_{index}")
    return row
