"""
Domain models — immutable values for credentials, download requests and CFDI records.

Everything here is a frozen dataclass or an Enum. Values are replaced, never
mutated: a refreshed token is a new AuthToken, a polled request is a new
DownloadRequest (see DownloadRequest.with_verification).

Secret material (certificate/key bytes, passphrase, token value) is excluded
from repr so it never reaches a log line by accident.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum, StrEnum

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

ZERO = Decimal("0")
ONE = Decimal("1")


# ─────────────────────── Credentials & session ───────────────────────


@dataclass(frozen=True, slots=True)
class Credential:
    """
    The holder's e.firma: certificate (.cer), private key (.key), passphrase and RFC.

    The RFC identifies the requester to the SAT and is the pivot used to
    classify documents as issued or received.
    """

    certificate: bytes = field(repr=False)
    private_key: bytes = field(repr=False)
    passphrase: str = field(repr=False)
    rfc: str


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """A loaded signing key plus the DER form of its certificate."""

    signing_key: RSAPrivateKey = field(repr=False)
    certificate_der: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class AuthToken:
    """A short-lived SAT access token."""

    value: str = field(repr=False)
    expires_at: datetime

    def is_valid(self, now: datetime, safety_margin: timedelta = timedelta(0)) -> bool:
        return now < self.expires_at - safety_margin


@dataclass(frozen=True, slots=True)
class SignedTimestamp:
    """Digest and signature over one WS-Security timestamp."""

    created: str
    expires: str
    digest_value: str
    signature_value: str
    correlation_id: str
    token_id: str


# ─────────────────────── Download request lifecycle ───────────────────────


class DocumentKind(StrEnum):
    """What the SAT should package: full XML documents or metadata rows."""

    CFDI = "CFDI"
    METADATA = "Metadata"


class RequestStatus(Enum):
    """
    Lifecycle of a bulk-download request.

    Values are the service's EstadoSolicitud codes; SUBMITTED is local (the
    request was sent but never polled) and UNKNOWN covers codes outside the
    fixed table.
    """

    SUBMITTED = 0
    ACCEPTED = 1
    IN_PROGRESS = 2
    COMPLETED = 3
    ERRORED = 4
    REJECTED = 5
    EXPIRED = 6
    UNKNOWN = -1

    @classmethod
    def from_code(cls, code: int) -> RequestStatus:
        if code in _SERVICE_CODES:
            return cls(code)
        return cls.UNKNOWN

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_SERVICE_CODES = frozenset(range(1, 7))

_STATUS_LABELS = {
    RequestStatus.SUBMITTED: "Submitted",
    RequestStatus.ACCEPTED: "Accepted",
    RequestStatus.IN_PROGRESS: "InProgress",
    RequestStatus.COMPLETED: "Completed",
    RequestStatus.ERRORED: "Errored",
    RequestStatus.REJECTED: "Rejected",
    RequestStatus.EXPIRED: "Expired",
    RequestStatus.UNKNOWN: "Unknown",
}

_TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.COMPLETED,
        RequestStatus.ERRORED,
        RequestStatus.REJECTED,
        RequestStatus.EXPIRED,
    }
)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """
    One poll of VerificaSolicitudDescarga.

    ``status_code`` is EstadoSolicitud; ``request_status_code`` is the
    finer-grained CodigoEstadoSolicitud (e.g. "5000", "5004") and
    ``service_code`` the CodEstatus of the call itself.
    """

    request_id: str
    status_code: int
    request_status_code: str = ""
    service_code: str = ""
    message: str = ""
    cfdi_count: int = 0
    package_ids: tuple[str, ...] = ()

    @property
    def status(self) -> RequestStatus:
        return RequestStatus.from_code(self.status_code)

    @property
    def status_label(self) -> str:
        return self.status.label


@dataclass(frozen=True, slots=True)
class DownloadRequest:
    """A submitted bulk-download request as last seen by the caller."""

    id: str
    start: date
    end: date
    kind: DocumentKind
    issuer_rfc: str | None = None
    receiver_rfc: str | None = None
    status: RequestStatus = RequestStatus.SUBMITTED
    status_code: int = 0
    message: str = ""
    cfdi_count: int = 0
    package_ids: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_verification(self, verification: VerificationResult) -> DownloadRequest:
        """
        Return the request updated with a poll result.

        A terminal request never changes again; a poll for another request
        id is ignored.
        """
        if self.is_terminal or verification.request_id != self.id:
            return self
        return replace(
            self,
            status=verification.status,
            status_code=verification.status_code,
            message=verification.message,
            cfdi_count=verification.cfdi_count,
            package_ids=verification.package_ids,
        )


# ─────────────────────── Parsed CFDI records ───────────────────────


class DocumentRole(StrEnum):
    """How a CFDI relates to the requester."""

    INCOME = "income"
    EXPENSE = "expense"
    PAYMENT_ISSUED = "payment_issued"
    PAYMENT_RECEIVED = "payment_received"
    UNCLASSIFIED = "unclassified"


class TaxCategory(StrEnum):
    TRANSFERRED = "transferred"
    WITHHELD = "withheld"


@dataclass(frozen=True, slots=True)
class TaxEntry:
    """A withheld or transferred tax line of a payment or related document."""

    category: TaxCategory
    tax_code: str
    amount: Decimal = ZERO
    base: Decimal | None = None
    rate: str = ""


@dataclass(frozen=True, slots=True)
class RelatedDocumentEntry:
    """An invoice paid (fully or partially) by a payment entry."""

    document_id: str = ""
    series: str = ""
    folio: str = ""
    currency: str = ""
    installment: str = ""
    previous_balance: Decimal = ZERO
    amount_paid: Decimal = ZERO
    outstanding_balance: Decimal = ZERO
    tax_object: str = ""
    equivalence: Decimal = ONE
    taxes: tuple[TaxEntry, ...] = ()


@dataclass(frozen=True, slots=True)
class PaymentEntry:
    """One Pago node of a payment complement."""

    date: str = ""
    payment_form: str = ""
    currency: str = ""
    amount: Decimal = ZERO
    exchange_rate: Decimal = ONE
    operation_number: str = ""
    payer_bank_rfc: str = ""
    payer_bank_name: str = ""
    payer_account: str = ""
    payee_bank_rfc: str = ""
    payee_account: str = ""
    taxes: tuple[TaxEntry, ...] = ()
    related_documents: tuple[RelatedDocumentEntry, ...] = ()


@dataclass(frozen=True, slots=True)
class PaymentTotals:
    """Summary totals of a Pagos 2.0 node (all zero for Pagos 1.0)."""

    withheld_vat: Decimal = ZERO
    withheld_isr: Decimal = ZERO
    transferred_vat16_base: Decimal = ZERO
    transferred_vat16_tax: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class TaxDocumentRecord:
    """
    A CFDI flattened to the fields the downstream reports need.

    Payment complements additionally carry ``payments_version``,
    ``payment_totals`` and the ordered ``payments``.
    """

    version: str
    role: DocumentRole
    folio: str = ""
    uuid: str = ""
    date: str = ""
    issuer_name: str = ""
    issuer_rfc: str = ""
    issuer_regime: str = ""
    receiver_name: str = ""
    receiver_rfc: str = ""
    receiver_regime: str = ""
    payment_form: str = ""
    payment_method: str = ""
    cfdi_use: str = ""
    concepts: str = ""
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    vat: Decimal = ZERO
    excise: Decimal = ZERO
    local_tax: Decimal = ZERO
    withheld_isr: Decimal = ZERO
    withheld_vat: Decimal = ZERO
    total: Decimal = ZERO
    currency: str = ""
    exchange_rate: Decimal = ONE
    payments_version: str | None = None
    payment_totals: PaymentTotals | None = None
    payments: tuple[PaymentEntry, ...] = ()

    @property
    def is_payment_complement(self) -> bool:
        return self.role in (DocumentRole.PAYMENT_ISSUED, DocumentRole.PAYMENT_RECEIVED)
