"""
Request signer — digest and signature over the WS-Security timestamp.

The Autenticacion service does not canonicalize what it receives: it checks
the signature against its own rendering of these exact strings. The two
templates below are therefore wire contracts and must stay byte-identical
(no whitespace, attribute order as shown).

  timestamp ──SHA-1──▶ DigestValue ──▶ SignedInfo ──RSA PKCS#1 v1.5 / SHA-1──▶ SignatureValue
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from cfdi_downloader.domain.models import SignedTimestamp

TIMESTAMP_VALIDITY = timedelta(minutes=5)

TIMESTAMP_TEMPLATE = (
    '<u:Timestamp u:Id="_0">'
    "<u:Created>{created}</u:Created>"
    "<u:Expires>{expires}</u:Expires>"
    "</u:Timestamp>"
)

SIGNED_INFO_TEMPLATE = (
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
)


def format_instant(instant: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a Z suffix: 2024-01-31T18:04:05.123Z."""
    utc = instant.astimezone(UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def timestamp_digest(created: str, expires: str) -> str:
    canonical = TIMESTAMP_TEMPLATE.format(created=created, expires=expires)
    return base64.b64encode(hashlib.sha1(canonical.encode("utf-8")).digest()).decode("ascii")


def sign_digest(digest: str, key: rsa.RSAPrivateKey) -> str:
    signed_info = SIGNED_INFO_TEMPLATE.format(digest=digest)
    signature = key.sign(signed_info.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
    return base64.b64encode(signature).decode("ascii")


class RequestSigner:
    """
    Sign fresh timestamps with one RSA key.

    The clock is injectable so tests can pin ``created``; the digest and
    signature are deterministic for a fixed (created, expires, key) because
    PKCS#1 v1.5 has no random padding.
    """

    def __init__(
        self,
        key: rsa.RSAPrivateKey,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._key = key
        self._clock = clock

    def sign_timestamp(self) -> SignedTimestamp:
        created_at = self._clock()
        return self.sign(
            format_instant(created_at),
            format_instant(created_at + TIMESTAMP_VALIDITY),
        )

    def sign(self, created: str, expires: str) -> SignedTimestamp:
        digest = timestamp_digest(created, expires)
        return SignedTimestamp(
            created=created,
            expires=expires,
            digest_value=digest,
            signature_value=sign_digest(digest, self._key),
            correlation_id=str(uuid.uuid4()),
            token_id=f"uuid-{uuid.uuid4()}-4",
        )
