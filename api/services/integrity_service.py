"""Document integrity hashing.

The digest printed on a transaction certificate is a function of stored
transaction fields only, so it can be recomputed from the database row at any
time to detect tampering, and it does not change when the PDF is re-rendered.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime
from decimal import Decimal

from models import Transaction


def _iso_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _amount_string(amount: Decimal | None) -> str | None:
    return None if amount is None else format(amount, "f")


def canonical_payload(transaction: Transaction) -> str:
    """Serialize the hashed field subset with a fixed key order."""
    return json.dumps(
        {
            "id": transaction.id,
            "displayCode": transaction.display_code,
            "userId": transaction.user_id,
            "propertyId": transaction.property_id,
            "amount": _amount_string(transaction.amount_usdt),
            "createdAt": _iso_timestamp(transaction.created_at),
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_document_hash(transaction: Transaction) -> str:
    """SHA-256 hex digest of the canonical transaction payload."""
    return hashlib.sha256(canonical_payload(transaction).encode("utf-8")).hexdigest()


def verify_document_hash(transaction: Transaction, digest: str) -> bool:
    """Check a printed digest against the stored transaction record."""
    expected = compute_document_hash(transaction)
    return hmac.compare_digest(expected, digest.strip().lower())
