"""Template data assembly for certificates.

Pure transformation from ORM entities to the frozen presentation models in
``schemas``. No I/O happens here: the orchestrator loads entities and stamp
URLs, this module shapes them.

All aggregation runs on ``Decimal``. Values are converted to strings only at
the very end, so nothing is re-derived from already-rounded display text.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from models import Investment, Property, Transaction, User
from schemas import (
    PortfolioSummaryData,
    PortfolioTransactionRow,
    StampSet,
    TransactionCertificateData,
)
from services.exceptions import NotFoundError
from services.integrity_service import compute_document_hash

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PortfolioTotals:
    """Exact aggregates over a user's confirmed investments in one property."""

    total_tokens: Decimal
    total_invested: Decimal
    average_price: Decimal
    ownership_percentage: Decimal


def format_decimal(value: Decimal | None, default: str = "0") -> str:
    """Plain decimal string (no exponent), or ``default`` when missing."""
    if value is None:
        return default
    return format(value, "f")


def format_fixed(value: Decimal, places: Decimal = _CENTS) -> str:
    return format(value.quantize(places, rounding=ROUND_HALF_UP), "f")


def format_long_datetime(value: datetime) -> str:
    """e.g. "March 4, 2025, 02:07 PM"."""
    return f"{value:%B} {value.day}, {value.year}, {value:%I:%M %p}"


def format_long_date(value: datetime) -> str:
    """e.g. "March 4, 2025"."""
    return f"{value:%B} {value.day}, {value.year}"


def format_short_date(value: datetime) -> str:
    """e.g. "3/4/2025"."""
    return f"{value.month}/{value.day}/{value.year}"


def investor_display_name(user: User) -> str:
    return user.full_name or user.email


def property_location(prop: Property) -> str:
    parts = [p.strip() for p in (prop.city, prop.country) if p and p.strip()]
    return ", ".join(parts) or "N/A"


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def summarize_investments(
    investments: Sequence[Investment],
    property_total_tokens: Decimal | None,
) -> PortfolioTotals:
    """Aggregate token and USDT totals with division-by-zero guards.

    average_price is 0 when no tokens are held; ownership_percentage is 0
    when the property has no token supply.
    """
    total_tokens = sum((inv.tokens_purchased for inv in investments), _ZERO)
    total_invested = sum((inv.amount_usdt for inv in investments), _ZERO)

    average_price = total_invested / total_tokens if total_tokens > 0 else _ZERO

    supply = property_total_tokens or _ZERO
    ownership = total_tokens / supply * _HUNDRED if supply > 0 else _ZERO

    return PortfolioTotals(
        total_tokens=total_tokens,
        total_invested=total_invested,
        average_price=average_price,
        ownership_percentage=ownership,
    )


def _matching_investment(
    transaction: Transaction,
    investments: Sequence[Investment],
) -> Investment | None:
    return next(
        (
            inv
            for inv in investments
            if inv.user_id == transaction.user_id
            and inv.property_id == transaction.property_id
        ),
        None,
    )


def build_transaction_certificate_data(
    transaction: Transaction,
    investment: Investment | None,
    *,
    stamps: StampSet,
    now: datetime,
) -> TransactionCertificateData:
    """Shape a transaction (with user and property loaded) for rendering.

    Raises:
        NotFoundError: If the transaction's user or property is missing
    """
    user = transaction.user
    prop = transaction.property
    if user is None:
        raise NotFoundError(
            "user", transaction.user_id or "", "Transaction user not found"
        )
    if prop is None:
        raise NotFoundError(
            "property", transaction.property_id or "", "Transaction property not found"
        )

    metadata = transaction.metadata_ or {}

    return TransactionCertificateData(
        certificate_id=f"CERT-{transaction.display_code}-{_epoch_millis(now)}",
        transaction_display_code=transaction.display_code,
        transaction_date=format_long_datetime(transaction.created_at),
        transaction_status=transaction.status.value.upper(),
        transaction_type=transaction.type.value.upper(),
        investor_name=investor_display_name(user),
        investor_code=user.display_code or user.id,
        property_name=prop.title,
        property_display_code=prop.display_code,
        tokens_purchased=format_decimal(
            investment.tokens_purchased if investment else None, default="N/A"
        ),
        token_price=format_decimal(prop.price_per_token_usdt),
        total_amount=format_decimal(transaction.amount_usdt),
        blockchain_hash=metadata.get("txHash") or None,
        blockchain_network=metadata.get("network") or None,
        secp_stamp_url=stamps.secp_stamp_url,
        sbp_stamp_url=stamps.sbp_stamp_url,
        generated_at=format_long_date(now),
        document_hash=compute_document_hash(transaction),
    )


def build_portfolio_summary_data(
    user: User,
    prop: Property,
    investments: Sequence[Investment],
    transactions: Sequence[Transaction],
    *,
    stamps: StampSet,
    now: datetime,
) -> PortfolioSummaryData:
    """Shape a user's position in one property for rendering.

    Raises:
        NotFoundError: If the user holds no confirmed investments in the property
    """
    if not investments:
        raise NotFoundError(
            "investments",
            f"{user.id}/{prop.id}",
            "No investments found for this property",
        )

    totals = summarize_investments(investments, prop.total_tokens)

    rows = []
    for txn in transactions:
        related = _matching_investment(txn, investments)
        rows.append(
            PortfolioTransactionRow(
                date=format_short_date(txn.created_at),
                display_code=txn.display_code,
                tokens=format_decimal(related.tokens_purchased if related else None),
                amount=format_decimal(txn.amount_usdt),
                status=txn.status.value.upper(),
            )
        )

    return PortfolioSummaryData(
        certificate_id=f"PORT-{prop.display_code}-{_epoch_millis(now)}",
        investor_name=investor_display_name(user),
        investor_code=user.display_code or user.id,
        property_name=prop.title,
        property_display_code=prop.display_code,
        property_location=property_location(prop),
        expected_roi=format_decimal(prop.expected_roi),
        total_tokens=format_decimal(totals.total_tokens),
        total_invested=format_decimal(totals.total_invested),
        average_price=format_fixed(totals.average_price),
        ownership_percentage=format_fixed(totals.ownership_percentage),
        transactions=tuple(rows),
        secp_stamp_url=stamps.secp_stamp_url,
        sbp_stamp_url=stamps.sbp_stamp_url,
        generated_at=format_long_date(now),
    )
