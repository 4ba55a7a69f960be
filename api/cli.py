#!/usr/bin/env python3
"""CLI for certificate operations.

Usage:
    python -m cli <command> [args]

Commands:
    generate-transaction  Generate (or re-link) a transaction certificate
    generate-portfolio    Render a portfolio summary for a user and property
    transaction-link      Print a signed link for a transaction's certificate
    legal-document        Print a link to a property's legal document
    verify-hash           Check a document hash against a stored transaction
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from core.database import (
    create_engine,
    create_session_maker,
    dispose_engine,
    session_scope,
)
from core.logger import configure_logging
from core.storage import close_http_client
from repositories.transaction_repository import TransactionRepository
from services import certificates_service
from services.exceptions import (
    LinkIssueError,
    NotFoundError,
    RenderFailure,
    UploadError,
)
from services.integrity_service import verify_document_hash

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _with_session(operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
    engine = create_engine()
    try:
        async with session_scope(create_session_maker(engine)) as session:
            return await operation(session)
    finally:
        await close_http_client()
        await dispose_engine(engine)


def _run(operation: Callable[[AsyncSession], Awaitable[T]]) -> T | None:
    try:
        return asyncio.run(_with_session(operation))
    except (NotFoundError, RenderFailure, UploadError, LinkIssueError) as e:
        logger.error("cli.command.failed", extra={"error": str(e)})
        return None


def cmd_generate_transaction(transaction_id: str, investment_id: str | None) -> int:
    """Generate a transaction certificate and print its links."""
    links = _run(
        lambda db: certificates_service.generate_transaction_certificate(
            db, transaction_id, investment_id
        )
    )
    if links is None:
        return 1
    print(f"certificate_path: {links.certificate_path}")
    print(f"signed_url: {links.signed_url}")
    return 0


def cmd_generate_portfolio(user_id: str, property_ref: str) -> int:
    links = _run(
        lambda db: certificates_service.generate_portfolio_summary(
            db, user_id, property_ref
        )
    )
    if links is None:
        return 1
    print(f"certificate_path: {links.certificate_path}")
    print(f"signed_url: {links.signed_url}")
    return 0


def cmd_transaction_link(transaction_ref: str) -> int:
    url = _run(
        lambda db: certificates_service.get_transaction_certificate(
            db, transaction_ref
        )
    )
    if url is None:
        return 1
    print(url)
    return 0


def cmd_legal_document(property_ref: str) -> int:
    url = _run(
        lambda db: certificates_service.get_property_legal_document(db, property_ref)
    )
    if url is None:
        logger.warning("cli.legal_document.none", extra={"property": property_ref})
        return 1
    print(url)
    return 0


def cmd_verify_hash(transaction_id: str, digest: str) -> int:
    """Exit 0 when ``digest`` matches the transaction's current fields."""

    async def _verify(db: AsyncSession) -> bool:
        transaction = await TransactionRepository(db).get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)
        return verify_document_hash(transaction, digest)

    valid = _run(_verify)
    if valid is None:
        return 1
    print("valid" if valid else "INVALID")
    return 0 if valid else 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Certificate generation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    gen_txn = subparsers.add_parser(
        "generate-transaction",
        help="Generate (or re-link) a transaction certificate",
    )
    gen_txn.add_argument("transaction_id")
    gen_txn.add_argument(
        "--investment-id",
        default=None,
        help="Investment to mirror the certificate onto (default: latest)",
    )

    gen_port = subparsers.add_parser(
        "generate-portfolio",
        help="Render a portfolio summary for a user and property",
    )
    gen_port.add_argument("user_id")
    gen_port.add_argument("property_ref", help="Property UUID or display code")

    link = subparsers.add_parser(
        "transaction-link",
        help="Print a signed link for a transaction's certificate",
    )
    link.add_argument("transaction_ref", help="Transaction UUID or display code")

    legal = subparsers.add_parser(
        "legal-document",
        help="Print a link to a property's legal document",
    )
    legal.add_argument("property_ref", help="Property UUID or display code")

    verify = subparsers.add_parser(
        "verify-hash",
        help="Check a document hash against a stored transaction",
    )
    verify.add_argument("transaction_id")
    verify.add_argument("digest")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    configure_logging()

    if args.command == "generate-transaction":
        return cmd_generate_transaction(args.transaction_id, args.investment_id)
    elif args.command == "generate-portfolio":
        return cmd_generate_portfolio(args.user_id, args.property_ref)
    elif args.command == "transaction-link":
        return cmd_transaction_link(args.transaction_ref)
    elif args.command == "legal-document":
        return cmd_legal_document(args.property_ref)
    elif args.command == "verify-hash":
        return cmd_verify_hash(args.transaction_id, args.digest)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
