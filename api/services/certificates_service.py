"""Certificate orchestration: load, render, upload, persist, sign.

This module handles the certificate workflow:
- Transaction certificates (generated at most once, mirrored onto the investment)
- Portfolio summaries (re-rendered on every request, not persisted)
- Signed links for stored certificates and property legal documents

Generation walks the states in ``schemas.GenerationState`` and logs every
transition as ``certificate.state``:

    not_started -> loading -> existing -> link_issued
    not_started -> loading -> rendering -> uploading -> persisting -> link_issued

Any state can move to ``failed``.

Repositories flush but never commit; the caller's session scope commits the
certificate path write-back.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache

import httpx
from circuitbreaker import CircuitBreakerError
from sqlalchemy.ext.asyncio import AsyncSession

from core.cache import get_generated_path, set_generated_path
from core.config import Settings, get_settings
from core.logger import certificate_context
from core.storage import ObjectStore, StorageError, SupabaseStorage
from models import Investment, Transaction, utcnow
from rendering.strategy import RenderingStrategy, build_rendering_strategy
from repositories.investment_repository import InvestmentRepository
from repositories.property_repository import PropertyRepository
from repositories.transaction_repository import TransactionRepository
from repositories.user_repository import UserRepository
from schemas import (
    CertificateKind,
    CertificateLinks,
    GenerationState,
    RenderedDocument,
    StampSet,
)
from services.certificate_data_service import (
    build_portfolio_summary_data,
    build_transaction_certificate_data,
)
from services.exceptions import (
    LinkIssueError,
    NotFoundError,
    PersistenceWarning,
    RenderFailure,
    UploadError,
)

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

_STORAGE_ERRORS = (StorageError, CircuitBreakerError, httpx.HTTPError)

# One lock per (kind, target id) so concurrent requests for the same
# certificate in this worker render it once. An entry lives only while some
# coroutine holds or waits on it.
_generation_locks: dict[tuple[str, str], asyncio.Lock] = {}
_lock_users: dict[tuple[str, str], int] = {}


@asynccontextmanager
async def _generation_lock(key: tuple[str, str]) -> AsyncIterator[None]:
    # Registry updates never await, so they cannot interleave
    lock = _generation_locks.setdefault(key, asyncio.Lock())
    _lock_users[key] = _lock_users.get(key, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _lock_users[key] -= 1
        if not _lock_users[key]:
            del _lock_users[key]
            del _generation_locks[key]


def transaction_object_path(transaction: Transaction) -> str:
    return f"transactions/{transaction.user_id}/{transaction.id}.pdf"


def portfolio_object_path(user_id: str, property_id: str) -> str:
    return f"portfolio/{user_id}/{property_id}.pdf"


class _GenerationRun:
    """Tracks and logs the state of one generate call."""

    def __init__(self, kind: CertificateKind, target: str) -> None:
        self.kind = kind
        self.target = target
        self.state = GenerationState.NOT_STARTED

    def advance(self, state: GenerationState) -> None:
        logger.info(
            "certificate.state",
            extra={
                "kind": self.kind.value,
                "target": self.target,
                "from_state": self.state.value,
                "state": state.value,
            },
        )
        self.state = state

    def fail(self, error: Exception) -> None:
        failed_in = self.state
        self.advance(GenerationState.FAILED)
        extra = {
            "kind": self.kind.value,
            "target": self.target,
            "failed_in": failed_in.value,
            "error_type": type(error).__name__,
            "error": str(error),
        }
        if isinstance(
            error, NotFoundError | RenderFailure | UploadError | LinkIssueError
        ):
            logger.warning("certificate.generation.failed", extra=extra)
        else:
            logger.exception("certificate.generation.failed", extra=extra)


class CertificateService:
    """Coordinates repositories, rendering, and object storage."""

    def __init__(
        self,
        storage: ObjectStore,
        strategy: RenderingStrategy,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.strategy = strategy
        self.settings = settings or get_settings()
        self.clock = clock

    def stamp_set(self) -> StampSet:
        return StampSet(
            secp_stamp_url=self.storage.asset_url(self.settings.secp_stamp_asset),
            sbp_stamp_url=self.storage.asset_url(self.settings.sbp_stamp_asset),
        )

    async def generate_transaction_certificate(
        self,
        db: AsyncSession,
        transaction_id: str,
        investment_id: str | None = None,
    ) -> CertificateLinks:
        """Generate (once) and link the certificate for a transaction.

        A transaction that already has a certificate is not re-rendered; a
        fresh signed link to the stored document is returned instead.

        Raises:
            NotFoundError: If the transaction, its user, or its property is missing
            RenderFailure: If every rendering backend failed
            UploadError: If the object store rejected the document
            LinkIssueError: If the signed link could not be issued
        """
        run = _GenerationRun(CertificateKind.TRANSACTION, transaction_id)
        with certificate_context(run.kind.value, run.target):
            try:
                return await self._generate_transaction(
                    db, run, transaction_id, investment_id
                )
            except Exception as e:
                run.fail(e)
                raise

    async def _generate_transaction(
        self,
        db: AsyncSession,
        run: _GenerationRun,
        transaction_id: str,
        investment_id: str | None,
    ) -> CertificateLinks:
        run.advance(GenerationState.LOADING)
        transactions = TransactionRepository(db)
        transaction = await transactions.get_by_id(transaction_id, with_relations=True)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)

        if transaction.certificate_path:
            return await self._link_existing(run, transaction.certificate_path)

        key = (CertificateKind.TRANSACTION.value, transaction.id)
        async with _generation_lock(key):
            # Another request may have finished while we waited
            await db.refresh(transaction, attribute_names=["certificate_path"])
            if transaction.certificate_path:
                return await self._link_existing(run, transaction.certificate_path)

            investments = InvestmentRepository(db)
            shown, mirror = await self._resolve_investments(
                investments, transaction, investment_id
            )

            memoized = get_generated_path(key)
            if memoized:
                # The session that generated it may not have committed
                await self._persist(
                    transactions, investments, transaction, mirror, memoized
                )
                return await self._link_existing(run, memoized)

            data = build_transaction_certificate_data(
                transaction, shown, stamps=self.stamp_set(), now=self.clock()
            )

            run.advance(GenerationState.RENDERING)
            document = await self.strategy.render(CertificateKind.TRANSACTION, data)

            run.advance(GenerationState.UPLOADING)
            object_path = transaction_object_path(transaction)
            await self._upload(object_path, document)
            public_url = self.storage.public_url(object_path)

            run.advance(GenerationState.PERSISTING)
            await self._persist(
                transactions, investments, transaction, mirror, public_url
            )
            signed_url = await self._sign(object_path)
            set_generated_path(key, public_url)

        run.advance(GenerationState.LINK_ISSUED)

        logger.info(
            "certificate.generated",
            extra={
                "kind": CertificateKind.TRANSACTION.value,
                "transaction_id": transaction.id,
                "certificate_id": data.certificate_id,
                "backend": document.backend,
                "size_bytes": document.size,
                "investment_mirrored": mirror is not None,
            },
        )
        return CertificateLinks(certificate_path=public_url, signed_url=signed_url)

    async def _resolve_investments(
        self,
        investments: InvestmentRepository,
        transaction: Transaction,
        investment_id: str | None,
    ) -> tuple[Investment | None, Investment | None]:
        """Return the investment shown on the certificate and the one mirrored.

        The certificate shows the newest investment for the transaction's user
        and property. The path is mirrored onto ``investment_id`` when it
        exists, otherwise onto that same newest investment.
        """
        latest = None
        if transaction.user_id and transaction.property_id:
            latest = await investments.get_latest_for(
                transaction.user_id, transaction.property_id
            )

        mirror = None
        if investment_id:
            mirror = await investments.get_by_id(investment_id)
            if mirror is None:
                logger.warning(
                    "certificate.investment.not_found",
                    extra={
                        "transaction_id": transaction.id,
                        "investment_id": investment_id,
                        "fallback_investment_id": latest.id if latest else None,
                    },
                )
        mirror = mirror or latest

        if mirror is None:
            logger.warning(
                "certificate.investment_mirror.skipped",
                extra={
                    "transaction_id": transaction.id,
                    "investment_id": investment_id,
                    "warning_category": PersistenceWarning.__name__,
                },
            )
        return latest or mirror, mirror

    async def _persist(
        self,
        transactions: TransactionRepository,
        investments: InvestmentRepository,
        transaction: Transaction,
        investment: Investment | None,
        public_url: str,
    ) -> None:
        await transactions.set_certificate_path(transaction, public_url)
        if investment is not None:
            await investments.set_certificate_path(investment, public_url)

    async def _link_existing(
        self, run: _GenerationRun, stored: str
    ) -> CertificateLinks:
        run.advance(GenerationState.EXISTING)
        signed_url = await self._sign(self.storage.object_path(stored))
        run.advance(GenerationState.LINK_ISSUED)
        logger.info(
            "certificate.reused",
            extra={"kind": run.kind.value, "target": run.target},
        )
        return CertificateLinks(certificate_path=stored, signed_url=signed_url)

    async def _sign(self, object_path: str) -> str:
        try:
            return await self.storage.signed_url(object_path)
        except _STORAGE_ERRORS as e:
            raise LinkIssueError(object_path, str(e) or type(e).__name__) from e

    async def _upload(self, object_path: str, document: RenderedDocument) -> str:
        try:
            return await self.storage.upload(
                object_path, document.content, content_type=PDF_CONTENT_TYPE
            )
        except _STORAGE_ERRORS as e:
            raise UploadError(object_path, str(e) or type(e).__name__) from e

    async def generate_portfolio_summary(
        self,
        db: AsyncSession,
        user_id: str,
        property_ref: str,
    ) -> CertificateLinks:
        """Render a user's position in one property and return its links.

        ``property_ref`` may be the property's UUID or its display code.
        Summaries are rebuilt on every call and overwrite the stored object.

        Raises:
            NotFoundError: If the user or property is missing, or the user holds
                no confirmed investments in the property
            RenderFailure: If every rendering backend failed
            UploadError: If the object store rejected the document
            LinkIssueError: If the signed link could not be issued
        """
        run = _GenerationRun(CertificateKind.PORTFOLIO, f"{user_id}/{property_ref}")
        with certificate_context(run.kind.value, run.target):
            try:
                return await self._generate_portfolio(db, run, user_id, property_ref)
            except Exception as e:
                run.fail(e)
                raise

    async def _generate_portfolio(
        self,
        db: AsyncSession,
        run: _GenerationRun,
        user_id: str,
        property_ref: str,
    ) -> CertificateLinks:
        run.advance(GenerationState.LOADING)
        user = await UserRepository(db).get_by_id(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        prop = await PropertyRepository(db).get_by_ref(property_ref)
        if prop is None:
            raise NotFoundError("property", property_ref)

        investments = await InvestmentRepository(db).list_confirmed(user.id, prop.id)
        transactions = await TransactionRepository(db).list_completed_investments(
            user.id, prop.id
        )
        data = build_portfolio_summary_data(
            user,
            prop,
            investments,
            transactions,
            stamps=self.stamp_set(),
            now=self.clock(),
        )

        run.advance(GenerationState.RENDERING)
        document = await self.strategy.render(CertificateKind.PORTFOLIO, data)

        run.advance(GenerationState.UPLOADING)
        object_path = portfolio_object_path(user.id, prop.id)
        await self._upload(object_path, document)
        public_url = self.storage.public_url(object_path)

        signed_url = await self._sign(object_path)
        run.advance(GenerationState.LINK_ISSUED)

        logger.info(
            "certificate.generated",
            extra={
                "kind": CertificateKind.PORTFOLIO.value,
                "user_id": user.id,
                "property_id": prop.id,
                "certificate_id": data.certificate_id,
                "backend": document.backend,
                "size_bytes": document.size,
                "investment_count": len(investments),
            },
        )
        return CertificateLinks(certificate_path=public_url, signed_url=signed_url)

    async def get_transaction_certificate(
        self, db: AsyncSession, transaction_ref: str
    ) -> str:
        """Signed link for a transaction's certificate, generating on demand.

        ``transaction_ref`` may be the transaction's UUID or its display code.
        """
        transaction = await TransactionRepository(db).get_by_ref(transaction_ref)
        if transaction is None:
            raise NotFoundError("transaction", transaction_ref)
        links = await self.generate_transaction_certificate(db, transaction.id)
        return links.signed_url

    async def get_property_legal_document(
        self, db: AsyncSession, property_ref: str
    ) -> str | None:
        """Link to a property's legal document, or None when there is none.

        A stored ``legal_doc_path`` is signed. Otherwise the conventional
        ``{property_id}.pdf`` object in the property-documents bucket is used
        if it exists.

        Raises:
            NotFoundError: If the property is missing
            LinkIssueError: If the object store could not be queried or signed
        """
        prop = await PropertyRepository(db).get_by_ref(property_ref)
        if prop is None:
            raise NotFoundError("property", property_ref)

        if prop.legal_doc_path:
            return await self._sign(self.storage.object_path(prop.legal_doc_path))

        try:
            url = await self.storage.property_document_url(prop.id)
        except _STORAGE_ERRORS as e:
            raise LinkIssueError(f"{prop.id}.pdf", str(e) or type(e).__name__) from e
        if url is None:
            logger.info(
                "property.legal_document.missing", extra={"property_id": prop.id}
            )
        return url


@lru_cache(maxsize=1)
def get_certificate_service() -> CertificateService:
    """Process-wide service wired from settings."""
    settings = get_settings()
    return CertificateService(
        SupabaseStorage(settings),
        build_rendering_strategy(settings),
        settings=settings,
    )


async def generate_transaction_certificate(
    db: AsyncSession,
    transaction_id: str,
    investment_id: str | None = None,
) -> CertificateLinks:
    return await get_certificate_service().generate_transaction_certificate(
        db, transaction_id, investment_id
    )


async def generate_portfolio_summary(
    db: AsyncSession,
    user_id: str,
    property_ref: str,
) -> CertificateLinks:
    return await get_certificate_service().generate_portfolio_summary(
        db, user_id, property_ref
    )


async def get_transaction_certificate(db: AsyncSession, transaction_ref: str) -> str:
    return await get_certificate_service().get_transaction_certificate(
        db, transaction_ref
    )


async def get_property_legal_document(
    db: AsyncSession, property_ref: str
) -> str | None:
    return await get_certificate_service().get_property_legal_document(
        db, property_ref
    )
