"""Tests for certificate orchestration.

Tests cover:
- Transaction certificates are generated at most once (reuse path)
- Persisted URLs are normalised back to object paths for signing
- Investment mirror resolution, unknown-id fallback, and the skipped-mirror warning
- Upload and signing failures wrapped as UploadError and LinkIssueError
- Concurrent requests for one transaction render once; lock entries are dropped
- Portfolio summaries (not persisted) and property legal documents
- State transitions logged as certificate.state
"""

import asyncio
import logging
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import time_machine

from core.cache import get_generated_path, set_generated_path
from core.storage import StorageError
from rendering.strategy import RenderingStrategy
from schemas import CertificateKind, GenerationState
from services.certificate_data_service import format_decimal
from services.certificates_service import (
    CertificateService,
    _generation_locks,
    _lock_users,
    portfolio_object_path,
    transaction_object_path,
)
from services.exceptions import (
    AllBackendsFailedError,
    LinkIssueError,
    NotFoundError,
    RenderFailure,
    UploadError,
)
from tests.factories import (
    InvestmentFactory,
    PropertyFactory,
    TransactionFactory,
    UserFactory,
)
from tests.fakes import FakeRenderer, FakeStampFetcher, FakeStorage

pytestmark = pytest.mark.unit

FIXED_NOW = datetime(2025, 6, 1, 9, 30, tzinfo=UTC)


@pytest.fixture
def repos():
    """Patch every repository class used by the service with AsyncMock methods."""
    with (
        patch("services.certificates_service.TransactionRepository") as txn_cls,
        patch("services.certificates_service.InvestmentRepository") as inv_cls,
        patch("services.certificates_service.PropertyRepository") as prop_cls,
        patch("services.certificates_service.UserRepository") as user_cls,
    ):
        transactions = MagicMock()
        transactions.get_by_id = AsyncMock(return_value=None)
        transactions.get_by_ref = AsyncMock(return_value=None)
        transactions.list_completed_investments = AsyncMock(return_value=[])
        transactions.set_certificate_path = AsyncMock()
        txn_cls.return_value = transactions

        investments = MagicMock()
        investments.get_by_id = AsyncMock(return_value=None)
        investments.get_latest_for = AsyncMock(return_value=None)
        investments.list_confirmed = AsyncMock(return_value=[])
        investments.set_certificate_path = AsyncMock()
        inv_cls.return_value = investments

        properties = MagicMock()
        properties.get_by_ref = AsyncMock(return_value=None)
        prop_cls.return_value = properties

        users = MagicMock()
        users.get_by_id = AsyncMock(return_value=None)
        user_cls.return_value = users

        yield MagicMock(
            transactions=transactions,
            investments=investments,
            properties=properties,
            users=users,
        )


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer("vector")


@pytest.fixture
def service(fake_storage, renderer, test_settings) -> CertificateService:
    strategy = RenderingStrategy([renderer], FakeStampFetcher())
    return CertificateService(
        fake_storage, strategy, settings=test_settings, clock=lambda: FIXED_NOW
    )


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()


def _states(caplog) -> list[str]:
    return [r.state for r in caplog.records if r.getMessage() == "certificate.state"]


# =============================================================================
# Transaction certificates
# =============================================================================


class TestGenerateTransactionCertificate:
    async def test_generates_uploads_and_persists(
        self, service, repos, db, fake_storage, renderer
    ):
        txn = TransactionFactory.build()
        inv = InvestmentFactory.build(user_id=txn.user_id, property_id=txn.property_id)
        repos.transactions.get_by_id.return_value = txn
        repos.investments.get_latest_for.return_value = inv

        links = await service.generate_transaction_certificate(db, txn.id)

        object_path = f"transactions/{txn.user_id}/{txn.id}.pdf"
        assert fake_storage.uploads == [object_path]
        assert fake_storage.objects[object_path] == b"%PDF-1.4 fake"
        assert links.certificate_path == fake_storage.public_url(object_path)
        assert links.signed_url.endswith(f"{object_path}?token=t")
        repos.transactions.set_certificate_path.assert_awaited_once_with(
            txn, links.certificate_path
        )
        repos.investments.set_certificate_path.assert_awaited_once_with(
            inv, links.certificate_path
        )
        assert renderer.calls == [CertificateKind.TRANSACTION]

    async def test_existing_certificate_is_not_rerendered(
        self, service, repos, db, fake_storage, renderer
    ):
        stored = (
            "https://storage.test/storage/v1/object/public/certificates/"
            "transactions/u-1/t-1.pdf"
        )
        txn = TransactionFactory.build(certificate_path=stored)
        repos.transactions.get_by_id.return_value = txn

        links = await service.generate_transaction_certificate(db, txn.id)

        assert links.certificate_path == stored
        assert fake_storage.signed == ["transactions/u-1/t-1.pdf"]
        assert fake_storage.uploads == []
        assert renderer.calls == []
        repos.transactions.set_certificate_path.assert_not_awaited()

    async def test_bare_object_path_is_signed_as_is(
        self, service, repos, db, fake_storage
    ):
        txn = TransactionFactory.build(certificate_path="/transactions/u-1/t-1.pdf")
        repos.transactions.get_by_id.return_value = txn

        await service.generate_transaction_certificate(db, txn.id)

        assert fake_storage.signed == ["transactions/u-1/t-1.pdf"]

    async def test_explicit_investment_receives_mirror(self, service, repos, db):
        txn = TransactionFactory.build()
        inv = InvestmentFactory.build()
        repos.transactions.get_by_id.return_value = txn
        repos.investments.get_by_id.return_value = inv
        repos.investments.get_latest_for.return_value = InvestmentFactory.build()

        links = await service.generate_transaction_certificate(db, txn.id, inv.id)

        repos.investments.get_by_id.assert_awaited_once_with(inv.id)
        repos.investments.set_certificate_path.assert_awaited_once_with(
            inv, links.certificate_path
        )

    async def test_unknown_investment_id_falls_back_to_latest(
        self, service, repos, db, caplog
    ):
        txn = TransactionFactory.build()
        latest = InvestmentFactory.build(
            user_id=txn.user_id, property_id=txn.property_id
        )
        repos.transactions.get_by_id.return_value = txn
        repos.investments.get_latest_for.return_value = latest

        with caplog.at_level(logging.WARNING):
            links = await service.generate_transaction_certificate(
                db, txn.id, "no-such-investment"
            )

        repos.investments.get_latest_for.assert_awaited_once_with(
            txn.user_id, txn.property_id
        )
        repos.investments.set_certificate_path.assert_awaited_once_with(
            latest, links.certificate_path
        )
        (not_found,) = [
            r
            for r in caplog.records
            if r.getMessage() == "certificate.investment.not_found"
        ]
        assert not_found.investment_id == "no-such-investment"
        assert not_found.fallback_investment_id == latest.id
        assert "certificate.investment_mirror.skipped" not in caplog.messages

    async def test_certificate_shows_latest_investment(
        self, fake_storage, repos, db, test_settings
    ):
        class RecordingRenderer(FakeRenderer):
            def __init__(self) -> None:
                super().__init__("vector")
                self.models = []

            async def render(self, kind, model, stamps):
                self.models.append(model)
                return await super().render(kind, model, stamps)

        recording = RecordingRenderer()
        service = CertificateService(
            fake_storage,
            RenderingStrategy([recording], FakeStampFetcher()),
            settings=test_settings,
        )
        txn = TransactionFactory.build()
        explicit = InvestmentFactory.build(tokens_purchased=Decimal("40"))
        latest = InvestmentFactory.build(tokens_purchased=Decimal("250"))
        repos.transactions.get_by_id.return_value = txn
        repos.investments.get_by_id.return_value = explicit
        repos.investments.get_latest_for.return_value = latest

        await service.generate_transaction_certificate(db, txn.id, explicit.id)

        (model,) = recording.models
        assert model.tokens_purchased == format_decimal(Decimal("250"))
        repos.investments.set_certificate_path.assert_awaited_once()
        assert repos.investments.set_certificate_path.await_args.args[0] is explicit

    async def test_missing_investment_skips_mirror_with_warning(
        self, service, repos, db, caplog
    ):
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        with caplog.at_level(logging.WARNING):
            links = await service.generate_transaction_certificate(db, txn.id)

        assert links.certificate_path
        repos.transactions.set_certificate_path.assert_awaited_once()
        repos.investments.set_certificate_path.assert_not_awaited()
        skipped = [
            r
            for r in caplog.records
            if r.getMessage() == "certificate.investment_mirror.skipped"
        ]
        assert len(skipped) == 1
        assert skipped[0].warning_category == "PersistenceWarning"

    async def test_missing_transaction_raises(self, service, repos, db):
        with pytest.raises(NotFoundError) as exc_info:
            await service.generate_transaction_certificate(db, "missing")
        assert exc_info.value.entity == "transaction"

    async def test_upload_failure_is_wrapped(
        self, failing_storage, renderer, repos, db, test_settings
    ):
        service = CertificateService(
            failing_storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
            clock=lambda: FIXED_NOW,
        )
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        with pytest.raises(UploadError) as exc_info:
            await service.generate_transaction_certificate(db, txn.id)

        assert isinstance(exc_info.value.__cause__, StorageError)
        assert exc_info.value.path == transaction_object_path(txn)
        repos.transactions.set_certificate_path.assert_not_awaited()

    async def test_transport_error_is_wrapped(self, renderer, repos, db, test_settings):
        storage = FakeStorage(fail_upload=httpx.ConnectError("connection refused"))
        service = CertificateService(
            storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )
        repos.transactions.get_by_id.return_value = TransactionFactory.build()

        with pytest.raises(UploadError, match="connection refused"):
            await service.generate_transaction_certificate(db, "t")

    async def test_render_failure_propagates_without_upload(
        self, repos, db, fake_storage, test_settings
    ):
        broken = FakeRenderer("vector", error=RenderFailure("vector", "boom"))
        service = CertificateService(
            fake_storage,
            RenderingStrategy([broken], FakeStampFetcher()),
            settings=test_settings,
        )
        repos.transactions.get_by_id.return_value = TransactionFactory.build()

        with pytest.raises(AllBackendsFailedError):
            await service.generate_transaction_certificate(db, "t")
        assert fake_storage.uploads == []

    async def test_records_generated_path(self, service, repos, db):
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        links = await service.generate_transaction_certificate(db, txn.id)

        key = (CertificateKind.TRANSACTION.value, txn.id)
        assert get_generated_path(key) == links.certificate_path

    async def test_concurrent_requests_render_once(
        self, repos, db, fake_storage, test_settings
    ):
        class SlowRenderer(FakeRenderer):
            async def render(self, kind, model, stamps):
                await asyncio.sleep(0.01)
                return await super().render(kind, model, stamps)

        slow = SlowRenderer("vector")
        service = CertificateService(
            fake_storage,
            RenderingStrategy([slow], FakeStampFetcher()),
            settings=test_settings,
        )
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        first, second = await asyncio.gather(
            service.generate_transaction_certificate(db, txn.id),
            service.generate_transaction_certificate(db, txn.id),
        )

        assert len(slow.calls) == 1
        assert len(fake_storage.uploads) == 1
        assert first.certificate_path == second.certificate_path
        # The waiter persists the winner's URL in its own session
        assert repos.transactions.set_certificate_path.await_count == 2
        assert _generation_locks == {}
        assert _lock_users == {}

    async def test_lock_released_after_failure(
        self, failing_storage, renderer, repos, db, test_settings
    ):
        service = CertificateService(
            failing_storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )
        repos.transactions.get_by_id.return_value = TransactionFactory.build()

        with pytest.raises(UploadError):
            await service.generate_transaction_certificate(db, "t")

        assert _generation_locks == {}
        assert _lock_users == {}

    async def test_generated_path_is_persisted_on_reuse(
        self, service, repos, db, fake_storage, renderer
    ):
        txn = TransactionFactory.build()
        inv = InvestmentFactory.build(user_id=txn.user_id, property_id=txn.property_id)
        repos.transactions.get_by_id.return_value = txn
        repos.investments.get_latest_for.return_value = inv
        public_url = fake_storage.public_url(transaction_object_path(txn))
        set_generated_path((CertificateKind.TRANSACTION.value, txn.id), public_url)

        links = await service.generate_transaction_certificate(db, txn.id)

        assert links.certificate_path == public_url
        assert renderer.calls == []
        assert fake_storage.uploads == []
        assert fake_storage.signed == [transaction_object_path(txn)]
        repos.transactions.set_certificate_path.assert_awaited_once_with(
            txn, public_url
        )
        repos.investments.set_certificate_path.assert_awaited_once_with(
            inv, public_url
        )

    async def test_certificate_id_uses_clock(
        self, fake_storage, renderer, repos, db, test_settings, caplog
    ):
        service = CertificateService(
            fake_storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        with time_machine.travel(FIXED_NOW, tick=False), caplog.at_level(logging.INFO):
            await service.generate_transaction_certificate(db, txn.id)

        (generated,) = [
            r for r in caplog.records if r.getMessage() == "certificate.generated"
        ]
        millis = int(FIXED_NOW.timestamp() * 1000)
        assert generated.certificate_id == f"CERT-{txn.display_code}-{millis}"
        assert generated.backend == "vector"


class TestSigningFailures:
    @pytest.fixture
    def flaky_storage(self) -> FakeStorage:
        return FakeStorage(fail_sign=StorageError("HTTP 503", status_code=503))

    @pytest.fixture
    def flaky_service(self, flaky_storage, renderer, test_settings):
        return CertificateService(
            flaky_storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )

    async def test_sign_failure_is_wrapped(
        self, flaky_service, repos, db, flaky_storage
    ):
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        with pytest.raises(LinkIssueError) as exc_info:
            await flaky_service.generate_transaction_certificate(db, txn.id)

        assert isinstance(exc_info.value.__cause__, StorageError)
        assert exc_info.value.path == transaction_object_path(txn)
        assert flaky_storage.uploads == [transaction_object_path(txn)]
        assert get_generated_path((CertificateKind.TRANSACTION.value, txn.id)) is None

    async def test_retry_after_sign_failure_regenerates_and_persists(
        self, flaky_service, repos, db, flaky_storage, renderer
    ):
        # The failed request's session rolls back, so the row stays empty
        txn = TransactionFactory.build()
        repos.transactions.get_by_id.return_value = txn

        with pytest.raises(LinkIssueError):
            await flaky_service.generate_transaction_certificate(db, txn.id)
        repos.transactions.set_certificate_path.reset_mock()

        links = await flaky_service.generate_transaction_certificate(db, txn.id)

        assert len(renderer.calls) == 2
        assert links.signed_url.endswith(f"{transaction_object_path(txn)}?token=t")
        repos.transactions.set_certificate_path.assert_awaited_once_with(
            txn, links.certificate_path
        )
        key = (CertificateKind.TRANSACTION.value, txn.id)
        assert get_generated_path(key) == links.certificate_path

    async def test_existing_certificate_sign_failure_is_wrapped(
        self, flaky_service, repos, db, caplog
    ):
        repos.transactions.get_by_id.return_value = TransactionFactory.build(
            certificate_path="transactions/u/t.pdf"
        )

        with caplog.at_level(logging.INFO), pytest.raises(LinkIssueError):
            await flaky_service.generate_transaction_certificate(db, "t")

        (failed,) = [
            r
            for r in caplog.records
            if r.getMessage() == "certificate.generation.failed"
        ]
        assert failed.levelno == logging.WARNING
        assert failed.failed_in == GenerationState.EXISTING.value

    async def test_portfolio_sign_failure_is_wrapped(self, flaky_service, repos, db):
        user = UserFactory.build()
        prop = PropertyFactory.build()
        repos.users.get_by_id.return_value = user
        repos.properties.get_by_ref.return_value = prop
        repos.investments.list_confirmed.return_value = [
            InvestmentFactory.build(user_id=user.id, property_id=prop.id)
        ]

        with pytest.raises(LinkIssueError) as exc_info:
            await flaky_service.generate_portfolio_summary(db, user.id, prop.id)

        assert exc_info.value.path == portfolio_object_path(user.id, prop.id)


class TestGenerationStates:
    async def test_new_certificate_walks_full_lifecycle(
        self, service, repos, db, caplog
    ):
        repos.transactions.get_by_id.return_value = TransactionFactory.build()

        with caplog.at_level(logging.INFO):
            await service.generate_transaction_certificate(db, "t")

        assert _states(caplog) == [
            GenerationState.LOADING.value,
            GenerationState.RENDERING.value,
            GenerationState.UPLOADING.value,
            GenerationState.PERSISTING.value,
            GenerationState.LINK_ISSUED.value,
        ]

    async def test_existing_certificate_short_circuits(
        self, service, repos, db, caplog
    ):
        repos.transactions.get_by_id.return_value = TransactionFactory.build(
            certificate_path="transactions/u/t.pdf"
        )

        with caplog.at_level(logging.INFO):
            await service.generate_transaction_certificate(db, "t")

        assert _states(caplog) == [
            GenerationState.LOADING.value,
            GenerationState.EXISTING.value,
            GenerationState.LINK_ISSUED.value,
        ]

    async def test_failure_logs_failed_state(
        self, failing_storage, renderer, repos, db, test_settings, caplog
    ):
        service = CertificateService(
            failing_storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )
        repos.transactions.get_by_id.return_value = TransactionFactory.build()

        with caplog.at_level(logging.INFO), pytest.raises(UploadError):
            await service.generate_transaction_certificate(db, "t")

        assert _states(caplog)[-1] == GenerationState.FAILED.value
        (failed,) = [
            r
            for r in caplog.records
            if r.getMessage() == "certificate.generation.failed"
        ]
        assert failed.levelno == logging.WARNING
        assert failed.failed_in == GenerationState.UPLOADING.value
        assert failed.error_type == "UploadError"


# =============================================================================
# Portfolio summaries
# =============================================================================


class TestGeneratePortfolioSummary:
    @pytest.fixture
    def position(self, repos):
        user = UserFactory.build()
        prop = PropertyFactory.build()
        inv = InvestmentFactory.build(user_id=user.id, property_id=prop.id)
        txn = TransactionFactory.build(user=user, property=prop)
        repos.users.get_by_id.return_value = user
        repos.properties.get_by_ref.return_value = prop
        repos.investments.list_confirmed.return_value = [inv]
        repos.transactions.list_completed_investments.return_value = [txn]
        return user, prop

    async def test_renders_and_uploads_without_persisting(
        self, service, repos, db, fake_storage, renderer, position
    ):
        user, prop = position

        links = await service.generate_portfolio_summary(db, user.id, prop.display_code)

        object_path = portfolio_object_path(user.id, prop.id)
        assert object_path == f"portfolio/{user.id}/{prop.id}.pdf"
        assert fake_storage.uploads == [object_path]
        assert links.certificate_path == fake_storage.public_url(object_path)
        assert renderer.calls == [CertificateKind.PORTFOLIO]
        repos.properties.get_by_ref.assert_awaited_once_with(prop.display_code)
        repos.transactions.set_certificate_path.assert_not_awaited()
        repos.investments.set_certificate_path.assert_not_awaited()

    async def test_regenerates_on_every_call(
        self, service, db, fake_storage, renderer, position
    ):
        user, prop = position

        await service.generate_portfolio_summary(db, user.id, prop.id)
        await service.generate_portfolio_summary(db, user.id, prop.id)

        assert len(renderer.calls) == 2
        assert len(fake_storage.uploads) == 2

    async def test_missing_user(self, service, repos, db):
        with pytest.raises(NotFoundError) as exc_info:
            await service.generate_portfolio_summary(db, "nobody", "PROP-0001")
        assert exc_info.value.entity == "user"

    async def test_missing_property(self, service, repos, db):
        repos.users.get_by_id.return_value = UserFactory.build()
        with pytest.raises(NotFoundError) as exc_info:
            await service.generate_portfolio_summary(db, "u", "PROP-9999")
        assert exc_info.value.entity == "property"

    async def test_no_investments(self, service, repos, db, fake_storage, position):
        user, prop = position
        repos.investments.list_confirmed.return_value = []

        with pytest.raises(NotFoundError, match="No investments found"):
            await service.generate_portfolio_summary(db, user.id, prop.id)
        assert fake_storage.uploads == []


# =============================================================================
# Links
# =============================================================================


class TestGetTransactionCertificate:
    async def test_resolves_reference_and_returns_signed_url(
        self, service, repos, db, fake_storage
    ):
        txn = TransactionFactory.build()
        repos.transactions.get_by_ref.return_value = txn
        repos.transactions.get_by_id.return_value = txn

        signed = await service.get_transaction_certificate(db, txn.display_code)

        repos.transactions.get_by_ref.assert_awaited_once_with(txn.display_code)
        assert signed.endswith(f"{transaction_object_path(txn)}?token=t")

    async def test_unknown_reference(self, service, repos, db):
        with pytest.raises(NotFoundError):
            await service.get_transaction_certificate(db, "TXN-404")


class TestGetPropertyLegalDocument:
    async def test_signs_stored_document(self, service, repos, db, fake_storage):
        repos.properties.get_by_ref.return_value = PropertyFactory.build(
            legal_doc_path="legal/p-1/deed.pdf"
        )

        url = await service.get_property_legal_document(db, "PROP-0001")

        assert fake_storage.signed == ["legal/p-1/deed.pdf"]
        assert url.endswith("legal/p-1/deed.pdf?token=t")

    async def test_falls_back_to_conventional_location(
        self, renderer, repos, db, test_settings
    ):
        prop = PropertyFactory.build(legal_doc_path=None)
        storage = FakeStorage(property_documents={prop.id})
        service = CertificateService(
            storage,
            RenderingStrategy([renderer], FakeStampFetcher()),
            settings=test_settings,
        )
        repos.properties.get_by_ref.return_value = prop

        url = await service.get_property_legal_document(db, prop.id)

        assert url == storage.property_document_location(prop.id)
        assert storage.signed == []

    async def test_returns_none_when_document_is_absent(
        self, service, repos, db, caplog
    ):
        prop = PropertyFactory.build(legal_doc_path=None)
        repos.properties.get_by_ref.return_value = prop

        with caplog.at_level(logging.INFO):
            url = await service.get_property_legal_document(db, prop.display_code)

        assert url is None
        assert "property.legal_document.missing" in caplog.messages

    async def test_storage_failure_is_wrapped(self, service, repos, db, fake_storage):
        prop = PropertyFactory.build(legal_doc_path=None)
        repos.properties.get_by_ref.return_value = prop

        with (
            patch.object(
                fake_storage,
                "property_document_url",
                AsyncMock(side_effect=StorageError("HTTP 503", status_code=503)),
            ),
            pytest.raises(LinkIssueError) as exc_info,
        ):
            await service.get_property_legal_document(db, prop.id)

        assert exc_info.value.path == f"{prop.id}.pdf"
        assert isinstance(exc_info.value.__cause__, StorageError)

    async def test_unknown_property(self, service, repos, db):
        with pytest.raises(NotFoundError):
            await service.get_property_legal_document(db, "PROP-404")
