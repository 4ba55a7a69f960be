"""Rendering test configuration: presentation models and stamp images."""

import pytest

from rendering.stamps import StampImages
from schemas import PortfolioSummaryData, TransactionCertificateData
from tests.factories import build_portfolio_model, build_transaction_model
from tests.fakes import PNG_BYTES


@pytest.fixture
def transaction_model() -> TransactionCertificateData:
    return build_transaction_model()


@pytest.fixture
def portfolio_model() -> PortfolioSummaryData:
    return build_portfolio_model()


@pytest.fixture
def stamp_images() -> StampImages:
    return StampImages(secp=PNG_BYTES, sbp=PNG_BYTES)
