"""Pydantic schemas for certificate presentation models and results."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, computed_field


class CertificateKind(str, Enum):
    """Which certificate document a model renders as."""

    TRANSACTION = "transaction"
    PORTFOLIO = "portfolio"


class StampSet(BaseModel):
    """Stamp image references resolved for one render."""

    model_config = ConfigDict(frozen=True)

    secp_stamp_url: str | None = None
    sbp_stamp_url: str | None = None


class TransactionCertificateData(BaseModel):
    """Presentation model for a transaction certificate.

    Monetary and token fields are decimal strings; they are never produced
    from floats.
    """

    model_config = ConfigDict(frozen=True)

    certificate_id: str
    transaction_display_code: str
    transaction_date: str
    transaction_status: str
    transaction_type: str
    investor_name: str
    investor_code: str
    property_name: str
    property_display_code: str
    tokens_purchased: str
    token_price: str
    total_amount: str
    blockchain_hash: str | None = None
    blockchain_network: str | None = None
    secp_stamp_url: str | None = None
    sbp_stamp_url: str | None = None
    generated_at: str
    document_hash: str

    @property
    def kind(self) -> CertificateKind:
        return CertificateKind.TRANSACTION

    @property
    def short_hash(self) -> str:
        """First 16 characters of the digest, as printed in the footer."""
        return f"{self.document_hash[:16]}..."


class PortfolioTransactionRow(BaseModel):
    """One line of the portfolio transaction history table."""

    model_config = ConfigDict(frozen=True)

    date: str
    display_code: str
    tokens: str
    amount: str
    status: str


class PortfolioSummaryData(BaseModel):
    """Presentation model for a portfolio summary certificate."""

    model_config = ConfigDict(frozen=True)

    certificate_id: str
    investor_name: str
    investor_code: str
    property_name: str
    property_display_code: str
    property_location: str
    expected_roi: str
    total_tokens: str
    total_invested: str
    average_price: str
    ownership_percentage: str
    transactions: tuple[PortfolioTransactionRow, ...] = ()
    secp_stamp_url: str | None = None
    sbp_stamp_url: str | None = None
    generated_at: str

    @property
    def kind(self) -> CertificateKind:
        return CertificateKind.PORTFOLIO


CertificateData = TransactionCertificateData | PortfolioSummaryData


class GenerationState(str, Enum):
    """Lifecycle of one generate call, logged at every transition."""

    NOT_STARTED = "not_started"
    LOADING = "loading"
    EXISTING = "existing"
    RENDERING = "rendering"
    UPLOADING = "uploading"
    PERSISTING = "persisting"
    LINK_ISSUED = "link_issued"
    FAILED = "failed"


class RenderedDocument(BaseModel):
    """A complete PDF produced by one rendering backend."""

    model_config = ConfigDict(frozen=True)

    content: bytes
    backend: str

    @computed_field
    @property
    def size(self) -> int:
        return len(self.content)


class CertificateLinks(BaseModel):
    """Result of a generate call: persisted public URL plus a signed link."""

    model_config = ConfigDict(frozen=True)

    certificate_path: str
    signed_url: str
