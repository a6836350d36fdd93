from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from app.catalog.store import Dataset


class DatasetDetails(BaseModel):
    """
    Public view of a dataset listing, as returned by discovery and probe.
    Price is a decimal string to keep USDC amounts exact.
    """
    id: str = Field(..., description="Dataset identifier.")
    seller_id: str = Field(..., description="Seller who owns the listing.")
    name: str = Field(..., description="Dataset name.")
    description: Optional[str] = Field(None, description="Free-text description.")
    category: Optional[str] = Field(None, description="Marketplace category.")
    schema_: Optional[Dict[str, Any]] = Field(None, alias="schema", description="Declared JSON schema of the records.")
    price_per_record: Optional[str] = Field(None, description="Price per record in USDC (decimal string).")
    total_rows: Optional[int] = Field(None, description="Number of records the seller advertises.")
    quality_score: Optional[float] = Field(None, description="Seller-declared quality score in [0, 1].")
    content_summary: Optional[str] = Field(None, description="Short summary of the contents.")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    endpoint: Optional[str] = Field(None, description="Paid data endpoint.")
    probe_endpoint: Optional[str] = Field(None, description="Free metadata endpoint.")

    class Config:
        populate_by_name = True

    @classmethod
    def from_dataset(cls, dataset: Dataset, api_prefix: str = "") -> "DatasetDetails":
        data = dataset.to_dict()
        data.pop("is_active", None)
        data.pop("created_at", None)
        return cls(
            **data,
            endpoint=f"{api_prefix}/datasets/{dataset.id}/data",
            probe_endpoint=f"{api_prefix}/datasets/{dataset.id}/probe",
        )


class DatasetListResponse(BaseModel):
    datasets: List[DatasetDetails]
    total_count: int


class SampleResponse(BaseModel):
    dataset_id: str
    records: List[Dict[str, Any]]
    count: int


class DataMetadata(BaseModel):
    total_available: Optional[int] = None
    quality_score: Optional[float] = None


class PaymentReceipt(BaseModel):
    amount: str
    recipient: str
    verified: bool = Field(..., description="False when accepted while the facilitator was unreachable.")
    transaction_hash: Optional[str] = None


class DataResponse(BaseModel):
    """Records delivered after a verified x402 payment."""
    dataset_id: str
    dataset_name: str
    quantity: int
    records: List[Dict[str, Any]]
    schema_: Optional[Dict[str, Any]] = Field(None, alias="schema")
    metadata: DataMetadata
    payment: PaymentReceipt

    class Config:
        populate_by_name = True


class RecordsSoldResponse(BaseModel):
    dataset_id: str
    records_sold: int


class RecentSale(BaseModel):
    agent_id: str
    dataset_id: Optional[str] = None
    dataset_name: Optional[str] = None
    quantity: Optional[int] = None
    amount: Optional[str] = None
    created_at: str


class SellerStatsResponse(BaseModel):
    total_sales: int
    total_revenue: str = Field(..., description="Sum of completed purchases in USDC (decimal string).")
    active_endpoints: int
    total_records_sold: int
    recent_sales: List[RecentSale]
