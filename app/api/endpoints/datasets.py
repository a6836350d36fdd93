# app/api/endpoints/datasets.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from typing import Any, Optional
import logging

from app.agents.actions import ActionLog
from app.api.deps import get_action_log, get_catalog
from app.api.models.agent import ActionListResponse, ActionResponse
from app.api.models.dataset import (
    DataMetadata,
    DataResponse,
    DatasetDetails,
    DatasetListResponse,
    PaymentReceipt,
    RecordsSoldResponse,
    SampleResponse,
    SellerStatsResponse,
)
from app.catalog.store import CatalogStore, generate_mock_records
from app.core.auth import get_current_owner
from app.core.config import settings
from app.core.errors import NotFoundError

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_SAMPLE_SIZE = 20


def _get_dataset_or_404(catalog: CatalogStore, dataset_id: str):
    try:
        return catalog.get_dataset(dataset_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dataset not found")


@router.get(
    "",
    response_model=DatasetListResponse,
    summary="Discover Active Datasets"
)
async def list_datasets(
    category: Optional[str] = Query(None, description="Only datasets in this category."),
    search: Optional[str] = Query(None, description="Case-insensitive match on name, description or summary."),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    catalog: CatalogStore = Depends(get_catalog),
) -> Any:
    """
    Lists active dataset listings. Public; this is what agents use for discovery.
    """
    datasets = catalog.get_active_datasets(category=category, search=search, limit=limit, offset=offset)
    details = [DatasetDetails.from_dataset(d, settings.API_V1_STR) for d in datasets]
    return DatasetListResponse(datasets=details, total_count=len(details))


@router.get(
    "/stats",
    response_model=SellerStatsResponse,
    summary="Seller Sales Statistics"
)
async def seller_stats(
    owner_id: str = Depends(get_current_owner),
    catalog: CatalogStore = Depends(get_catalog),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    """
    Sales, revenue and records sold across the authenticated seller's datasets,
    computed from completed agent purchases.
    """
    datasets = catalog.get_seller_datasets(owner_id)
    stats = action_log.seller_stats([d.id for d in datasets])
    return SellerStatsResponse(
        **stats,
        active_endpoints=sum(1 for d in datasets if d.is_active),
    )


@router.get(
    "/{dataset_id}/probe",
    response_model=DatasetDetails,
    summary="Probe Dataset Metadata"
)
async def probe_dataset(
    dataset_id: str = Path(..., description="Dataset to describe."),
    catalog: CatalogStore = Depends(get_catalog),
) -> Any:
    """
    Returns price, schema and quality of a dataset without requiring payment.

    Raises:
        HTTPException: 404 if the dataset does not exist or is inactive
    """
    dataset = _get_dataset_or_404(catalog, dataset_id)
    return DatasetDetails.from_dataset(dataset, settings.API_V1_STR)


@router.get(
    "/{dataset_id}/sample",
    response_model=SampleResponse,
    summary="Get Sample Records"
)
async def get_sample(
    dataset_id: str = Path(..., description="Dataset to sample."),
    size: int = Query(10, ge=1, le=MAX_SAMPLE_SIZE, description="Number of records to return."),
    catalog: CatalogStore = Depends(get_catalog),
) -> Any:
    """
    Returns up to `size` stored records so buyers can judge quality before paying.
    An empty list means the seller has not stored any records yet.
    """
    _get_dataset_or_404(catalog, dataset_id)
    records = catalog.get_sample_records(dataset_id, size)
    logger.info(f"Sample of {len(records)} records served for dataset {dataset_id}")
    return SampleResponse(dataset_id=dataset_id, records=records, count=len(records))


@router.get(
    "/{dataset_id}/data",
    response_model=DataResponse,
    summary="Get Paid Records (x402)"
)
async def get_data(
    request: Request,
    dataset_id: str = Path(..., description="Dataset to buy records from."),
    quantity: int = Query(1, ge=1, description="Number of records paid for."),
    catalog: CatalogStore = Depends(get_catalog),
) -> Any:
    """
    Serves paid records. The x402 middleware has already verified the
    payment by the time this runs; without it the request is refused.
    """
    payment = getattr(request.state, "payment", None)
    dataset = getattr(request.state, "dataset", None)
    if payment is None or dataset is None:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Payment required")

    records = catalog.get_records(dataset_id, quantity)
    if not records:
        records = generate_mock_records(dataset, quantity)

    return DataResponse(
        dataset_id=dataset.id,
        dataset_name=dataset.name,
        quantity=quantity,
        records=records,
        schema=dataset.schema,
        metadata=DataMetadata(total_available=dataset.total_rows, quality_score=dataset.quality_score),
        payment=PaymentReceipt(
            amount=payment.amount,
            recipient=payment.recipient,
            verified=not getattr(request.state, "payment_degraded", False),
            transaction_hash=getattr(request.state, "transaction_hash", None),
        ),
    )


@router.get(
    "/{dataset_id}/interactions",
    response_model=ActionListResponse,
    summary="Agent Interactions With a Dataset"
)
async def dataset_interactions(
    dataset_id: str = Path(..., description="Dataset owned by the caller."),
    limit: int = Query(100, ge=1, le=1000),
    owner_id: str = Depends(get_current_owner),
    catalog: CatalogStore = Depends(get_catalog),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    """
    Every agent action that referenced the dataset, most recent first.
    Only the dataset's seller may see them.
    """
    dataset = _get_dataset_or_404(catalog, dataset_id)
    if dataset.seller_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dataset not found")

    actions = [ActionResponse.from_action(a) for a in action_log.dataset_interactions(dataset_id, limit)]
    return ActionListResponse(actions=actions, total_count=len(actions))


@router.get(
    "/{dataset_id}/records-sold",
    response_model=RecordsSoldResponse,
    summary="Records Sold For a Dataset"
)
async def records_sold(
    dataset_id: str = Path(..., description="Dataset to count sales for."),
    catalog: CatalogStore = Depends(get_catalog),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    _get_dataset_or_404(catalog, dataset_id)
    return RecordsSoldResponse(dataset_id=dataset_id, records_sold=action_log.records_sold(dataset_id))
