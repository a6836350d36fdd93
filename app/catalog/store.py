# app/catalog/store.py
"""
Catalog store: dataset listings, seller payout addresses and seller records.

Listings are read-only from the marketplace's point of view; they are loaded
from a JSON seed file (CATALOG_SEED_PATH) or registered programmatically.

Seed file layout:
    {
      "sellers": {"<seller_id>": {"wallet_address": "0x..."}},
      "datasets": [{"id": "...", "seller_id": "...", "name": "...", ...}],
      "records": {"<dataset_id>": [{...}, ...]}
    }
"""
import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.agents.models import utcnow
from app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

# Datasets whose id starts with this prefix expose a seller's unlinked records
WAREHOUSE_PREFIX = "warehouse-"


@dataclass
class Dataset:
    id: str
    seller_id: str
    name: str
    price_per_record: Optional[Decimal] = None
    description: Optional[str] = None
    category: Optional[str] = None
    schema: Optional[Dict[str, Any]] = None
    total_rows: Optional[int] = None
    quality_score: Optional[float] = None
    content_summary: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_warehouse(self) -> bool:
        return self.id.startswith(WAREHOUSE_PREFIX)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dataset":
        price = data.get("price_per_record")
        quality = data.get("quality_score")
        created_at = data.get("created_at")
        return cls(
            id=str(data["id"]),
            seller_id=str(data.get("seller_id", "")),
            name=data.get("name", ""),
            price_per_record=Decimal(str(price)) if price not in (None, "") else None,
            description=data.get("description"),
            category=data.get("category"),
            schema=data.get("schema"),
            total_rows=data.get("total_rows"),
            quality_score=float(quality) if quality is not None else None,
            content_summary=data.get("content_summary"),
            metadata=dict(data.get("metadata") or {}),
            is_active=bool(data.get("is_active", True)),
            created_at=datetime.fromisoformat(created_at) if created_at else utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "schema": self.schema,
            "price_per_record": str(self.price_per_record) if self.price_per_record is not None else None,
            "total_rows": self.total_rows,
            "quality_score": self.quality_score,
            "content_summary": self.content_summary,
            "metadata": self.metadata,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }


def generate_mock_records(dataset: Dataset, quantity: int) -> List[Dict[str, Any]]:
    """
    Placeholder records shaped after the dataset's array schema.

    Used when a seller has listed a dataset but stored no rows yet. Without
    an array schema the records are empty objects.
    """
    schema = dataset.schema or {}
    items = schema.get("items") if isinstance(schema, dict) else None
    properties = items.get("properties") if isinstance(items, dict) else None
    if not isinstance(properties, dict):
        return [{} for _ in range(quantity)]

    records = []
    for i in range(quantity):
        record: Dict[str, Any] = {}
        for key, prop in properties.items():
            prop_type = prop.get("type") if isinstance(prop, dict) else None
            if prop_type == "string":
                record[key] = f"sample_{key}_{i}"
            elif prop_type == "integer":
                record[key] = i
            elif prop_type == "number":
                record[key] = float(i)
            elif prop_type == "boolean":
                record[key] = i % 2 == 0
            elif prop_type == "array":
                record[key] = []
            else:
                record[key] = None
        records.append(record)
    return records


class CatalogStore:
    """Thread-safe in-memory catalog."""

    def __init__(self, seed_path: Optional[str] = None):
        self._datasets: Dict[str, Dataset] = {}
        self._payout_addresses: Dict[str, str] = {}
        # Keyed by dataset id; warehouse rows are keyed by WAREHOUSE_PREFIX + seller_id
        self._records: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        if seed_path:
            self.load_seed(seed_path)

    def load_seed(self, seed_path: str) -> None:
        path = Path(seed_path)
        with open(path, "r") as f:
            seed = json.load(f)

        for seller_id, seller in (seed.get("sellers") or {}).items():
            address = seller.get("wallet_address") if isinstance(seller, dict) else seller
            if address:
                self.set_seller_payout_address(seller_id, address)
        for row in seed.get("datasets") or []:
            self.add_dataset(Dataset.from_dict(row))
        for dataset_id, rows in (seed.get("records") or {}).items():
            self.add_records(dataset_id, rows)

        logger.info(f"Loaded catalog seed from {path}: {len(self._datasets)} datasets")

    def add_dataset(self, dataset: Dataset) -> Dataset:
        with self._lock:
            self._datasets[dataset.id] = dataset
        return dataset

    def add_records(self, dataset_id: str, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._records.setdefault(dataset_id, []).extend(copy.deepcopy(records))

    def set_seller_payout_address(self, seller_id: str, address: str) -> None:
        with self._lock:
            self._payout_addresses[seller_id] = address

    def get_active_datasets(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dataset]:
        """Active listings in registration order, optionally filtered."""
        with self._lock:
            datasets = [d for d in self._datasets.values() if d.is_active]

        if category:
            datasets = [d for d in datasets if (d.category or "").lower() == category.lower()]
        if search:
            needle = search.lower()
            datasets = [
                d for d in datasets
                if needle in d.name.lower()
                or needle in (d.description or "").lower()
                or needle in (d.content_summary or "").lower()
            ]
        return copy.deepcopy(datasets[offset:offset + limit])

    def get_dataset(self, dataset_id: str) -> Dataset:
        """Active dataset by id; inactive listings are reported as missing."""
        with self._lock:
            dataset = self._datasets.get(dataset_id)
            if dataset is None or not dataset.is_active:
                raise NotFoundError("Dataset not found")
            return copy.deepcopy(dataset)

    def get_seller_datasets(self, seller_id: str) -> List[Dataset]:
        with self._lock:
            return copy.deepcopy([d for d in self._datasets.values() if d.seller_id == seller_id])

    def get_seller_payout_address(self, seller_id: str) -> Optional[str]:
        with self._lock:
            return self._payout_addresses.get(seller_id)

    def _rows_for(self, dataset: Dataset) -> List[Dict[str, Any]]:
        # Caller holds the lock.
        if dataset.is_warehouse:
            return self._records.get(dataset.id) or self._records.get(WAREHOUSE_PREFIX + dataset.seller_id, [])
        return self._records.get(dataset.id, [])

    def get_records(self, dataset_id: str, quantity: int, offset: int = 0) -> List[Dict[str, Any]]:
        """Stored rows of a dataset; an empty list when the seller stored none."""
        dataset = self.get_dataset(dataset_id)
        with self._lock:
            rows = self._rows_for(dataset)
            return copy.deepcopy(rows[offset:offset + quantity])

    def get_sample_records(self, dataset_id: str, size: int) -> List[Dict[str, Any]]:
        return self.get_records(dataset_id, size)
