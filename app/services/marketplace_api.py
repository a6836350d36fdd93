# app/services/marketplace_api.py
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException

from app.catalog.store import Dataset
from app.core.config import settings
from app.core.errors import ExternalServiceError, NotFoundError
from app.x402.payment import X_AGENT_ID_HEADER, X_PAYMENT_HEADER, SignedPayment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataResponse:
    """Raw outcome of a data request; 402 is an expected status, not an error."""
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str]


class MarketplaceClient:
    """
    HTTP client agents use to talk to the marketplace API.

    Discovery, probe and sample are plain GETs. The data request returns the
    raw status so the caller can run the x402 handshake.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self._base_url = base_url
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        base = self._base_url or str(settings.MARKETPLACE_API_URL)
        return base if base.endswith("/") else base + "/"

    @property
    def timeout(self) -> int:
        return self._timeout or settings.HTTP_TIMEOUT_SECONDS

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        api_url = urljoin(self.base_url, path)
        try:
            response = requests.get(api_url, params=params, timeout=self.timeout)
            if response.status_code == 404:
                raise NotFoundError(f"Not found: {path}")
            response.raise_for_status() # Raise HTTPError for bad responses (4xx or 5xx)
            return response.json()
        except RequestException as e:
            logger.error(f"Error calling marketplace API ({api_url}): {e}")
            raise ExternalServiceError(f"Marketplace request failed: {e}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON from marketplace API ({api_url}): {e}")
            raise ExternalServiceError(f"Marketplace returned invalid JSON: {e}") from e

    def get_active_datasets(self, category: Optional[str] = None, limit: int = 50) -> List[Dataset]:
        """
        Fetches active dataset listings, optionally restricted to a category.

        Returns:
            Datasets in the order the marketplace lists them
        """
        params: Dict[str, Any] = {"limit": limit}
        if category:
            params["category"] = category
        data = self._get_json("datasets", params=params)

        rows = data.get("datasets") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            logger.warning(f"Unexpected data structure from dataset listing: {type(rows)}")
            return []
        return [Dataset.from_dict(row) for row in rows]

    def probe_dataset(self, dataset_id: str) -> Dataset:
        """Metadata (price, schema, quality) of one dataset, no payment needed."""
        data = self._get_json(f"datasets/{dataset_id}/probe")
        if not isinstance(data, dict) or "id" not in data:
            raise ExternalServiceError(f"Malformed probe response for dataset {dataset_id}")
        return Dataset.from_dict(data)

    def get_sample(self, dataset_id: str, size: int) -> List[Dict[str, Any]]:
        data = self._get_json(f"datasets/{dataset_id}/sample", params={"size": size})
        records = data.get("records") if isinstance(data, dict) else data
        if not isinstance(records, list):
            logger.warning(f"Unexpected sample structure for dataset {dataset_id}: {type(records)}")
            return []
        return [r for r in records if isinstance(r, dict)]

    def request_data(
        self,
        dataset_id: str,
        quantity: int,
        agent_id: Optional[str] = None,
        payment: Optional[SignedPayment] = None,
    ) -> DataResponse:
        """
        Requests records from the x402-protected data endpoint.

        Without a payment the expected answer is 402 with a challenge body;
        with a valid payment it is 200 with the records.

        Raises:
            ExternalServiceError: If the HTTP request itself fails
        """
        api_url = urljoin(self.base_url, f"datasets/{dataset_id}/data")
        params: Dict[str, Any] = {"quantity": quantity}
        headers: Dict[str, str] = {}
        if agent_id:
            params["agent_id"] = agent_id
            headers[X_AGENT_ID_HEADER] = agent_id
        if payment is not None:
            headers[X_PAYMENT_HEADER] = payment.to_header()

        try:
            response = requests.get(api_url, params=params, headers=headers, timeout=self.timeout)
        except RequestException as e:
            logger.error(f"Error requesting data from marketplace ({api_url}): {e}")
            raise ExternalServiceError(f"Data request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        return DataResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )
