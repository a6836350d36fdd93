# app/x402/facilitator.py
"""
Client for the x402 payment facilitator.

The facilitator is the third party that checks a signed payment against the
challenge it answers and settles it on-chain. Only transport failures raise;
a facilitator that answers but rejects the payment produces an invalid
VerifyResult.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.core.errors import FacilitatorUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None


class FacilitatorClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = base_url or settings.X402_FACILITATOR_URL
        self.timeout = timeout or settings.X402_FACILITATOR_TIMEOUT_SECONDS

    @property
    def verify_url(self) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", "verify")

    def verify(self, payment, challenge) -> VerifyResult:
        """
        Verify a signed payment against its challenge.

        Args:
            payment: SignedPayment presented by the buyer
            challenge: PaymentChallenge the payment answers

        Returns:
            VerifyResult; valid with the settlement transaction hash on 2xx

        Raises:
            FacilitatorUnavailableError: The facilitator could not be reached
        """
        body: Dict[str, Any] = {
            "scheme": payment.scheme,
            "amount": payment.amount,
            "recipient": payment.recipient,
            "signature": payment.signature,
            "network": challenge.network,
            "nonce": payment.nonce or challenge.nonce,
            "timestamp": payment.timestamp or challenge.issued_at,
        }

        try:
            response = requests.post(self.verify_url, json=body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.error(f"x402: Facilitator unreachable ({self.verify_url}): {e}")
            raise FacilitatorUnavailableError(f"Payment facilitator unreachable: {e}") from e
        except RequestException as e:
            logger.error(f"x402: Facilitator request failed ({self.verify_url}): {e}")
            raise FacilitatorUnavailableError(f"Payment facilitator request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if 200 <= response.status_code < 300:
            tx_hash = data.get("transactionHash") or data.get("transaction")
            logger.info(f"x402: Facilitator verified payment (tx {tx_hash})")
            return VerifyResult(valid=True, transaction_hash=tx_hash)

        error = data.get("error") or data.get("invalidReason") or f"Facilitator returned HTTP {response.status_code}"
        logger.warning(f"x402: Facilitator rejected payment: {error}")
        return VerifyResult(valid=False, error=error)
