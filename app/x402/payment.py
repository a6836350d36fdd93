# app/x402/payment.py
"""
Signed payment proofs carried in the X-PAYMENT header.

Header value is a JSON object:
    {"scheme": "x402", "amount": "0.050000", "recipient": "0x...",
     "signature": "0x...", "nonce": "...", "timestamp": 1700000000}

Clients built on the x402 SDK base64-encode their headers; both forms are
accepted.
"""
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from x402.encoding import safe_base64_decode, safe_base64_encode

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
X_AGENT_ID_HEADER = "X-Agent-Id"


@dataclass(frozen=True)
class SignedPayment:
    scheme: str
    amount: str
    recipient: str
    signature: str
    nonce: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_header(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SignedPayment"]:
        if not isinstance(data, dict):
            return None
        amount = data.get("amount")
        recipient = data.get("recipient")
        signature = data.get("signature")
        if amount in (None, "") or not recipient or not signature:
            return None
        timestamp = data.get("timestamp")
        try:
            timestamp = int(timestamp) if timestamp is not None else None
        except (TypeError, ValueError):
            return None
        return cls(
            scheme=str(data.get("scheme") or "x402"),
            amount=str(amount),
            recipient=str(recipient),
            signature=str(signature),
            nonce=str(data["nonce"]) if data.get("nonce") else None,
            timestamp=timestamp,
        )

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> Optional["SignedPayment"]:
        """
        Parse an X-PAYMENT header value.

        Returns:
            SignedPayment, or None if the header is not a well-formed proof
        """
        if not header_value or not header_value.strip():
            return None
        value = header_value.strip()

        if value.startswith("{"):
            try:
                return cls.from_dict(json.loads(value))
            except json.JSONDecodeError as e:
                logger.warning(f"x402: Failed to parse X-PAYMENT header JSON: {e}")
                return None

        try:
            # safe_base64_decode returns str, not bytes
            decoded_str = safe_base64_decode(value)
            return cls.from_dict(json.loads(decoded_str))
        except Exception as e:
            logger.warning(f"x402: Failed to decode X-PAYMENT header: {e}")
            return None


def encode_payment_response(
    transaction_hash: Optional[str],
    network: str,
    degraded: bool = False,
) -> str:
    """
    Build the X-PAYMENT-RESPONSE header value.

    Returns:
        Base64-encoded JSON settlement receipt
    """
    receipt = {
        "success": True,
        "transaction": transaction_hash,
        "network": network,
        "degraded": degraded,
    }
    return safe_base64_encode(json.dumps(receipt).encode("utf-8"))
