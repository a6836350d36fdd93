# app/x402/challenges.py
"""
Issued payment challenges.

A challenge is minted for every 402 response and kept until it is either
redeemed by a verified payment or expires (X402_CHALLENGE_TTL_SECONDS).
The cache is per-process; multi-instance deployments need ChallengeCache
replaced by a shared TTL store (e.g. Redis with key expiry) so a payment
can be verified by any instance.
"""
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

NONCE_BYTES = 16


def generate_nonce() -> str:
    """16 random bytes, hex encoded."""
    return secrets.token_hex(NONCE_BYTES)


@dataclass
class PaymentChallenge:
    nonce: str
    amount: str
    recipient: str
    network: str
    issued_at: int
    ttl: int
    dataset_id: Optional[str] = None
    dataset_name: Optional[str] = None
    quantity: int = 1
    price_per_record: Optional[str] = None
    facilitator: Optional[str] = None
    # Pending payment_402_received entry to finalise once the payment resolves
    action_id: Optional[str] = None

    @property
    def expires_at(self) -> int:
        return self.issued_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def to_response(self) -> Dict[str, Any]:
        """Body of the HTTP 402 response."""
        return {
            "scheme": "x402",
            "amount": self.amount,
            "currency": "USDC",
            "recipient": self.recipient,
            "network": self.network,
            "nonce": self.nonce,
            "timestamp": self.issued_at,
            "facilitator": self.facilitator,
            "metadata": {
                "dataset_id": self.dataset_id,
                "dataset_name": self.dataset_name,
                "quantity": self.quantity,
                "price_per_record": self.price_per_record,
            },
        }


class ChallengeCache:
    """
    Thread-safe nonce -> PaymentChallenge map with expiry.

    on_expire, when set, is called once for every challenge that leaves the
    cache unredeemed (expired on lookup or swept by purge_expired). It runs
    outside the cache lock.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        on_expire: Optional[Callable[[PaymentChallenge], None]] = None,
    ):
        self._ttl_seconds = ttl_seconds
        self._challenges: Dict[str, PaymentChallenge] = {}
        self._lock = threading.Lock()
        self.on_expire = on_expire

    @property
    def ttl_seconds(self) -> int:
        """Challenge lifetime (lazy load from settings if not set)."""
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return settings.X402_CHALLENGE_TTL_SECONDS

    def _notify_expired(self, expired: List[PaymentChallenge]) -> None:
        if self.on_expire is None:
            return
        for challenge in expired:
            try:
                self.on_expire(challenge)
            except Exception as e:
                logger.error(f"x402: Expiry handler failed for challenge {challenge.nonce[:8]}...: {e}")

    def put(self, challenge: PaymentChallenge) -> None:
        with self._lock:
            expired = self._purge_expired_locked()
            self._challenges[challenge.nonce] = challenge
        self._notify_expired(expired)

    def get(self, nonce: Optional[str]) -> Optional[PaymentChallenge]:
        """Live challenge for a nonce; expired entries are dropped on sight."""
        if not nonce:
            return None
        with self._lock:
            challenge = self._challenges.get(nonce)
            if challenge is None:
                return None
            if not challenge.is_expired():
                return challenge
            del self._challenges[nonce]
        logger.debug(f"x402: Challenge {nonce[:8]}... expired")
        self._notify_expired([challenge])
        return None

    def discard(self, nonce: Optional[str]) -> None:
        if not nonce:
            return
        with self._lock:
            self._challenges.pop(nonce, None)

    def _purge_expired_locked(self) -> List[PaymentChallenge]:
        now = time.time()
        expired = [c for c in self._challenges.values() if c.is_expired(now)]
        for challenge in expired:
            del self._challenges[challenge.nonce]
        return expired

    def purge_expired(self) -> int:
        with self._lock:
            expired = self._purge_expired_locked()
        self._notify_expired(expired)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._challenges.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)
