# app/x402/gateway.py
"""
x402 payment gateway for dataset access.

Turns one data-access request into one of three outcomes:
- ChallengeIssued: no payment attached; a fresh challenge (HTTP 402)
- Allow: the attached payment was verified (or accepted in degraded mode)
- Denied: the request cannot be served (404, 400, 402, 500, 503)

Flow for a paid retry:
1. Parse the X-PAYMENT proof
2. Match it to the challenge issued for its nonce (same dataset, quantity,
   amount and recipient), or reconstruct one when the challenge is gone;
   such proofs must still cover the requested records but cannot be
   checked for freshness
3. Verify with the facilitator
4. Record payment events against the requesting agent

Challenges that expire unpaid close their pending payment_402_received entry
as failed; expired challenges are swept at the start of every request.

Degraded mode: when the facilitator cannot be reached, the payment is
accepted without cryptographic settlement unless X402_FAIL_CLOSED is set.
This keeps purchases flowing during facilitator outages at the cost of
accepting unverified payments; deployments that cannot take that risk
should enable X402_FAIL_CLOSED.

The gateway never touches agent records. Spend and quantity are recorded by
the buyer's own cycle once it has received the data.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from app.agents.actions import ActionLog
from app.agents.models import ActionStatus, ActionType
from app.agents.policy import format_amount, to_price
from app.catalog.store import CatalogStore, Dataset
from app.core.config import settings
from app.core.errors import FacilitatorUnavailableError, NotFoundError
from app.x402.challenges import ChallengeCache, PaymentChallenge, generate_nonce
from app.x402.facilitator import FacilitatorClient
from app.x402.payment import SignedPayment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allow:
    dataset: Dataset
    payment: SignedPayment
    network: str
    transaction_hash: Optional[str] = None
    degraded: bool = False


@dataclass(frozen=True)
class ChallengeIssued:
    challenge: PaymentChallenge

    @property
    def body(self) -> Dict[str, Any]:
        return self.challenge.to_response()


@dataclass(frozen=True)
class Denied:
    reason: str
    status_code: int = 402


AuthorizationResult = Union[Allow, ChallengeIssued, Denied]


def _same_amount(a: str, b: str) -> bool:
    try:
        return Decimal(a) == Decimal(b)
    except InvalidOperation:
        return False


def _covers(paid: str, required: str) -> bool:
    try:
        return Decimal(paid) >= Decimal(required)
    except InvalidOperation:
        return False


class PaymentGateway:
    def __init__(
        self,
        catalog: CatalogStore,
        action_log: ActionLog,
        challenges: Optional[ChallengeCache] = None,
        facilitator: Optional[FacilitatorClient] = None,
        network: Optional[str] = None,
        fail_closed: Optional[bool] = None,
    ):
        self.catalog = catalog
        self.action_log = action_log
        self.challenges = challenges or ChallengeCache()
        self.challenges.on_expire = self._challenge_expired
        self._facilitator = facilitator
        self._network = network
        self._fail_closed = fail_closed

    @property
    def facilitator(self) -> FacilitatorClient:
        """Lazy initialization of facilitator client."""
        if self._facilitator is None:
            self._facilitator = FacilitatorClient()
        return self._facilitator

    @property
    def network(self) -> str:
        return self._network or settings.X402_NETWORK

    @property
    def fail_closed(self) -> bool:
        if self._fail_closed is not None:
            return self._fail_closed
        return settings.X402_FAIL_CLOSED

    def _log(
        self,
        agent_id: Optional[str],
        action_type: ActionType,
        details: Dict[str, Any],
        status: ActionStatus = ActionStatus.SUCCESS,
    ) -> Optional[str]:
        if not agent_id:
            return None
        return self.action_log.append(agent_id, action_type, details, status).id

    def _finalise(self, action_ids, status: ActionStatus) -> None:
        for action_id in action_ids:
            if action_id:
                self.action_log.update_status(action_id, status)

    def _challenge_expired(self, challenge: PaymentChallenge) -> None:
        """Close the 402 entry of a handshake that was never paid."""
        if challenge.action_id:
            logger.info(f"x402: Challenge {challenge.nonce[:8]}... for {challenge.dataset_id} expired unpaid")
            self.action_log.update_status(challenge.action_id, ActionStatus.FAILED)

    def authorize(
        self,
        dataset_id: str,
        quantity: int,
        payment_header: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Decide whether a data request may proceed.

        Args:
            dataset_id: Requested dataset
            quantity: Number of records requested (>= 1)
            payment_header: Raw X-PAYMENT header value, if any
            agent_id: Requesting agent; payment events are logged against it

        Returns:
            Allow, ChallengeIssued or Denied
        """
        self.challenges.purge_expired()

        try:
            dataset = self.catalog.get_dataset(dataset_id)
        except NotFoundError:
            return Denied("Dataset not found", 404)

        recipient = self.catalog.get_seller_payout_address(dataset.seller_id)
        if not recipient:
            logger.error(f"x402: Seller {dataset.seller_id} has no payout address (dataset {dataset_id})")
            return Denied("Producer wallet not configured", 500)

        price = to_price(dataset.price_per_record)
        amount = format_amount(price * quantity)

        if not payment_header:
            return self._issue_challenge(dataset, quantity, price, amount, recipient, agent_id)

        payment = SignedPayment.from_header(payment_header)
        if payment is None:
            logger.warning(f"x402: Malformed X-PAYMENT header for dataset {dataset_id}")
            return Denied("invalid payment format", 400)

        return self._verify_payment(dataset, quantity, amount, payment, agent_id)

    def _issue_challenge(
        self,
        dataset: Dataset,
        quantity: int,
        price: Decimal,
        amount: str,
        recipient: str,
        agent_id: Optional[str],
    ) -> ChallengeIssued:
        challenge = PaymentChallenge(
            nonce=generate_nonce(),
            amount=amount,
            recipient=recipient,
            network=self.network,
            issued_at=int(time.time()),
            ttl=self.challenges.ttl_seconds,
            dataset_id=dataset.id,
            dataset_name=dataset.name,
            quantity=quantity,
            price_per_record=format_amount(price),
            facilitator=self.facilitator.base_url,
        )
        challenge.action_id = self._log(
            agent_id,
            ActionType.PAYMENT_402_RECEIVED,
            {
                "dataset_id": dataset.id,
                "dataset_name": dataset.name,
                "amount": amount,
                "quantity": quantity,
                "payment_instructions": challenge.to_response(),
            },
            ActionStatus.PENDING,
        )
        self.challenges.put(challenge)
        logger.info(f"x402: Issued challenge {challenge.nonce[:8]}... for {dataset.id} ({quantity} records, {amount} USDC)")
        return ChallengeIssued(challenge)

    def _reconstruct_challenge(self, dataset: Dataset, quantity: int, payment: SignedPayment) -> PaymentChallenge:
        logger.warning(
            f"x402: No live challenge for nonce {payment.nonce!r}; "
            f"reconstructing from the payment proof (freshness not guaranteed)"
        )
        return PaymentChallenge(
            nonce=payment.nonce or "",
            amount=payment.amount,
            recipient=payment.recipient,
            network=self.network,
            issued_at=payment.timestamp or int(time.time()),
            ttl=self.challenges.ttl_seconds,
            dataset_id=dataset.id,
            dataset_name=dataset.name,
            quantity=quantity,
            facilitator=self.facilitator.base_url,
        )

    def _verify_payment(
        self,
        dataset: Dataset,
        quantity: int,
        amount: str,
        payment: SignedPayment,
        agent_id: Optional[str],
    ) -> AuthorizationResult:
        challenge = self.challenges.get(payment.nonce)
        if challenge is None:
            if not _covers(payment.amount, amount):
                return Denied(f"Payment amount {payment.amount} does not cover required {amount}", 402)
            challenge = self._reconstruct_challenge(dataset, quantity, payment)
        elif challenge.dataset_id != dataset.id:
            return Denied("Payment challenge was issued for a different dataset", 402)
        elif challenge.quantity != quantity:
            return Denied(
                f"Payment challenge was issued for {challenge.quantity} records, not {quantity}",
                402,
            )
        elif not _same_amount(payment.amount, challenge.amount):
            return Denied(f"Payment amount {payment.amount} does not match required {challenge.amount}", 402)
        elif payment.recipient.lower() != challenge.recipient.lower():
            return Denied("Payment recipient does not match", 402)

        details = {
            "dataset_id": dataset.id,
            "amount": payment.amount,
            "quantity": quantity,
            "recipient": payment.recipient,
        }
        signing_id = self._log(agent_id, ActionType.PAYMENT_SIGNING, details, ActionStatus.PENDING)
        pending = [challenge.action_id, signing_id]

        try:
            result = self.facilitator.verify(payment, challenge)
        except FacilitatorUnavailableError as e:
            if self.fail_closed:
                self._finalise(pending, ActionStatus.FAILED)
                self._log(agent_id, ActionType.ERROR, {**details, "error": str(e)}, ActionStatus.FAILED)
                return Denied("Payment facilitator unavailable", 503)

            logger.warning(f"x402: Facilitator unavailable, accepting payment for {dataset.id} without settlement")
            self.challenges.discard(challenge.nonce)
            self._finalise(pending, ActionStatus.SUCCESS)
            self._log(agent_id, ActionType.PAYMENT_SENT, {**details, "degraded": True})
            return Allow(dataset=dataset, payment=payment, network=challenge.network, degraded=True)

        if not result.valid:
            self._finalise(pending, ActionStatus.FAILED)
            self._log(
                agent_id,
                ActionType.ERROR,
                {**details, "error": f"Payment verification failed: {result.error}"},
                ActionStatus.FAILED,
            )
            return Denied(f"Payment verification failed: {result.error or 'Unknown reason'}", 402)

        self.challenges.discard(challenge.nonce)
        self._finalise(pending, ActionStatus.SUCCESS)
        self._log(agent_id, ActionType.PAYMENT_SENT, details)
        self._log(agent_id, ActionType.PAYMENT_VERIFIED, {**details, "transaction_hash": result.transaction_hash})
        if result.transaction_hash:
            self._log(
                agent_id,
                ActionType.PAYMENT_SETTLED,
                {**details, "transaction_hash": result.transaction_hash, "network": challenge.network},
            )
        logger.info(f"x402: Payment verified for {dataset.id} ({payment.amount} USDC)")
        return Allow(
            dataset=dataset,
            payment=payment,
            network=challenge.network,
            transaction_hash=result.transaction_hash,
        )
