# app/agents/wallets.py
"""
Agent wallets: creation, payment signing and USDC balances.

Keys are generated with eth-account. When WALLET_KEYSTORE_DIR is set each
key is also written as an encrypted keystore (one JSON file per wallet) and
reloaded on startup; otherwise keys live only in memory.

Payment signatures are EIP-191 personal-message signatures over the JSON of
{amount, recipient, nonce, timestamp}.
"""
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException
from eth_account import Account
from eth_account.messages import encode_defunct

from app.agents.models import utcnow
from app.core.config import settings
from app.core.errors import ExternalServiceError, NotFoundError, ValidationError
from app.x402.payment import SignedPayment

logger = logging.getLogger(__name__)

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}
USDC_DECIMALS = 6

# keccak("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass
class Wallet:
    id: str
    owner_id: str
    name: str
    address: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "address": self.address,
            "created_at": self.created_at.isoformat(),
        }


def signing_payload(challenge: Dict[str, Any]) -> Dict[str, Any]:
    """The part of a 402 challenge a payment signature commits to."""
    return {
        "amount": challenge.get("amount"),
        "recipient": challenge.get("recipient"),
        "nonce": challenge.get("nonce"),
        "timestamp": challenge.get("timestamp"),
    }


class WalletService:
    def __init__(
        self,
        keystore_dir: Optional[str] = None,
        keystore_password: Optional[str] = None,
        rpc_url: Optional[str] = None,
        network: Optional[str] = None,
    ):
        self._wallets: Dict[str, Wallet] = {}
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self._keystore_dir = Path(keystore_dir) if keystore_dir else None
        self._keystore_password = keystore_password or settings.WALLET_KEYSTORE_PASSWORD
        self._rpc_url = rpc_url
        self._network = network
        if self._keystore_dir is not None:
            self._load_keystores()

    @property
    def rpc_url(self) -> str:
        return self._rpc_url or settings.BASE_RPC_URL

    @property
    def network(self) -> str:
        return self._network or settings.X402_NETWORK

    def _load_keystores(self) -> None:
        if not self._keystore_dir.exists():
            return
        for path in sorted(self._keystore_dir.glob("*.json")):
            try:
                with open(path, "r") as f:
                    stored = json.load(f)
                wallet = Wallet(
                    id=stored["id"],
                    owner_id=stored["owner_id"],
                    name=stored.get("name", ""),
                    address=stored["address"],
                    created_at=datetime.fromisoformat(stored["created_at"]),
                )
                key = Account.decrypt(stored["keystore"], self._keystore_password)
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load wallet keystore {path}: {e}")
                continue
            self._wallets[wallet.id] = wallet
            self._keys[wallet.id] = bytes(key)
        logger.info(f"Loaded {len(self._wallets)} wallets from {self._keystore_dir}")

    def _write_keystore(self, wallet: Wallet, private_key: bytes) -> None:
        if self._keystore_dir is None:
            return
        self._keystore_dir.mkdir(parents=True, exist_ok=True)
        stored = wallet.to_dict()
        stored["keystore"] = Account.encrypt(private_key, self._keystore_password)
        with open(self._keystore_dir / f"{wallet.id}.json", "w") as f:
            json.dump(stored, f)

    def create_wallet(self, owner_id: str, name: str) -> Wallet:
        account = Account.create()
        wallet = Wallet(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            address=account.address,
        )
        private_key = bytes(account.key)
        with self._lock:
            self._wallets[wallet.id] = wallet
            self._keys[wallet.id] = private_key
            self._write_keystore(wallet, private_key)
        logger.info(f"Created wallet {wallet.address} for owner {owner_id} ({name})")
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        with self._lock:
            wallet = self._wallets.get(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found: {wallet_id}")
        return wallet

    def list_owner_wallets(self, owner_id: str) -> List[Wallet]:
        with self._lock:
            wallets = [w for w in self._wallets.values() if w.owner_id == owner_id]
        return sorted(wallets, key=lambda w: w.created_at)

    def get_owner_wallet(self, owner_id: str) -> Optional[Wallet]:
        """The owner's oldest wallet, if any."""
        wallets = self.list_owner_wallets(owner_id)
        return wallets[0] if wallets else None

    def provision_agent_wallet(self, owner_id: str, agent_name: str) -> Wallet:
        """Reuse the owner's wallet, creating one when the owner has none."""
        wallet = self.get_owner_wallet(owner_id)
        if wallet is not None:
            return wallet
        return self.create_wallet(owner_id, f"{agent_name} wallet")

    def sign(self, wallet_id: str, payload: Dict[str, Any]) -> str:
        """
        Sign a payload with the wallet's key.

        Returns:
            0x-prefixed hex signature
        """
        with self._lock:
            private_key = self._keys.get(wallet_id)
        if private_key is None:
            raise NotFoundError(f"Wallet not found: {wallet_id}")

        message = encode_defunct(text=json.dumps(payload, sort_keys=True, separators=(",", ":")))
        signed = Account.sign_message(message, private_key=private_key)
        return "0x" + bytes(signed.signature).hex()

    def sign_payment(self, wallet_id: str, challenge: Dict[str, Any]) -> SignedPayment:
        """Answer a 402 challenge body with a signed payment proof."""
        if not challenge.get("amount") or not challenge.get("recipient"):
            raise ValidationError("Payment challenge is missing amount or recipient")

        payload = signing_payload(challenge)
        return SignedPayment(
            scheme=challenge.get("scheme") or "x402",
            amount=str(payload["amount"]),
            recipient=str(payload["recipient"]),
            signature=self.sign(wallet_id, payload),
            nonce=payload["nonce"],
            timestamp=payload["timestamp"],
        )

    def _get_token_balance_from_rpc(self, token_address: str, holder: str) -> int:
        """
        ERC-20 balanceOf via JSON-RPC eth_call.

        Returns:
            Balance in the token's smallest units

        Raises:
            RequestException: If the HTTP request fails
            ValueError: If the RPC response is malformed or an error
        """
        data = BALANCE_OF_SELECTOR + holder.lower().replace("0x", "").rjust(64, "0")
        response = requests.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": "eth_call",
                "params": [{"to": token_address, "data": data}, "latest"],
                "id": 1
            },
            timeout=settings.HTTP_TIMEOUT_SECONDS
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise ValueError(f"RPC error: {result['error']}")
        if "result" not in result:
            raise ValueError("Invalid RPC response: missing 'result' field")

        raw = result["result"]
        return int(raw, 16) if raw not in ("0x", "") else 0

    def get_balance(self, wallet_id: str, asset: str = "USDC") -> Dict[str, Any]:
        """
        On-chain balance of a wallet.

        Raises:
            NotFoundError: Unknown wallet
            ValidationError: Unsupported asset or network
            ExternalServiceError: RPC failure
        """
        wallet = self.get_wallet(wallet_id)
        if asset.upper() != "USDC":
            raise ValidationError(f"Unsupported asset: {asset}")
        token_address = USDC_ADDRESSES.get(self.network)
        if token_address is None:
            raise ValidationError(f"No USDC contract known for network {self.network}")

        try:
            units = self._get_token_balance_from_rpc(token_address, wallet.address)
        except (RequestException, ValueError) as e:
            logger.error(f"Failed to fetch USDC balance for {wallet.address}: {e}")
            raise ExternalServiceError(f"Could not fetch wallet balance: {e}") from e

        amount = Decimal(units) / (Decimal(10) ** USDC_DECIMALS)
        return {
            "wallet_id": wallet.id,
            "address": wallet.address,
            "asset": "USDC",
            "network": self.network,
            "amount": str(amount.quantize(Decimal("0.000001"))),
        }
