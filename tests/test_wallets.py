# tests/test_wallets.py
"""
Unit tests for agent wallets: key management, payment signing and balances.
"""
import json
import pytest
from unittest.mock import patch, MagicMock

from eth_account import Account
from eth_account.messages import encode_defunct
from requests.exceptions import ConnectionError

from app.agents.wallets import (
    BALANCE_OF_SELECTOR,
    USDC_ADDRESSES,
    WalletService,
    signing_payload,
)
from app.core.errors import ExternalServiceError, NotFoundError, ValidationError


CHALLENGE = {
    "scheme": "x402",
    "amount": "0.050000",
    "currency": "USDC",
    "recipient": "0x1111111111111111111111111111111111111111",
    "network": "base-sepolia",
    "nonce": "9f" * 16,
    "timestamp": 1700000000,
}


def rpc_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestWalletLifecycle:
    """Test wallet creation and lookup."""

    def test_create_wallet(self):
        """New wallets get a checksummed address."""
        service = WalletService()
        wallet = service.create_wallet("owner-1", "Main")

        assert wallet.address.startswith("0x")
        assert len(wallet.address) == 42
        assert service.get_wallet(wallet.id) == wallet

    def test_unknown_wallet(self):
        """Unknown wallet ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            WalletService().get_wallet("missing")

    def test_provision_reuses_owner_wallet(self):
        """An owner's oldest wallet is reused for new agents."""
        service = WalletService()
        first = service.create_wallet("owner-1", "First")
        service.create_wallet("owner-1", "Second")

        assert service.provision_agent_wallet("owner-1", "agent").id == first.id

    def test_provision_creates_when_none(self):
        """An owner without wallets gets a new one."""
        service = WalletService()
        wallet = service.provision_agent_wallet("owner-2", "Collector")

        assert wallet.owner_id == "owner-2"
        assert wallet.name == "Collector wallet"

    def test_keystore_reload(self, tmp_path):
        """Encrypted keystores are reloaded and still sign for the same address."""
        service = WalletService(keystore_dir=str(tmp_path), keystore_password="secret")
        wallet = service.create_wallet("owner-1", "Main")

        stored = json.loads((tmp_path / f"{wallet.id}.json").read_text())
        assert "keystore" in stored
        assert "private" not in json.dumps(stored).lower()

        reloaded = WalletService(keystore_dir=str(tmp_path), keystore_password="secret")
        payment = reloaded.sign_payment(wallet.id, CHALLENGE)
        message = encode_defunct(text=json.dumps(signing_payload(CHALLENGE), sort_keys=True, separators=(",", ":")))
        assert Account.recover_message(message, signature=payment.signature) == wallet.address


class TestSignPayment:
    """Test answering 402 challenges."""

    def test_signature_recovers_to_wallet(self):
        """The signature is an EIP-191 signature by the wallet's key."""
        service = WalletService()
        wallet = service.create_wallet("owner-1", "Main")

        payment = service.sign_payment(wallet.id, CHALLENGE)

        assert payment.amount == "0.050000"
        assert payment.recipient == CHALLENGE["recipient"]
        assert payment.nonce == CHALLENGE["nonce"]
        assert payment.timestamp == 1700000000
        message = encode_defunct(text=json.dumps(signing_payload(CHALLENGE), sort_keys=True, separators=(",", ":")))
        assert Account.recover_message(message, signature=payment.signature) == wallet.address

    def test_incomplete_challenge(self):
        """Challenges without amount or recipient cannot be signed."""
        service = WalletService()
        wallet = service.create_wallet("owner-1", "Main")

        with pytest.raises(ValidationError):
            service.sign_payment(wallet.id, {"amount": "0.01"})

    def test_unknown_wallet(self):
        """Signing with an unknown wallet raises NotFoundError."""
        with pytest.raises(NotFoundError):
            WalletService().sign_payment("missing", CHALLENGE)


class TestGetBalance:
    """Test USDC balance lookups."""

    @patch("app.agents.wallets.requests.post")
    def test_balance(self, mock_post):
        """balanceOf is called on the network's USDC contract."""
        mock_post.return_value = rpc_response({"jsonrpc": "2.0", "id": 1, "result": hex(1_234_567)})
        service = WalletService(rpc_url="https://rpc.test", network="base-sepolia")
        wallet = service.create_wallet("owner-1", "Main")

        balance = service.get_balance(wallet.id)

        assert balance["amount"] == "1.234567"
        assert balance["asset"] == "USDC"
        assert balance["address"] == wallet.address
        call = mock_post.call_args
        assert call.args[0] == "https://rpc.test"
        params = call.kwargs["json"]["params"][0]
        assert params["to"] == USDC_ADDRESSES["base-sepolia"]
        assert params["data"].startswith(BALANCE_OF_SELECTOR)
        assert params["data"].endswith(wallet.address.lower()[2:])

    @patch("app.agents.wallets.requests.post")
    def test_empty_result(self, mock_post):
        """An empty eth_call result is a zero balance."""
        mock_post.return_value = rpc_response({"result": "0x"})
        service = WalletService(rpc_url="https://rpc.test", network="base")
        wallet = service.create_wallet("owner-1", "Main")

        assert service.get_balance(wallet.id)["amount"] == "0.000000"

    @patch("app.agents.wallets.requests.post")
    def test_rpc_error(self, mock_post):
        """RPC errors surface as ExternalServiceError."""
        mock_post.return_value = rpc_response({"error": {"code": -32000, "message": "boom"}})
        service = WalletService(rpc_url="https://rpc.test", network="base-sepolia")
        wallet = service.create_wallet("owner-1", "Main")

        with pytest.raises(ExternalServiceError):
            service.get_balance(wallet.id)

    @patch("app.agents.wallets.requests.post")
    def test_rpc_unreachable(self, mock_post):
        """Transport failures surface as ExternalServiceError."""
        mock_post.side_effect = ConnectionError("refused")
        service = WalletService(rpc_url="https://rpc.test", network="base-sepolia")
        wallet = service.create_wallet("owner-1", "Main")

        with pytest.raises(ExternalServiceError):
            service.get_balance(wallet.id)

    def test_unsupported_asset(self):
        """Only USDC is supported."""
        service = WalletService(network="base-sepolia")
        wallet = service.create_wallet("owner-1", "Main")

        with pytest.raises(ValidationError):
            service.get_balance(wallet.id, "ETH")

    def test_unknown_network(self):
        """Networks without a known USDC contract are rejected."""
        service = WalletService(network="solana")
        wallet = service.create_wallet("owner-1", "Main")

        with pytest.raises(ValidationError):
            service.get_balance(wallet.id)
