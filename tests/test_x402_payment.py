# tests/test_x402_payment.py
"""
Unit tests for X-PAYMENT parsing and the facilitator client.
"""
import json
import pytest
from unittest.mock import patch, MagicMock

import requests
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.core.errors import FacilitatorUnavailableError
from app.x402.challenges import PaymentChallenge
from app.x402.facilitator import FacilitatorClient, VerifyResult
from app.x402.payment import SignedPayment, encode_payment_response


PROOF = {
    "scheme": "x402",
    "amount": "0.050000",
    "recipient": "0xabc",
    "signature": "0x" + "ab" * 65,
    "nonce": "n1",
    "timestamp": 1700000000,
}


def make_challenge() -> PaymentChallenge:
    return PaymentChallenge(
        nonce="n1",
        amount="0.050000",
        recipient="0xabc",
        network="base-sepolia",
        issued_at=1700000000,
        ttl=300,
    )


class TestSignedPayment:
    """Test X-PAYMENT header parsing."""

    def test_json_header(self):
        """Plain JSON headers are accepted."""
        payment = SignedPayment.from_header(json.dumps(PROOF))

        assert payment.amount == "0.050000"
        assert payment.recipient == "0xabc"
        assert payment.nonce == "n1"
        assert payment.timestamp == 1700000000

    def test_base64_header(self):
        """Base64-encoded JSON headers are accepted."""
        header = safe_base64_encode(json.dumps(PROOF).encode("utf-8"))
        payment = SignedPayment.from_header(header)

        assert payment is not None
        assert payment.signature == PROOF["signature"]

    def test_header_round_trip(self):
        """to_header produces a header from_header accepts."""
        payment = SignedPayment.from_header(json.dumps(PROOF))
        assert SignedPayment.from_header(payment.to_header()) == payment

    @pytest.mark.parametrize("header", [
        None,
        "",
        "   ",
        "{not json",
        "!!!not-base64!!!",
        json.dumps([1, 2, 3]),
        json.dumps({"amount": "0.05", "recipient": "0xabc"}),
        json.dumps({"amount": "0.05", "signature": "0x01"}),
        json.dumps({**PROOF, "timestamp": "soon"}),
    ])
    def test_malformed(self, header):
        """Malformed or incomplete proofs parse to None."""
        assert SignedPayment.from_header(header) is None

    def test_scheme_defaults(self):
        """A proof without a scheme is treated as x402."""
        proof = {k: v for k, v in PROOF.items() if k != "scheme"}
        assert SignedPayment.from_dict(proof).scheme == "x402"


class TestEncodePaymentResponse:
    """Test the X-PAYMENT-RESPONSE receipt."""

    def test_receipt(self):
        """Receipt decodes to the settlement details."""
        header = encode_payment_response("0xtx", "base-sepolia")
        receipt = json.loads(safe_base64_decode(header))

        assert receipt == {"success": True, "transaction": "0xtx", "network": "base-sepolia", "degraded": False}

    def test_degraded_receipt(self):
        """Degraded acceptance is visible in the receipt."""
        receipt = json.loads(safe_base64_decode(encode_payment_response(None, "base", degraded=True)))
        assert receipt["degraded"] is True
        assert receipt["transaction"] is None


class TestFacilitatorClient:
    """Test facilitator verification calls."""

    def setup_method(self):
        self.client = FacilitatorClient(base_url="https://facilitator.test/", timeout=5)
        self.payment = SignedPayment.from_dict(PROOF)

    def test_verify_url(self):
        """The verify endpoint is joined onto the base url."""
        assert FacilitatorClient(base_url="https://x402.org/facilitator").verify_url == "https://x402.org/facilitator/verify"

    @patch("app.x402.facilitator.requests.post")
    def test_valid(self, mock_post):
        """A 2xx answer is a valid payment with its transaction hash."""
        mock_post.return_value = MagicMock(status_code=200, json=MagicMock(return_value={"transactionHash": "0xtx"}))

        result = self.client.verify(self.payment, make_challenge())

        assert result == VerifyResult(valid=True, transaction_hash="0xtx")
        body = mock_post.call_args.kwargs["json"]
        assert body["amount"] == "0.050000"
        assert body["network"] == "base-sepolia"
        assert body["nonce"] == "n1"
        assert mock_post.call_args.kwargs["timeout"] == 5

    @patch("app.x402.facilitator.requests.post")
    def test_transaction_key(self, mock_post):
        """The hash may be reported as `transaction`."""
        mock_post.return_value = MagicMock(status_code=200, json=MagicMock(return_value={"transaction": "0xabc"}))
        assert self.client.verify(self.payment, make_challenge()).transaction_hash == "0xabc"

    @patch("app.x402.facilitator.requests.post")
    def test_rejected(self, mock_post):
        """A non-2xx answer is an invalid payment with the facilitator's reason."""
        mock_post.return_value = MagicMock(status_code=400, json=MagicMock(return_value={"error": "bad signature"}))

        result = self.client.verify(self.payment, make_challenge())

        assert result.valid is False
        assert result.error == "bad signature"

    @patch("app.x402.facilitator.requests.post")
    def test_rejected_without_body(self, mock_post):
        """Non-JSON rejections still produce a reason."""
        mock_post.return_value = MagicMock(status_code=500, json=MagicMock(side_effect=ValueError("no json")))

        result = self.client.verify(self.payment, make_challenge())

        assert result.valid is False
        assert "500" in result.error

    @pytest.mark.parametrize("exc", [
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.Timeout("slow"),
        requests.exceptions.RequestException("other"),
    ])
    @patch("app.x402.facilitator.requests.post")
    def test_unreachable(self, mock_post, exc):
        """Transport failures raise FacilitatorUnavailableError."""
        mock_post.side_effect = exc

        with pytest.raises(FacilitatorUnavailableError):
            self.client.verify(self.payment, make_challenge())
