"""
x402 Payment Protocol Integration Module.

This module implements the x402 payment protocol for dataset access,
enabling pay-per-request purchases of data records by buyer agents.

Key components:
- middleware: FastAPI middleware guarding the dataset data endpoint
- gateway: challenge / verify decision for one data request
- challenges: issued payment challenges and their TTL cache
- facilitator: client for the external payment facilitator
- payment: X-PAYMENT header parsing and receipts

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
