"""
b402 paying test client
"""

from b402_api.client.cli import PaymentClient

__all__ = ["PaymentClient"]
