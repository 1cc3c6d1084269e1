"""
b402 Payment API
HTTP 402 micropayment gate for BNB Chain (b402 / EIP-3009 gasless transfers)
"""

__version__ = "1.0.0"
