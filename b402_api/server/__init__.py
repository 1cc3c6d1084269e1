"""
Payment-gated HTTP API
"""

from b402_api.server.app import create_app, main

__all__ = ["create_app", "main"]
