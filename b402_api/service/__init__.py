"""
Example paid service backed by an AI completion provider
"""

from b402_api.service.completion import CompletionError, CompletionProvider
from b402_api.service.example_service import ExampleService

__all__ = ["CompletionError", "CompletionProvider", "ExampleService"]
