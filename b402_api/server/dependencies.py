"""
Accessors for collaborators stored on app.state by create_app()
"""

from fastapi import Request

from b402_api.config import ServerConfig
from b402_api.payments import PaymentGate
from b402_api.service import ExampleService


def get_config(request: Request) -> ServerConfig:
    return request.app.state.config


def get_gate(request: Request) -> PaymentGate:
    return request.app.state.gate


def get_service(request: Request) -> ExampleService:
    return request.app.state.service
