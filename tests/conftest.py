"""
Pytest configuration and shared fixtures
"""

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from b402_api import config as config_module
from b402_api.config import ServerConfig
from b402_api.models import RequestContext, Task, TaskState, TaskStatus, agent_text_message
from b402_api.payments import PaymentGate, PaymentSigner, SimulatedVerifier
from b402_api.server import create_app

PAYER_KEY = "0xabcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890"
PAY_TO_ADDRESS = "0x742d35cC6634c0532925A3b844bc9E7595F0beB1"

_CONFIG_ENV_VARS = (
    "HOST",
    "PORT",
    "PAY_TO_ADDRESS",
    "NETWORK",
    "PRICE",
    "TOKEN",
    "MAX_TIMEOUT_SECONDS",
    "FACILITATOR_URL",
    "VERIFIER_MODE",
    "VERIFIER_TIMEOUT_SECONDS",
    "AI_PROVIDER",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "EIGENAI_API_KEY",
    "EIGENAI_BASE_URL",
    "AI_MODEL",
    "AI_SEED",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "AGENT_URL",
    "CLIENT_PRIVATE_KEY",
    "RPC_URL",
)


class FakeService:
    """Stand-in for ExampleService that records every call"""

    def __init__(self, reply: str = "4", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def execute(self, context: RequestContext) -> Task:
        self.calls.append(context)
        if self.error is not None:
            raise self.error
        task = context.current_task.model_copy(deep=True)
        task.status = TaskStatus(
            state=TaskState.COMPLETED,
            message=agent_text_message(self.reply, task_id=task.id, context_id=task.context_id),
        )
        return task

    async def aclose(self):
        pass


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep host env vars, .env files and cached config out of tests"""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_server_config", None)
    monkeypatch.setattr(config_module, "_client_config", None)


@pytest.fixture
def payer_account():
    """Test payer account"""
    return Account.from_key(PAYER_KEY)


@pytest.fixture
def signer() -> PaymentSigner:
    """Signer for the test payer account"""
    return PaymentSigner(PAYER_KEY)


@pytest.fixture
def server_config() -> ServerConfig:
    """Testnet configuration charging 0.01 USDT per request"""
    return ServerConfig(
        pay_to_address=PAY_TO_ADDRESS,
        network="testnet",
        token="USDT",
        price="0.01",
        openai_api_key="sk-test",
        verifier_mode="simulated",
    )


@pytest.fixture
def verifier() -> SimulatedVerifier:
    return SimulatedVerifier()


@pytest.fixture
def gate(server_config, verifier) -> PaymentGate:
    return PaymentGate.from_config(server_config, verifier)


@pytest.fixture
def requirement(gate):
    """Requirement issued for POST /process"""
    return gate.requirement_for(resource="http://testserver/process", description="AI request processing service")


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def client(server_config, verifier, fake_service):
    """FastAPI test client with the simulated verifier and a fake service"""
    app = create_app(server_config, verifier=verifier, service=fake_service)
    with TestClient(app) as test_client:
        yield test_client
