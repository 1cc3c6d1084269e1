"""
Tests for the AI completion provider and the example service
"""

import json

import httpx
import pytest

from b402_api.config import ServerConfig
from b402_api.models import Message, RequestContext, Task, TaskState, TaskStatus
from b402_api.service import CompletionError, CompletionProvider, ExampleService
from b402_api.service.example_service import SYSTEM_PROMPT
from tests.conftest import PAY_TO_ADDRESS
from tests.factories import MessageFactory


class CompletionStub:
    """httpx.MockTransport handler for /chat/completions"""

    def __init__(self, content="  Four.  ", status_code=200, payload=None):
        self.content = content
        self.status_code = status_code
        self.payload = payload
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.payload is not None:
            return httpx.Response(self.status_code, json=self.payload)
        return httpx.Response(
            self.status_code,
            json={"choices": [{"message": {"role": "assistant", "content": self.content}}]},
        )

    @property
    def last_body(self):
        return json.loads(self.requests[-1].content)


def _provider(stub, **kwargs) -> CompletionProvider:
    return CompletionProvider(
        api_key="sk-test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
        **kwargs,
    )


def _context(message: Message) -> RequestContext:
    task = Task(status=TaskStatus(state=TaskState.WORKING, message=message))
    return RequestContext(task_id=task.id, context_id=task.context_id, current_task=task, message=message)


class TestCompletionProvider:
    """Test the OpenAI-compatible completion client"""

    @pytest.mark.asyncio
    async def test_openai_request(self):
        stub = CompletionStub()

        reply = await _provider(stub).complete([{"role": "user", "content": "2+2?"}])

        assert reply == "Four."
        request = stub.requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert stub.last_body == {
            "model": "gpt-4o-mini",
            "messages": [{"role": "user", "content": "2+2?"}],
            "temperature": 0.7,
            "max_tokens": 500,
        }

    @pytest.mark.asyncio
    async def test_eigenai_from_config(self):
        """Test EigenAI gets the x-api-key header and the seed"""
        config = ServerConfig(
            pay_to_address=PAY_TO_ADDRESS,
            ai_provider="eigenai",
            eigenai_api_key="eig-key",
            ai_seed=42,
        )
        stub = CompletionStub()
        provider = CompletionProvider.from_config(
            config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub))
        )

        await provider.complete([{"role": "user", "content": "hi"}])

        request = stub.requests[0]
        assert str(request.url) == "https://eigenai.eigencloud.xyz/v1/chat/completions"
        assert request.headers["x-api-key"] == "eig-key"
        assert "Authorization" not in request.headers
        assert stub.last_body["seed"] == 42
        assert stub.last_body["model"] == "gpt-oss-120b-f16"

    def test_openai_ignores_seed(self, server_config):
        provider = CompletionProvider.from_config(server_config.model_copy(update={"ai_seed": 7}))
        assert provider.seed is None

    @pytest.mark.asyncio
    async def test_http_error(self):
        with pytest.raises(CompletionError):
            await _provider(CompletionStub(status_code=500, payload={"error": "boom"})).complete([])

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        with pytest.raises(CompletionError):
            await _provider(CompletionStub(payload={"choices": []})).complete([])

    @pytest.mark.asyncio
    async def test_empty_completion(self):
        with pytest.raises(CompletionError):
            await _provider(CompletionStub(content="")).complete([])

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = CompletionProvider(
            api_key="sk-test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
        )
        with pytest.raises(CompletionError):
            await provider.complete([])


class TestExampleService:
    """Test the example paid service"""

    @pytest.mark.asyncio
    async def test_execute_completes_task(self):
        stub = CompletionStub(content="Why did the function return? It had closure.")
        service = ExampleService(_provider(stub))
        context = _context(MessageFactory(text="Tell me a joke"))

        task = await service.execute(context)

        assert task.id == context.task_id
        assert task.context_id == context.context_id
        assert task.status.state == TaskState.COMPLETED
        assert task.status.message.role == "agent"
        assert task.status.message.parts[0].text == "Why did the function return? It had closure."
        assert stub.last_body["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "Tell me a joke"},
        ]
        assert context.current_task.status.state == TaskState.WORKING

    @pytest.mark.asyncio
    async def test_execute_requires_text(self):
        service = ExampleService(_provider(CompletionStub()))

        with pytest.raises(ValueError):
            await service.execute(_context(Message(parts=[])))

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self):
        service = ExampleService(_provider(CompletionStub(status_code=429, payload={"error": "rate limited"})))

        with pytest.raises(CompletionError):
            await service.execute(_context(MessageFactory()))
