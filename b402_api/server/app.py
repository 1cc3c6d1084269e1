"""
b402 Payment API Server
FastAPI service that gates POST /process behind a b402 micropayment
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from b402_api import __version__
from b402_api.config import ServerConfig, get_server_config
from b402_api.log import configure_logging
from b402_api.models import (
    Message,
    Part,
    ProcessRequest,
    RequestContext,
    Task,
    TaskState,
    TaskStatus,
    message_text,
)
from b402_api.payments import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    FacilitatorVerifier,
    PaymentGate,
    PaymentOutcome,
    PaymentRecord,
    SimulatedVerifier,
    Verifier,
    encode_payment_response,
    status_code_for,
)
from b402_api.server.dependencies import get_config, get_gate, get_service
from b402_api.service import CompletionProvider, ExampleService

logger = structlog.get_logger()

SERVICE_NAME = "b402-payment-api"
PROCESS_DESCRIPTION = "AI request processing service"
DEFAULT_TEST_TEXT = "Hello, tell me a joke!"


class PromptRequest(BaseModel):
    """Body of POST /test"""
    text: Optional[str] = None


def build_verifier(config: ServerConfig) -> Verifier:
    """Pick the verifier implementation named by VERIFIER_MODE"""
    if config.verifier_mode == "simulated":
        logger.warning("simulated_verifier_enabled", detail="payments are not settled on-chain")
        return SimulatedVerifier()
    return FacilitatorVerifier(
        url=config.resolved_facilitator_url,
        timeout=config.verifier_timeout_seconds,
    )


def payment_metadata(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "b402.payment.payer": record.payer,
        "b402.payment.txHash": record.tx_hash,
        "b402.payment.amount": record.amount,
        "b402.payment.token": record.token,
        "b402.payment.status": "payment-completed",
    }


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def create_app(
    config: Optional[ServerConfig] = None,
    verifier: Optional[Verifier] = None,
    service: Optional[ExampleService] = None,
) -> FastAPI:
    """
    Build the payment-gated API.

    Collaborators not passed in are built from the configuration and closed
    again on shutdown.
    """
    config = config or get_server_config()
    owned: List[Any] = []
    if verifier is None:
        verifier = build_verifier(config)
        owned.append(verifier)
    if service is None:
        service = ExampleService(CompletionProvider.from_config(config))
        owned.append(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the FastAPI app"""
        logger.info(
            "b402_api_starting",
            host=config.host,
            port=config.port,
            pay_to=config.pay_to_address,
            network=config.network,
            price=f"${config.price}",
            token=config.token,
            verifier_mode=config.verifier_mode,
            facilitator=config.resolved_facilitator_url,
            ai_provider=config.ai_provider,
        )
        yield
        for collaborator in owned:
            await collaborator.aclose()
        logger.info("b402_api_shutting_down")

    app = FastAPI(
        title="b402 Payment API",
        description="AI request processing gated by b402 micropayments on BNB Chain",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[X_PAYMENT_RESPONSE_HEADER],
    )

    app.state.config = config
    app.state.gate = PaymentGate.from_config(config, verifier)
    app.state.service = service

    @app.get("/")
    async def root():
        """Root endpoint with basic info"""
        return {
            "name": "b402 Payment API",
            "version": __version__,
            "status": "operational",
            "endpoints": {
                "health": "GET /health",
                "process": "POST /process",
                "test": "POST /test",
            },
        }

    @app.get("/health")
    async def health_check(config: ServerConfig = Depends(get_config)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": __version__,
            "payment": {
                "address": config.pay_to_address,
                "network": config.network,
                "price": f"${config.price}",
                "token": config.token,
            },
        }

    @app.post("/process")
    async def process(
        request: Request,
        body: Optional[ProcessRequest] = None,
        gate: PaymentGate = Depends(get_gate),
        service: ExampleService = Depends(get_service),
    ):
        """
        Process an A2A message once its b402 payment has settled

        Without an X-PAYMENT header the response is the 402 challenge.
        """
        if body is None or body.message is None:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Missing message in request body"},
            )
        if not message_text(body.message):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Message must contain at least one text part"},
            )

        async def run_service(record: PaymentRecord) -> Task:
            metadata = {**(body.metadata or {}), **payment_metadata(record)}
            task_fields: Dict[str, Any] = {"metadata": metadata}
            if body.task_id:
                task_fields["id"] = body.task_id
            if body.context_id:
                task_fields["context_id"] = body.context_id
            task = Task(
                status=TaskStatus(state=TaskState.WORKING, message=body.message),
                **task_fields,
            )
            context = RequestContext(
                task_id=task.id,
                context_id=task.context_id,
                current_task=task,
                message=body.message,
            )
            result = await service.execute(context)
            result.metadata.update(payment_metadata(record))
            return result

        coordinator = gate.coordinator(resource=str(request.url), description=PROCESS_DESCRIPTION)
        outcome = await coordinator.run(
            request.headers.get(X_PAYMENT_HEADER),
            run_service,
            is_disconnected=request.is_disconnected,
        )
        return _process_response(outcome)

    @app.post("/test")
    async def test(request: Request, body: Optional[PromptRequest] = None):
        """Forward a plain text prompt to /process (no payment attached)"""
        text = (body.text if body else None) or DEFAULT_TEST_TEXT
        message = Message(role="user", parts=[Part(kind="text", text=text)])
        transport = httpx.ASGITransport(app=request.app)
        try:
            async with httpx.AsyncClient(transport=transport, base_url=str(request.base_url)) as client:
                response = await client.post("/process", json={"message": _dump(message)})
        except httpx.HTTPError as e:
            logger.error("test_forward_failed", error=str(e))
            return JSONResponse(status_code=500, content={"error": str(e)})
        return JSONResponse(status_code=response.status_code, content=response.json())

    return app


def _process_response(outcome: PaymentOutcome) -> JSONResponse:
    requirement = outcome.requirement.to_wire()

    if outcome.challenged:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"error": "Payment required", "x402": requirement},
        )

    if outcome.rejected:
        return JSONResponse(
            status_code=status_code_for(outcome.error.code),
            content={
                "error": outcome.error.message,
                "reason": outcome.error.code.value,
                "x402": requirement,
            },
        )

    payment = outcome.record.to_wire()
    headers = {X_PAYMENT_RESPONSE_HEADER: encode_payment_response(outcome.record)}

    if not outcome.operation_invoked or outcome.operation_error is not None:
        if outcome.operation_error is None:
            error = "Client disconnected before the request was processed"
        else:
            error = str(outcome.operation_error) or "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": error, "payment": payment},
            headers=headers,
        )

    return JSONResponse(
        content={"success": True, "task": _dump(outcome.result), "payment": payment},
        headers=headers,
    )


def main():
    """Run the server with uvicorn"""
    try:
        config = get_server_config()
    except ValidationError as e:
        configure_logging()
        logger.error(
            "invalid_configuration",
            errors=[f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()],
        )
        raise SystemExit(1)

    configure_logging(config.log_level, config.log_format)
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
