"""
b402 Test Client
Command-line client that walks the 402 challenge, signs a payment and
resubmits the request
"""

import asyncio
import sys
from typing import Any, Dict, Optional

import httpx
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from b402_api.config import get_client_config
from b402_api.log import configure_logging
from b402_api.models import Message, Part
from b402_api.payments import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentRecord,
    PaymentRequirement,
    PaymentSigner,
    decode_payment_response,
    encode_payment_header,
)
from b402_api.payments.networks import (
    explorer_tx_url,
    from_base_units,
    get_network,
    get_token,
    token_symbol_for,
)

logger = structlog.get_logger()
console = Console()


class PaymentClient:
    """
    Client for a b402-protected API:
    1. Sending a request and receiving the 402 challenge
    2. Signing the payment authorization it asks for
    3. Resubmitting the request with the X-PAYMENT header
    """

    def __init__(
        self,
        agent_url: str,
        signer: Optional[PaymentSigner] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.agent_url = agent_url.rstrip("/")
        self.signer = signer
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self.last_payment_response: Optional[PaymentRecord] = None

    @staticmethod
    def _message_body(text: str) -> Dict[str, Any]:
        message = Message(role="user", parts=[Part(kind="text", text=text)])
        return {"message": message.model_dump(mode="json", by_alias=True, exclude_none=True)}

    async def check_health(self) -> Dict[str, Any]:
        """Fetch the server's health and payment terms"""
        response = await self.client.get(f"{self.agent_url}/health")
        response.raise_for_status()
        return response.json()

    async def send_request(self, text: str) -> Dict[str, Any]:
        """Send an unpaid request; a 402 comes back as {error, x402}"""
        logger.info("request_sending", url=f"{self.agent_url}/process", chars=len(text))
        response = await self.client.post(f"{self.agent_url}/process", json=self._message_body(text))
        data = response.json()

        if response.status_code == 402:
            logger.info("payment_required")
            return {"error": "Payment Required", "x402": data.get("x402", data)}
        return data

    async def send_paid_request(self, text: str) -> Dict[str, Any]:
        """Answer the 402 challenge for this request with a signed payment"""
        if self.signer is None:
            raise ValueError("Client wallet not configured. Set CLIENT_PRIVATE_KEY in .env")

        initial = await self.send_request(text)
        if "x402" not in initial:
            logger.warning("request_processed_without_payment")
            return initial

        requirement = PaymentRequirement.model_validate(initial["x402"])
        payment_payload = self.signer.sign(requirement)

        response = await self.client.post(
            f"{self.agent_url}/process",
            json=self._message_body(text),
            headers={X_PAYMENT_HEADER: encode_payment_header(payment_payload)},
        )
        data = response.json()

        encoded_receipt = response.headers.get(X_PAYMENT_RESPONSE_HEADER)
        self.last_payment_response = decode_payment_response(encoded_receipt) if encoded_receipt else None

        if response.is_success:
            logger.info("paid_request_accepted", tx_hash=(data.get("payment") or {}).get("txHash"))
        else:
            logger.warning(
                "paid_request_failed",
                status_code=response.status_code,
                reason=data.get("reason"),
                error=data.get("error"),
            )
        return data

    async def aclose(self):
        """Close the HTTP client"""
        if self._owns_client:
            await self.client.aclose()


def reply_text(data: Dict[str, Any]) -> str:
    """Text parts of the agent reply inside a /process response"""
    message = ((data.get("task") or {}).get("status") or {}).get("message") or {}
    return " ".join(
        part.get("text", "")
        for part in message.get("parts", [])
        if part.get("kind") == "text"
    )


def display_health(data: Dict[str, Any]):
    """Display server health and payment terms"""
    payment = data.get("payment", {})
    table = Table(title="Agent Health", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Status", f"[green]{data.get('status')}[/green]")
    table.add_row("Service", str(data.get("service")))
    table.add_row("Payment address", str(payment.get("address")))
    table.add_row("Network", str(payment.get("network")))
    table.add_row("Price", f"{payment.get('price')} {payment.get('token')}")
    console.print(table)


def display_requirement(requirement: Dict[str, Any]):
    """Display the payment terms from a 402 challenge"""
    network = requirement.get("network", "")
    asset = requirement.get("asset", "")
    amount = requirement.get("maxAmountRequired", "0")
    console.print("\n[bold yellow]Payment required[/bold yellow]")
    console.print(f"Amount: {from_base_units(amount)} {token_symbol_for(network, asset) if network else asset}")
    console.print(f"Pay to: {requirement.get('payTo')}")
    console.print(f"Token: {asset}")
    console.print(f"Network: {network}")


def display_result(data: Dict[str, Any]):
    """Display the AI reply and payment details of a paid request"""
    payment = data.get("payment") or {}

    if data.get("success"):
        console.print(Panel(reply_text(data) or "(empty reply)", title="Response from AI", border_style="green"))
    else:
        reason = f" ({data['reason']})" if data.get("reason") else ""
        console.print(f"[red]Request failed{reason}: {data.get('error', 'Unknown error')}[/red]")

    if payment.get("txHash"):
        console.print(f"Payer: {payment.get('payer')}")
        console.print(f"Amount: {from_base_units(payment.get('amount', '0'))} {payment.get('token')}")
        console.print(f"Transaction: {payment['txHash']}")
        if payment.get("network"):
            console.print(f"Explorer: {explorer_tx_url(payment['network'], payment['txHash'])}")


async def run_demo(client: PaymentClient, network: str, token: str):
    """Health check, then an unpaid and (if a wallet is configured) a paid request"""
    console.print("[bold cyan]b402 AI Agent Test Client[/bold cyan]\n")
    display_health(await client.check_health())

    console.print("\n[bold]TEST 1: Request without payment[/bold]")
    response = await client.send_request("What is 2+2?")
    if "x402" in response:
        console.print("[green]Correctly received payment requirement[/green]")
        display_requirement(response["x402"])
    else:
        console.print("[red]Expected payment requirement[/red]")

    console.print("\n[bold]TEST 2: Request with payment[/bold]")
    if client.signer is None:
        console.print("[yellow]Skipped (no CLIENT_PRIVATE_KEY configured)[/yellow]")
        console.print(f"This wallet needs {token} tokens on {network}")
        return

    display_result(await client.send_paid_request("Tell me a joke about Python!"))


async def show_balance(signer: PaymentSigner, network: str, token: str):
    token_info = get_token(network, token)
    balance = await asyncio.to_thread(signer.token_balance, token_info.address, token_info.decimals)
    console.print(f"Wallet: {signer.address}")
    console.print(f"Balance: {balance} {token_info.symbol} ({get_network(network).network_id})")


async def main():
    """Main entry point for the test client"""
    configure_logging()

    config = get_client_config()
    signer = (
        PaymentSigner(config.client_private_key, rpc_url=config.resolved_rpc_url)
        if config.client_private_key
        else None
    )
    client = PaymentClient(config.agent_url, signer=signer, timeout=config.request_timeout_seconds)

    command = sys.argv[1] if len(sys.argv) > 1 else "demo"
    text = " ".join(sys.argv[2:])

    try:
        if command == "health":
            display_health(await client.check_health())

        elif command == "ask" and text:
            response = await client.send_request(text)
            if "x402" in response:
                display_requirement(response["x402"])
            else:
                display_result(response)

        elif command == "pay" and text:
            display_result(await client.send_paid_request(text))

        elif command == "balance" and signer is not None:
            await show_balance(signer, config.network, config.token)

        elif command == "demo":
            await run_demo(client, config.network, config.token)

        else:
            console.print("[red]Invalid command[/red]")
            console.print(
                "Usage: python -m b402_api.client.cli [health|ask <text>|pay <text>|balance|demo]"
            )

    except (httpx.HTTPError, ValueError) as e:
        logger.error("client_command_failed", command=command, error=str(e))
        console.print(f"[red]Error: {e}[/red]")

    finally:
        await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
