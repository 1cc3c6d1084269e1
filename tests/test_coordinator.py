"""
Tests for the request-scoped payment coordinator
"""

import asyncio
import dataclasses

import httpx
import pytest

from b402_api.payments import (
    PaymentErrorCode,
    PaymentState,
    SettlementResult,
    SimulatedVerifier,
    Verifier,
    encode_payment_header,
)
from tests.factories import PaymentRequirementFactory


class CountingOperation:
    """Protected operation that records how often it ran"""

    def __init__(self, error: Exception = None):
        self.error = error
        self.records = []

    async def __call__(self, record):
        self.records.append(record)
        if self.error is not None:
            raise self.error
        return {"answer": 4}

    @property
    def calls(self):
        return len(self.records)


class CountingVerifier(Verifier):
    def __init__(self, inner: Verifier):
        self.inner = inner
        self.calls = 0

    async def verify_and_settle(self, requirement, payment_payload):
        self.calls += 1
        return await self.inner.verify_and_settle(requirement, payment_payload)


class SlowVerifier(Verifier):
    async def verify_and_settle(self, requirement, payment_payload):
        await asyncio.sleep(5)
        raise AssertionError("should have timed out")


class UnreachableVerifier(Verifier):
    async def verify_and_settle(self, requirement, payment_payload):
        raise httpx.ConnectError("connection refused")


class RejectingVerifier(Verifier):
    async def verify_and_settle(self, requirement, payment_payload):
        return SettlementResult.rejected(PaymentErrorCode.SETTLEMENT_FAILED, "insufficient balance")


class BrokenVerifier(Verifier):
    async def verify_and_settle(self, requirement, payment_payload):
        raise ValueError("unexpected facilitator response")


@pytest.fixture
def counting_verifier():
    return CountingVerifier(SimulatedVerifier())


@pytest.fixture
def counting_gate(gate, counting_verifier):
    return dataclasses.replace(gate, verifier=counting_verifier)


def _paid_header(signer, gate, **kwargs):
    return encode_payment_header(signer.sign(gate.requirement_for(), **kwargs))


class TestPaymentGate:
    """Test requirement construction from configuration"""

    def test_requirement_from_config(self, gate, server_config):
        requirement = gate.requirement_for(resource="http://testserver/process", description="demo")

        assert requirement.network == "bsc-testnet"
        assert requirement.asset == server_config.token_info.address
        assert requirement.pay_to == server_config.pay_to_address
        assert requirement.max_amount_required == "10000000000000000"
        assert requirement.max_timeout_seconds == 300
        assert requirement.relayer_contract == server_config.network_info.relayer_contract
        assert requirement.resource == "http://testserver/process"
        assert requirement.description == "demo"

    def test_each_request_gets_own_coordinator(self, gate):
        assert gate.coordinator() is not gate.coordinator()


class TestPaymentCoordinator:
    """Test the challenge / verify / settle lifecycle"""

    @pytest.mark.asyncio
    async def test_missing_payment_is_challenged(self, counting_gate, counting_verifier):
        """Test an unpaid request never reaches the operation or verifier"""
        operation = CountingOperation()
        coordinator = counting_gate.coordinator()

        outcome = await coordinator.run(None, operation)

        assert outcome.state == PaymentState.CHALLENGED
        assert outcome.challenged
        assert outcome.error.code == PaymentErrorCode.MISSING_PAYMENT
        assert outcome.requirement.pay_to == counting_gate.pay_to
        assert operation.calls == 0
        assert counting_verifier.calls == 0
        assert coordinator.state == PaymentState.CHALLENGED

    @pytest.mark.asyncio
    async def test_valid_payment_runs_operation_once(self, counting_gate, signer, payer_account):
        operation = CountingOperation()
        coordinator = counting_gate.coordinator()

        outcome = await coordinator.run(_paid_header(signer, counting_gate), operation)

        assert outcome.settled
        assert outcome.operation_invoked
        assert outcome.result == {"answer": 4}
        assert outcome.record.payer == payer_account.address
        assert operation.calls == 1
        assert operation.records[0] == outcome.record
        assert coordinator.state == PaymentState.SETTLED

    @pytest.mark.asyncio
    async def test_replayed_nonce_is_rejected(self, counting_gate, signer):
        """Test resubmitting a consumed authorization does not run the operation again"""
        operation = CountingOperation()
        header = _paid_header(signer, counting_gate)

        first = await counting_gate.coordinator().run(header, operation)
        second = await counting_gate.coordinator().run(header, operation)

        assert first.settled
        assert second.rejected
        assert second.error.code == PaymentErrorCode.NONCE_REPLAY
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected_before_settlement(
        self, counting_gate, counting_verifier, signer
    ):
        operation = CountingOperation()
        underpaid = signer.sign(PaymentRequirementFactory(max_amount_required="1"))

        outcome = await counting_gate.coordinator().run(encode_payment_header(underpaid), operation)

        assert outcome.error.code == PaymentErrorCode.AMOUNT_MISMATCH
        assert counting_verifier.calls == 0
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_expired_authorization_rejected(self, counting_gate, counting_verifier, signer):
        operation = CountingOperation()
        header = _paid_header(signer, counting_gate, now=1_600_000_000)

        outcome = await counting_gate.coordinator().run(header, operation)

        assert outcome.error.code == PaymentErrorCode.AUTHORIZATION_EXPIRED
        assert counting_verifier.calls == 0
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_malformed_header_rejected(self, counting_gate):
        operation = CountingOperation()

        outcome = await counting_gate.coordinator().run("definitely-not-a-payment", operation)

        assert outcome.rejected
        assert outcome.error.code == PaymentErrorCode.MALFORMED_PAYLOAD
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_verifier_rejection_is_passed_through(self, gate, signer):
        operation = CountingOperation()
        rejecting_gate = dataclasses.replace(gate, verifier=RejectingVerifier())

        outcome = await rejecting_gate.coordinator().run(_paid_header(signer, gate), operation)

        assert outcome.error.code == PaymentErrorCode.SETTLEMENT_FAILED
        assert outcome.error.message == "insufficient balance"
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_verifier_timeout_is_unreachable(self, gate, signer):
        """Test a hung verifier surfaces as verifier-unreachable"""
        operation = CountingOperation()
        slow_gate = dataclasses.replace(gate, verifier=SlowVerifier(), verifier_timeout_seconds=0.05)

        outcome = await slow_gate.coordinator().run(_paid_header(signer, gate), operation)

        assert outcome.error.code == PaymentErrorCode.VERIFIER_UNREACHABLE
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_verifier_connection_error_is_unreachable(self, gate, signer):
        operation = CountingOperation()
        down_gate = dataclasses.replace(gate, verifier=UnreachableVerifier())

        outcome = await down_gate.coordinator().run(_paid_header(signer, gate), operation)

        assert outcome.error.code == PaymentErrorCode.VERIFIER_UNREACHABLE

    @pytest.mark.asyncio
    async def test_operation_failure_keeps_payment_record(self, counting_gate, signer):
        """Test a settled payment is still reported when the operation fails"""
        operation = CountingOperation(error=RuntimeError("provider down"))

        outcome = await counting_gate.coordinator().run(_paid_header(signer, counting_gate), operation)

        assert outcome.settled
        assert outcome.record is not None
        assert isinstance(outcome.operation_error, RuntimeError)
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_disconnected_client_skips_operation(self, counting_gate, signer):
        operation = CountingOperation()

        async def gone():
            return True

        outcome = await counting_gate.coordinator().run(
            _paid_header(signer, counting_gate), operation, is_disconnected=gone
        )

        assert outcome.settled
        assert not outcome.operation_invoked
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_coordinator_is_single_use(self, counting_gate):
        coordinator = counting_gate.coordinator()
        await coordinator.run(None, CountingOperation())

        with pytest.raises(RuntimeError):
            await coordinator.run(None, CountingOperation())

    @pytest.mark.asyncio
    async def test_verifier_error_is_payment_failure(self, gate, signer):
        """Test an unexpected verifier error is reported as a payment failure"""
        operation = CountingOperation()
        broken_gate = dataclasses.replace(gate, verifier=BrokenVerifier())

        outcome = await broken_gate.coordinator().run(_paid_header(signer, gate), operation)

        assert outcome.rejected
        assert outcome.error.code == PaymentErrorCode.SETTLEMENT_FAILED
        assert "unexpected facilitator response" in outcome.error.message
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_requests_with_one_nonce(self, counting_gate, signer):
        """Test two requests racing on one authorization run the operation once"""
        operation = CountingOperation()
        header = _paid_header(signer, counting_gate)

        outcomes = await asyncio.gather(
            counting_gate.coordinator().run(header, operation),
            counting_gate.coordinator().run(header, operation),
        )

        assert sorted(outcome.state.value for outcome in outcomes) == ["rejected", "settled"]
        rejected = next(outcome for outcome in outcomes if outcome.rejected)
        assert rejected.error.code == PaymentErrorCode.NONCE_REPLAY
        assert operation.calls == 1
