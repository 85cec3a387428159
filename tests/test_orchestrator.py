"""Tests for the transfer orchestrator."""

import asyncio

import httpx
import pytest

from yieldbridge.attestation.client import AttestationClient, AttestationPending
from yieldbridge.errors import (
    AttestationServiceError,
    AttestationTimeout,
    ChainRPCError,
    ConfirmationTimeout,
    NotFoundError,
    PositionScanIncomplete,
    TerminalExternalError,
    TransactionRejected,
    TransactionReverted,
    ValidationError,
)
from yieldbridge.transfers.orchestrator import NO_POSITION_MESSAGE, DepositRequest
from yieldbridge.transfers.records import Direction, TransferRecord, TransferStatus

from conftest import BURN_TX, MESSAGE, POOL, PROOF, USER, FakeAttestationClient, make_position, ready

ARBITRUM_ID = 42161
BASE_ID = 8453


def tx(n: int) -> str:
    """Hash the fake chain client hands out for its n-th write."""
    return f"0x{n:064x}"


def deposit_request(**overrides) -> DepositRequest:
    values = dict(
        source_chain_id=ARBITRUM_ID,
        dest_chain_id=BASE_ID,
        user_address=USER,
        amount="1000000",
        protocol=1,
        pool_address=POOL,
        source_tx_hash=BURN_TX,
    )
    values.update(overrides)
    return DepositRequest(**values)


def record_statuses(store) -> list[TransferStatus]:
    """Spy on store transitions, collapsing repeats of the same status."""
    seen: list[TransferStatus] = []
    original = store.transition

    async def spy(transfer_id, patch, expected_status=None):
        record = await original(transfer_id, patch, expected_status=expected_status)
        if not seen or seen[-1] != record.status:
            seen.append(record.status)
        return record

    store.transition = spy
    return seen


class TestInitiateDeposit:
    """Deposit registration."""

    @pytest.mark.asyncio
    async def test_creates_pending_record(self, orchestrator, chain_client):
        record = await orchestrator.initiate_deposit(deposit_request())

        assert record.direction == Direction.DEPOSIT
        assert record.status == TransferStatus.PENDING_ATTESTATION
        assert record.source_chain == "arbitrum"
        assert record.dest_chain == "base"
        assert record.source_tx_hash == BURN_TX
        assert record.amount == "1000000"
        # Registration never touches the chain
        assert chain_client.submissions == []

    @pytest.mark.asyncio
    async def test_same_hash_returns_same_record(self, orchestrator, store):
        first = await orchestrator.initiate_deposit(deposit_request())
        second = await orchestrator.initiate_deposit(
            deposit_request(source_tx_hash=BURN_TX.upper().replace("0X", "0x"))
        )
        third = await orchestrator.initiate_deposit(deposit_request(source_tx_hash=BURN_TX[2:]))

        assert first.id == second.id == third.id
        assert len(await store.list_for_user(USER)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"user_address": "0xabc"},
            {"pool_address": "not-an-address"},
            {"source_chain_id": 137},
            {"dest_chain_id": ARBITRUM_ID},
            {"amount": "0"},
            {"amount": "-5"},
            {"amount": "lots"},
            {"protocol": 9},
            {"source_tx_hash": "0x1234"},
            {"source_tx_hash": ""},
            {"opportunity_chain_id": 10},
        ],
    )
    async def test_rejects_bad_input(self, orchestrator, store, overrides):
        with pytest.raises(ValidationError):
            await orchestrator.initiate_deposit(deposit_request(**overrides))

        assert await store.list_for_user(USER) == []

    @pytest.mark.asyncio
    async def test_matching_opportunity_chain_accepted(self, orchestrator):
        record = await orchestrator.initiate_deposit(deposit_request(opportunity_chain_id=BASE_ID))
        assert record.dest_chain == "base"


class TestDepositResume:
    """Deposit settlement through resume."""

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, chain_client, attestation):
        record = await orchestrator.initiate_deposit(deposit_request())

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert done.dest_tx_hash == tx(1)
        assert done.pending_tx_hash is None
        assert done.attestation_message == "0x" + MESSAGE.hex()
        assert done.attestation_proof == "0x" + PROOF.hex()
        assert chain_client.submissions == [("processDeposit", "base")]
        assert attestation.calls == [(BURN_TX, "arbitrum")]

    @pytest.mark.asyncio
    async def test_never_skips_attestation_received(self, orchestrator, store):
        record = await orchestrator.initiate_deposit(deposit_request())
        seen = record_statuses(store)

        await orchestrator.resume(record.id)

        assert seen == [
            TransferStatus.ATTESTATION_RECEIVED,
            TransferStatus.PROCESSING_DEPOSIT,
            TransferStatus.DEPOSIT_CONFIRMED,
            TransferStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_completed_resume_is_noop(self, orchestrator, chain_client, attestation):
        record = await orchestrator.initiate_deposit(deposit_request())
        await orchestrator.resume(record.id)

        again = await orchestrator.resume(record.id)

        assert again.status == TransferStatus.COMPLETED
        assert len(chain_client.submissions) == 1
        assert len(attestation.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_id(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.resume("does-not-exist")

    @pytest.mark.asyncio
    async def test_attestation_timeout_leaves_record(self, orchestrator, store, chain_client):
        orchestrator.attestation = FakeAttestationClient(AttestationPending())
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(AttestationTimeout):
            await orchestrator.resume(record.id)

        current = await store.get(record.id)
        assert current.status == TransferStatus.PENDING_ATTESTATION
        assert current.error_message is None
        assert len(orchestrator.attestation.calls) == 3
        assert chain_client.submissions == []

    @pytest.mark.asyncio
    async def test_max_attempts_override(self, orchestrator):
        orchestrator.attestation = FakeAttestationClient(AttestationPending())
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(AttestationTimeout):
            await orchestrator.resume(record.id, max_attempts=1)

        assert len(orchestrator.attestation.calls) == 1

    @pytest.mark.asyncio
    async def test_service_errors_are_retried_within_loop(self, orchestrator):
        orchestrator.attestation = FakeAttestationClient(
            AttestationServiceError("HTTP 503"), AttestationPending(), ready()
        )
        record = await orchestrator.initiate_deposit(deposit_request())

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_rejected_attestation_request_fails_record(self, orchestrator, store, chain_client):
        orchestrator.attestation = FakeAttestationClient(
            TerminalExternalError("Attestation service rejected request: HTTP 400")
        )
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(TerminalExternalError):
            await orchestrator.resume(record.id)

        failed = await store.get(record.id)
        assert failed.status == TransferStatus.FAILED
        assert "HTTP 400" in failed.error_message
        assert chain_client.submissions == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [0, -1])
    async def test_max_attempts_below_one_rejected(self, orchestrator, store, max_attempts):
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(ValidationError):
            await orchestrator.resume(record.id, max_attempts=max_attempts)

        assert (await store.get(record.id)).status == TransferStatus.PENDING_ATTESTATION
        assert orchestrator.attestation.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_resumes_submit_once(self, orchestrator, store, chain_client):
        record = await orchestrator.initiate_deposit(deposit_request())

        await asyncio.gather(
            orchestrator.resume(record.id),
            orchestrator.resume(record.id),
            orchestrator.resume(record.id),
            return_exceptions=True,
        )

        assert chain_client.methods() == ["processDeposit"]
        assert (await store.get(record.id)).status == TransferStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_confirmation_timeout_then_resume(self, orchestrator, store, chain_client):
        chain_client.unconfirmed.add(tx(1))
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(ConfirmationTimeout):
            await orchestrator.resume(record.id)

        stuck = await store.get(record.id)
        assert stuck.status == TransferStatus.PROCESSING_DEPOSIT
        assert stuck.pending_tx_hash == tx(1)
        assert stuck.dest_tx_hash is None

        chain_client.unconfirmed.clear()
        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert done.dest_tx_hash == tx(1)
        # Waited on the broadcast tx instead of sending a second one
        assert chain_client.methods() == ["processDeposit"]

    @pytest.mark.asyncio
    async def test_reverted_tx_fails_record(self, orchestrator, store, chain_client):
        chain_client.reverted.add(tx(1))
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(TransactionReverted):
            await orchestrator.resume(record.id)

        failed = await store.get(record.id)
        assert failed.status == TransferStatus.FAILED
        assert "reverted" in failed.error_message
        # Evidence gathered before the failure is kept
        assert failed.attestation_message is not None

    @pytest.mark.asyncio
    async def test_rejected_submission_fails_record(self, orchestrator, store, chain_client):
        chain_client.reject_with = TransactionRejected("execution reverted: bad attestation")
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(TransactionRejected):
            await orchestrator.resume(record.id)

        failed = await store.get(record.id)
        assert failed.status == TransferStatus.FAILED
        assert "bad attestation" in failed.error_message

    @pytest.mark.asyncio
    async def test_rpc_failure_before_broadcast_is_retried(self, orchestrator, store, chain_client):
        chain_client.reject_with = ChainRPCError("eth_gasPrice on base failed")
        record = await orchestrator.initiate_deposit(deposit_request())

        with pytest.raises(ChainRPCError):
            await orchestrator.resume(record.id)

        waiting = await store.get(record.id)
        assert waiting.status == TransferStatus.ATTESTATION_RECEIVED
        assert waiting.pending_tx_hash is None
        assert [r.id for r in await store.list_awaiting_submission()] == [record.id]
        assert chain_client.submissions == []

        chain_client.reject_with = None
        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert done.dest_tx_hash == tx(1)
        assert chain_client.methods() == ["processDeposit"]
        assert await store.list_awaiting_submission() == []

    @pytest.mark.asyncio
    async def test_failed_record_is_not_resumed(self, orchestrator, store, chain_client):
        orchestrator.attestation = FakeAttestationClient(TerminalExternalError("gone"))
        record = await orchestrator.initiate_deposit(deposit_request())
        with pytest.raises(TerminalExternalError):
            await orchestrator.resume(record.id)

        orchestrator.attestation = FakeAttestationClient(ready())
        again = await orchestrator.resume(record.id)

        assert again.status == TransferStatus.FAILED
        assert orchestrator.attestation.calls == []


class TestWithdraw:
    """Withdraw initiation and settlement."""

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, chain_client):
        chain_client.set_position("base", USER, make_position(pool_id=2))

        record = await orchestrator.initiate_withdraw(USER)

        assert record.status == TransferStatus.PENDING_ATTESTATION
        assert record.source_chain == "base"
        assert record.dest_chain == "world"
        assert record.source_tx_hash == tx(1)
        assert record.position == make_position(pool_id=2)
        assert chain_client.submissions == [("initWithdraw", "base")]

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert done.dest_tx_hash == tx(2)
        assert chain_client.submissions == [("initWithdraw", "base"), ("processWithdraw", "world")]

    @pytest.mark.asyncio
    async def test_attestation_polled_on_position_chain(self, orchestrator, chain_client, attestation):
        chain_client.set_position("optimism", USER, make_position())

        record = await orchestrator.initiate_withdraw(USER)
        await orchestrator.resume(record.id)

        assert attestation.calls == [(tx(1), "optimism")]

    @pytest.mark.asyncio
    async def test_statuses_follow_withdraw_flow(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        seen = record_statuses(store)

        record = await orchestrator.initiate_withdraw(USER)
        await orchestrator.resume(record.id)

        assert seen == [
            TransferStatus.POSITION_FOUND,
            TransferStatus.INITIATING_WITHDRAW,
            TransferStatus.WITHDRAW_INITIATED,
            TransferStatus.PENDING_ATTESTATION,
            TransferStatus.ATTESTATION_RECEIVED,
            TransferStatus.PROCESSING_WITHDRAW,
            TransferStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_no_position_records_failure(self, orchestrator, store, chain_client):
        with pytest.raises(NotFoundError, match=NO_POSITION_MESSAGE):
            await orchestrator.initiate_withdraw(USER)

        [record] = await store.list_for_user(USER, Direction.WITHDRAW)
        assert record.status == TransferStatus.FAILED
        assert record.error_message == NO_POSITION_MESSAGE
        assert record.position is not None
        assert record.position.pool_id == 0
        assert chain_client.submissions == []

    @pytest.mark.asyncio
    async def test_incomplete_scan_creates_nothing(self, orchestrator, store, chain_client):
        chain_client.unreachable.add("ethereum")

        with pytest.raises(PositionScanIncomplete):
            await orchestrator.initiate_withdraw(USER)

        assert await store.list_for_user(USER) == []

    @pytest.mark.asyncio
    async def test_malformed_address(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.initiate_withdraw("0xabc")

    @pytest.mark.asyncio
    async def test_active_withdraw_returned(self, orchestrator, chain_client):
        chain_client.set_position("base", USER, make_position())

        first = await orchestrator.initiate_withdraw(USER)
        second = await orchestrator.initiate_withdraw(USER)

        assert second.id == first.id
        assert chain_client.methods() == ["initWithdraw"]

    @pytest.mark.asyncio
    async def test_concurrent_initiations_send_one_tx(self, orchestrator, chain_client):
        chain_client.set_position("base", USER, make_position())

        results = await asyncio.gather(
            orchestrator.initiate_withdraw(USER),
            orchestrator.initiate_withdraw(USER.upper().replace("0X", "0x")),
        )

        assert results[0].id == results[1].id
        assert chain_client.methods() == ["initWithdraw"]

    @pytest.mark.asyncio
    async def test_init_confirmation_timeout_returns_record(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        chain_client.unconfirmed.add(tx(1))

        record = await orchestrator.initiate_withdraw(USER)

        assert record.status == TransferStatus.INITIATING_WITHDRAW
        assert record.pending_tx_hash == tx(1)
        assert record.source_tx_hash is None

        chain_client.unconfirmed.clear()
        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert done.source_tx_hash == tx(1)
        assert chain_client.methods() == ["initWithdraw", "processWithdraw"]

    @pytest.mark.asyncio
    async def test_init_revert_fails_record(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        chain_client.reverted.add(tx(1))

        with pytest.raises(TransactionReverted):
            await orchestrator.initiate_withdraw(USER)

        [record] = await store.list_for_user(USER, Direction.WITHDRAW)
        assert record.status == TransferStatus.FAILED
        # A failed withdraw does not block a new one
        assert await store.get_active_for_user(USER, Direction.WITHDRAW) is None

    @pytest.mark.asyncio
    async def test_init_rpc_failure_retried_on_reinitiate(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        chain_client.reject_with = ChainRPCError("eth_getTransactionCount on base failed")

        with pytest.raises(ChainRPCError):
            await orchestrator.initiate_withdraw(USER)

        [stalled] = await store.list_for_user(USER, Direction.WITHDRAW)
        assert stalled.status == TransferStatus.POSITION_FOUND
        assert stalled.pending_tx_hash is None
        assert chain_client.submissions == []

        chain_client.reject_with = None
        again = await orchestrator.initiate_withdraw(USER)

        assert again.id == stalled.id
        assert again.status == TransferStatus.PENDING_ATTESTATION
        assert again.source_tx_hash == tx(1)
        assert chain_client.methods() == ["initWithdraw"]

    @pytest.mark.asyncio
    async def test_init_rpc_failure_retried_on_resume(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        chain_client.reject_with = ChainRPCError("eth_gasPrice on base failed")
        with pytest.raises(ChainRPCError):
            await orchestrator.initiate_withdraw(USER)
        [stalled] = await store.list_for_user(USER, Direction.WITHDRAW)
        assert [r.id for r in await store.list_awaiting_submission()] == [stalled.id]

        chain_client.reject_with = None
        done = await orchestrator.resume(stalled.id)

        assert done.status == TransferStatus.COMPLETED
        assert chain_client.methods() == ["initWithdraw", "processWithdraw"]

    @pytest.mark.asyncio
    async def test_settlement_rpc_failure_is_retried(self, orchestrator, store, chain_client):
        chain_client.set_position("base", USER, make_position())
        record = await orchestrator.initiate_withdraw(USER)

        chain_client.reject_with = ChainRPCError("eth_estimateGas on world timed out")
        with pytest.raises(ChainRPCError):
            await orchestrator.resume(record.id)

        assert (await store.get(record.id)).status == TransferStatus.ATTESTATION_RECEIVED

        chain_client.reject_with = None
        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert chain_client.methods() == ["initWithdraw", "processWithdraw"]

    @pytest.mark.asyncio
    async def test_unindexed_burn_keeps_withdraw_pending(
        self, orchestrator, store, chain_client, registry
    ):
        chain_client.set_position("arbitrum", USER, make_position())
        polls = []

        def iris(request: httpx.Request) -> httpx.Response:
            polls.append(request)
            if len(polls) <= 3:
                return httpx.Response(404, json={"error": "Message not found"})
            message = {
                "status": "complete",
                "message": "0x" + MESSAGE.hex(),
                "attestation": "0x" + PROOF.hex(),
            }
            return httpx.Response(200, json={"messages": [message]})

        http = httpx.AsyncClient(transport=httpx.MockTransport(iris))
        orchestrator.attestation = AttestationClient(registry, "https://iris.test", http_client=http)
        record = await orchestrator.initiate_withdraw(USER)

        with pytest.raises(AttestationTimeout):
            await orchestrator.resume(record.id)

        # Burned on chain, not yet indexed: still waiting, not failed
        waiting = await store.get(record.id)
        assert waiting.status == TransferStatus.PENDING_ATTESTATION
        assert waiting.error_message is None

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert chain_client.methods() == ["initWithdraw", "processWithdraw"]


class TestRecovery:
    """Records left behind by a process that died mid-initiation."""

    @pytest.mark.asyncio
    async def test_position_found_is_submitted(self, orchestrator, store, chain_client):
        record = await store.create(TransferRecord.new(Direction.WITHDRAW, USER, dest_chain="world"))
        await store.transition(
            record.id,
            {
                "status": TransferStatus.POSITION_FOUND,
                "position": make_position(),
                "source_chain": "arbitrum",
            },
        )

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert chain_client.submissions == [("initWithdraw", "arbitrum"), ("processWithdraw", "world")]

    @pytest.mark.asyncio
    async def test_checking_position_is_failed(self, orchestrator, store, chain_client):
        record = await store.create(TransferRecord.new(Direction.WITHDRAW, USER, dest_chain="world"))

        result = await orchestrator.resume(record.id)

        assert result.status == TransferStatus.FAILED
        assert "interrupted" in result.error_message
        assert chain_client.submissions == []

    @pytest.mark.asyncio
    async def test_attestation_received_is_claimed(self, orchestrator, store, chain_client):
        record = await orchestrator.initiate_deposit(deposit_request())
        await store.transition(
            record.id,
            {
                "status": TransferStatus.ATTESTATION_RECEIVED,
                "attestation_message": "0x" + MESSAGE.hex(),
                "attestation_proof": "0x" + PROOF.hex(),
            },
        )

        done = await orchestrator.resume(record.id)

        assert done.status == TransferStatus.COMPLETED
        assert orchestrator.attestation.calls == []


class TestBackground:
    """Fire-and-forget resumption."""

    @pytest.mark.asyncio
    async def test_spawn_resume_dedupes(self, orchestrator, store):
        record = await orchestrator.initiate_deposit(deposit_request())

        first = orchestrator.spawn_resume(record.id)
        second = orchestrator.spawn_resume(record.id)
        assert first is second
        assert orchestrator.in_flight == 1

        result = await first
        await asyncio.sleep(0)

        assert result.status == TransferStatus.COMPLETED
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_spawned_failure_is_contained(self, orchestrator, store):
        orchestrator.attestation = FakeAttestationClient(AttestationPending())
        record = await orchestrator.initiate_deposit(deposit_request())

        task = orchestrator.spawn_resume(record.id)
        with pytest.raises(AttestationTimeout):
            await task

        assert (await store.get(record.id)).status == TransferStatus.PENDING_ATTESTATION

    @pytest.mark.asyncio
    async def test_shutdown_cancels_tasks(self, orchestrator):
        orchestrator.attestation = FakeAttestationClient(AttestationPending())
        orchestrator.poll_delay = 10
        record = await orchestrator.initiate_deposit(deposit_request())

        task = orchestrator.spawn_resume(record.id)
        await asyncio.sleep(0)
        await orchestrator.shutdown()

        assert task.cancelled()
        assert orchestrator.in_flight == 0
