"""
Test suite for banksim_core.harness — the helpers test bodies call.

Covers:
  - start_test bootstrap (root funded, program artifact required)
  - transfer_sol / create_users_and_fund
  - expect_throws_async matching rules
  - setup_test_context balances on both token programs
  - random_int, warp_slot_by, _join cancellation
"""

import asyncio
import os

import pytest
from solders.account import Account
from solders.keypair import Keypair
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from banksim_core.constants import CP_AMM_PROGRAM_ID, LAMPORTS_PER_SOL, LOCAL_ADMIN_ADDRESS
from banksim_core.errors import BanksTransactionError, ProgramLoadError
from banksim_core.harness import (
    LOCAL_ADMIN_KEYPAIR,
    HarnessAssertionError,
    TestContext,
    _join,
    create_users_and_fund,
    expect_throws_async,
    process_transaction_maybe_throw,
    random_int,
    root_keypair,
    setup_test_context,
    start_test,
    transfer_sol,
    warp_slot_by,
)
from banksim_core.token import get_mint, get_token_balance

RAW_AMOUNT = 1_000_000 * 10 ** 6


# ═══════════════════════════════════════════════════════════════════
#  Bootstrap
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestStartTest:

    async def test_root_is_funded(self, context):
        balance = await context.banks_client.get_balance(LOCAL_ADMIN_KEYPAIR.pubkey())
        assert balance == 100 * LAMPORTS_PER_SOL

    async def test_root_address(self):
        assert str(LOCAL_ADMIN_KEYPAIR.pubkey()) == LOCAL_ADMIN_ADDRESS
        assert root_keypair() is LOCAL_ADMIN_KEYPAIR

    async def test_configured_root(self, cfg):
        other = Keypair()
        cfg.fixture.root_secret_key = list(bytes(other))
        context = await start_test(cfg, programs=())
        assert await context.banks_client.get_balance(other.pubkey()) == cfg.fixture.root_lamports
        assert await context.banks_client.get_balance(LOCAL_ADMIN_KEYPAIR.pubkey()) == 0

    async def test_mismatched_root_secret(self, cfg):
        cfg.fixture.root_secret_key = list(LOCAL_ADMIN_KEYPAIR.secret() + bytes(Keypair().pubkey()))
        with pytest.raises(ValueError, match="secretKey is invalid"):
            root_keypair(cfg)

    async def test_missing_program_file(self, cfg, tmp_path):
        cfg.program.fixtures_dir = str(tmp_path)
        cfg.program.anchor_root = str(tmp_path)
        with pytest.raises(ProgramLoadError, match="cp_amm.so not found"):
            await start_test(cfg)

    async def test_outside_the_workspace(self, cfg, tmp_path):
        (tmp_path / "Anchor.toml").write_text("[programs.localnet]\n")
        nested = tmp_path / "tests" / "unit"
        nested.mkdir(parents=True)
        cfg.program.anchor_root = None
        cfg.program.fixtures_dir = "tests/fixtures"
        previous = os.getcwd()
        os.chdir(nested)
        try:
            with pytest.raises(ProgramLoadError) as info:
                await start_test(cfg)
        finally:
            os.chdir(previous)
        assert str(tmp_path.resolve() / "target" / "deploy") in str(info.value)
        assert str(tmp_path.resolve() / "tests" / "fixtures") in str(info.value)

    async def test_program_under_test_is_loaded(self, program_context):
        account = await program_context.banks_client.get_account(CP_AMM_PROGRAM_ID)
        assert account is not None
        assert account.executable


# ═══════════════════════════════════════════════════════════════════
#  Funding
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestFunding:

    async def test_transfer_sol(self, context):
        bc = context.banks_client
        to = Keypair().pubkey()
        await transfer_sol(bc, LOCAL_ADMIN_KEYPAIR, to, 12_345)
        assert await bc.get_balance(to) == 12_345

    async def test_transfer_sol_insufficient(self, context):
        poor = Keypair()
        with pytest.raises(BanksTransactionError):
            await transfer_sol(context.banks_client, poor, LOCAL_ADMIN_KEYPAIR.pubkey(), 1)

    async def test_create_users_and_fund_default(self, context):
        bc = context.banks_client
        user = await create_users_and_fund(bc, context.payer)
        assert await bc.get_balance(user.pubkey()) >= LAMPORTS_PER_SOL

    async def test_create_users_and_fund_given_user(self, context):
        bc = context.banks_client
        user = Keypair()
        returned = await create_users_and_fund(bc, context.payer, user, 3 * LAMPORTS_PER_SOL)
        assert returned is user
        assert await bc.get_balance(user.pubkey()) == 3 * LAMPORTS_PER_SOL

    async def test_funding_same_user_twice_needs_a_warp(self, context):
        bc = context.banks_client
        user = Keypair()
        await create_users_and_fund(bc, context.payer, user)
        with pytest.raises(BanksTransactionError, match="(?i)already"):
            await create_users_and_fund(bc, context.payer, user)
        await warp_slot_by(context, 1)
        await create_users_and_fund(bc, context.payer, user)
        assert await bc.get_balance(user.pubkey()) == 2 * LAMPORTS_PER_SOL

    async def test_overspend_after_funding(self, context):
        bc = context.banks_client
        user = await create_users_and_fund(bc, context.payer)
        await expect_throws_async(
            lambda: transfer_sol(bc, user, context.payer.pubkey(), 2 * LAMPORTS_PER_SOL),
            "insufficient lamports",
        )
        assert await bc.get_balance(user.pubkey()) == LAMPORTS_PER_SOL

    async def test_process_transaction_maybe_throw(self, context):
        bc = context.banks_client
        poor = Keypair()
        context.set_account(poor.pubkey(), Account(lamports=10_000, data=b"", owner=SYSTEM_PROGRAM_ID))
        blockhash, _ = await bc.get_latest_blockhash()
        tx = Transaction.new_signed_with_payer(
            [transfer(TransferParams(from_pubkey=poor.pubkey(), to_pubkey=context.payer.pubkey(), lamports=LAMPORTS_PER_SOL))],
            poor.pubkey(),
            [poor],
            blockhash,
        )
        with pytest.raises(BanksTransactionError, match="custom program error: 0x1"):
            await process_transaction_maybe_throw(bc, tx)

        ok = Transaction.new_signed_with_payer(
            [transfer(TransferParams(from_pubkey=context.payer.pubkey(), to_pubkey=poor.pubkey(), lamports=1))],
            context.payer.pubkey(),
            [context.payer],
            blockhash,
        )
        await process_transaction_maybe_throw(bc, ok)
        assert await bc.get_balance(poor.pubkey()) == 10_001


# ═══════════════════════════════════════════════════════════════════
#  expect_throws_async
# ═══════════════════════════════════════════════════════════════════

async def _fail():
    raise RuntimeError("Foo bar baz")


async def _succeed():
    return 1


@pytest.mark.asyncio
class TestExpectThrows:

    async def test_substring_match(self):
        await expect_throws_async(_fail, "bar")

    async def test_case_insensitive(self):
        await expect_throws_async(_fail, "FOO BAR")

    async def test_mismatch_names_both(self):
        with pytest.raises(HarnessAssertionError) as info:
            await expect_throws_async(_fail, "qux")
        message = str(info.value)
        assert "Foo bar baz" in message
        assert "qux" in message
        assert isinstance(info.value.__cause__, RuntimeError)

    async def test_no_error(self):
        with pytest.raises(HarnessAssertionError, match="Expected an error but didn't get one"):
            await expect_throws_async(_succeed, "anything")

    async def test_is_an_assertion_error(self):
        with pytest.raises(AssertionError):
            await expect_throws_async(_succeed, "anything")

    async def test_cancellation_propagates(self):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await expect_throws_async(cancelled, "cancel")


# ═══════════════════════════════════════════════════════════════════
#  setup_test_context
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestSetupTestContext:

    async def test_actor_native_balances(self, context, test_context):
        bc = context.banks_client
        for actor in (test_context.admin, test_context.payer, test_context.user, test_context.funder):
            assert await bc.get_balance(actor.pubkey()) >= LAMPORTS_PER_SOL
        assert await bc.get_balance(test_context.pool_creator.pubkey()) == 0

    async def test_token_a_and_b(self, context, test_context):
        bc = context.banks_client
        for mint in (test_context.token_a_mint, test_context.token_b_mint):
            assert await get_token_balance(bc, test_context.payer.pubkey(), mint) == RAW_AMOUNT
            assert await get_token_balance(bc, test_context.user.pubkey(), mint) == RAW_AMOUNT
            assert await get_token_balance(bc, test_context.funder.pubkey(), mint) == 0
            assert (await get_mint(bc, mint)).supply == 2 * RAW_AMOUNT

    async def test_reward_token(self, context, test_context):
        bc = context.banks_client
        reward = test_context.reward_mint
        assert await get_token_balance(bc, test_context.funder.pubkey(), reward) == RAW_AMOUNT
        assert await get_token_balance(bc, test_context.user.pubkey(), reward) == RAW_AMOUNT
        assert await get_token_balance(bc, test_context.payer.pubkey(), reward) == 0

    async def test_admin_and_pool_creator_hold_no_tokens(self, context, test_context):
        bc = context.banks_client
        for mint in (test_context.token_a_mint, test_context.token_b_mint, test_context.reward_mint):
            for actor in (test_context.admin, test_context.pool_creator):
                assert await get_token_balance(bc, actor.pubkey(), mint) == 0

    async def test_mints(self, context, test_context):
        bc = context.banks_client
        mints = {test_context.token_a_mint, test_context.token_b_mint, test_context.reward_mint}
        assert len(mints) == 3
        for mint in mints:
            state = await get_mint(bc, mint)
            assert state.decimals == 6
            assert state.mint_authority == LOCAL_ADMIN_KEYPAIR.pubkey()
            assert (await bc.get_account(mint)).owner == TOKEN_PROGRAM_ID

    async def test_distinct_actors(self, test_context):
        keys = {
            test_context.admin.pubkey(),
            test_context.payer.pubkey(),
            test_context.pool_creator.pubkey(),
            test_context.funder.pubkey(),
            test_context.user.pubkey(),
        }
        assert len(keys) == 5

    async def test_immutable(self, test_context):
        with pytest.raises(AttributeError):
            test_context.user = Keypair()

    async def test_token2022(self, context):
        bc = context.banks_client
        ctx = await setup_test_context(bc, LOCAL_ADMIN_KEYPAIR, token2022=True)
        assert isinstance(ctx, TestContext)
        for mint in (ctx.token_a_mint, ctx.token_b_mint, ctx.reward_mint):
            assert (await bc.get_account(mint)).owner == TOKEN_2022_PROGRAM_ID
        assert await get_token_balance(bc, ctx.user.pubkey(), ctx.token_a_mint) == RAW_AMOUNT
        assert await get_token_balance(bc, ctx.funder.pubkey(), ctx.reward_mint) == RAW_AMOUNT

    async def test_two_contexts_on_one_ledger(self, context):
        bc = context.banks_client
        first = await setup_test_context(bc, LOCAL_ADMIN_KEYPAIR)
        second = await setup_test_context(bc, LOCAL_ADMIN_KEYPAIR)
        assert first.token_a_mint != second.token_a_mint
        assert await get_token_balance(bc, second.payer.pubkey(), second.token_a_mint) == RAW_AMOUNT

    async def test_underfunded_root_fails(self, context):
        bc = context.banks_client
        poor_root = Keypair()
        await transfer_sol(bc, context.payer, poor_root.pubkey(), LAMPORTS_PER_SOL)
        with pytest.raises(BanksTransactionError):
            await setup_test_context(bc, poor_root)


# ═══════════════════════════════════════════════════════════════════
#  Utilities
# ═══════════════════════════════════════════════════════════════════

class TestRandomInt:

    def test_default_range(self):
        for _ in range(500):
            value = random_int()
            assert 0 <= value < 10000
            assert isinstance(value, int)

    def test_custom_range(self):
        values = {random_int(5, 8) for _ in range(500)}
        assert values <= {5, 6, 7}

    def test_degenerate_range(self):
        assert random_int(3, 3) == 3


@pytest.mark.asyncio
class TestWarpSlotBy:

    async def test_advances(self, context):
        start = await context.banks_client.get_slot()
        new_slot = await warp_slot_by(context, 10)
        assert new_slot == start + 10
        assert await context.banks_client.get_slot() == start + 10

    async def test_monotonic(self, context):
        previous = await context.banks_client.get_slot()
        for step in (1, 5, 100):
            current = await warp_slot_by(context, step)
            assert current > previous
            previous = current

    async def test_clock_time_advances(self, context):
        before = (await context.banks_client.get_clock()).unix_timestamp
        await warp_slot_by(context, 25)
        after = (await context.banks_client.get_clock()).unix_timestamp
        assert after >= before

    async def test_zero_is_noop(self, context):
        start = await context.banks_client.get_slot()
        assert await warp_slot_by(context, 0) == start

    async def test_negative_rejected(self, context):
        with pytest.raises(ValueError):
            await warp_slot_by(context, -1)

    async def test_fresh_blockhash_after_warp(self, context):
        before, _ = await context.banks_client.get_latest_blockhash()
        await warp_slot_by(context, 1)
        after, _ = await context.banks_client.get_latest_blockhash()
        assert after != before


@pytest.mark.asyncio
class TestJoin:

    async def test_returns_in_order(self):
        async def value(v, delay):
            await asyncio.sleep(delay)
            return v

        assert await _join(value(1, 0.02), value(2, 0), value(3, 0.01)) == [1, 2, 3]

    async def test_failure_cancels_siblings(self):
        finished = []

        async def slow():
            await asyncio.sleep(10)
            finished.append("slow")

        async def boom():
            await asyncio.sleep(0)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await _join(slow(), boom())
        assert finished == []
