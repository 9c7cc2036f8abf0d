"""
Test-body helpers: ledger bootstrap, actor funding, asset provisioning,
failure assertions and slot warping.

Typical use inside an async test::

    context = await start_test()
    ctx = await setup_test_context(context.banks_client, LOCAL_ADMIN_KEYPAIR, token2022=False)
    await expect_throws_async(
        lambda: transfer_sol(context.banks_client, ctx.user, ctx.admin.pubkey(), 2 * LAMPORTS_PER_SOL),
        "insufficient lamports",
    )

Concurrent fan-out (funding several actors, creating several mints) goes
through ``_join``: every task is awaited, the first failure propagates and
the siblings still pending are cancelled.  The ledger applies transactions
one at a time, so concurrent calls drawing on the same funded source never
need a lock here.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

from solders.account import Account
from solders.bankrun import BanksClient, ProgramTestContext
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from banksim_core.banks_client import (
    AddedAccount,
    ProgramSpec,
    TransactionOutcome,
    build_transaction,
    process_transaction,
    start_anchor,
)
from banksim_core.config import BanksimConfig, load_config
from banksim_core.constants import LAMPORTS_PER_SOL, LOCAL_ADMIN_SECRET_KEY
from banksim_core.token import create_mint, mint_to

logger = logging.getLogger("banksim_harness")

T = TypeVar("T")


class HarnessAssertionError(AssertionError):
    """Raised by ``expect_throws_async`` when the expected failure did not happen."""


@functools.lru_cache(maxsize=None)
def _keypair_from_secret(secret: bytes) -> Keypair:
    if len(secret) != 64:
        raise ValueError("provided secretKey is invalid")
    keypair = Keypair.from_seed(secret[:32])
    if bytes(keypair.pubkey()) != secret[32:]:
        raise ValueError("provided secretKey is invalid")
    return keypair


# Test-only identity; never use it against a real ledger.
LOCAL_ADMIN_KEYPAIR = _keypair_from_secret(bytes(LOCAL_ADMIN_SECRET_KEY))


def root_keypair(cfg: BanksimConfig | None = None) -> Keypair:
    """The root identity configured in *cfg* (the embedded admin key by default)."""
    cfg = cfg or BanksimConfig()
    return _keypair_from_secret(bytes(cfg.fixture.root_secret_key))


async def start_test(
    cfg: BanksimConfig | None = None,
    programs: Iterable[ProgramSpec] | None = None,
) -> ProgramTestContext:
    """Start a ledger with the program under test loaded and the root identity funded.

    *programs* defaults to the configured program; pass ``()`` to start a
    ledger with only the built-in programs.
    """
    cfg = cfg or load_config()
    root = root_keypair(cfg)
    if programs is None:
        programs = [ProgramSpec(cfg.program.name, cfg.program.program_id)]
    context = await start_anchor(
        cfg.program.workspace_root(),
        programs,
        [
            AddedAccount(
                root.pubkey(),
                Account(
                    lamports=cfg.fixture.root_lamports,
                    data=b"",
                    owner=SYSTEM_PROGRAM_ID,
                    executable=False,
                ),
            ),
        ],
        cfg,
    )
    logger.info(f"Test ledger ready; root {root.pubkey()} holds {cfg.fixture.root_lamports} lamports")
    return context


async def transfer_sol(
    banks_client: BanksClient,
    from_keypair: Keypair,
    to: Pubkey,
    amount: int,
) -> None:
    """Move *amount* lamports; raises ``BanksTransactionError`` on failure.

    Repeating the exact same transfer inside one slot is rejected as already
    processed; warp the ledger between identical transfers.
    """
    tx = await build_transaction(
        banks_client,
        from_keypair,
        [transfer(TransferParams(from_pubkey=from_keypair.pubkey(), to_pubkey=to, lamports=amount))],
    )
    await process_transaction(banks_client, tx)
    logger.debug(f"Transferred {amount} lamports {from_keypair.pubkey()} -> {to}")


async def process_transaction_maybe_throw(banks_client: BanksClient, transaction: Transaction) -> TransactionOutcome:
    return await process_transaction(banks_client, transaction)


async def expect_throws_async(fn: Callable[[], Awaitable[object]], error_message: str) -> None:
    """Await ``fn()`` and require it to fail with a message containing *error_message*.

    Matching is a case-insensitive substring test.  Anything that is not an
    ``Exception`` (cancellation, interrupts) propagates untouched.
    """
    try:
        await fn()
    except Exception as err:
        if error_message.lower() not in str(err).lower():
            raise HarnessAssertionError(
                f"Unexpected error: {err}. Expected error: {error_message}"
            ) from err
        return
    raise HarnessAssertionError("Expected an error but didn't get one")


async def create_users_and_fund(
    banks_client: BanksClient,
    payer: Keypair,
    user: Keypair | None = None,
    lamports: int = LAMPORTS_PER_SOL,
) -> Keypair:
    """Fund *user* (a fresh keypair by default) from *payer*.

    Funding the same given user twice with the same amount inside one slot
    is the same transaction twice and the second is rejected; call
    ``warp_slot_by(context, 1)`` in between.
    """
    if user is None:
        user = Keypair()
    await transfer_sol(banks_client, payer, user.pubkey(), lamports)
    return user


async def _join(*aws: Awaitable[T]) -> list[T]:
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass(frozen=True)
class TestContext:
    """Actors and mints provisioned for one test."""
    __test__ = False  # not a pytest test class

    admin: Keypair
    payer: Keypair
    pool_creator: Keypair
    token_a_mint: Pubkey
    token_b_mint: Pubkey
    reward_mint: Pubkey
    funder: Keypair
    user: Keypair


async def setup_test_context(
    banks_client: BanksClient,
    root: Keypair,
    token2022: bool = False,
    cfg: BanksimConfig | None = None,
) -> TestContext:
    """Fund the actors, create three mints owned by *root* and distribute balances.

    payer and user receive token A and token B; funder and user receive the
    reward token.  admin and pool_creator hold no tokens, and pool_creator
    holds no native balance either.
    """
    fixture = (cfg or BanksimConfig()).fixture
    admin, payer, pool_creator, user, funder = (Keypair() for _ in range(5))

    await _join(*(
        transfer_sol(banks_client, root, actor.pubkey(), fixture.actor_lamports)
        for actor in (admin, payer, user, funder)
    ))

    token_a, token_b, reward = (Keypair() for _ in range(3))
    await _join(*(
        create_mint(banks_client, root, mint_kp, root.pubkey(), fixture.decimals, token2022)
        for mint_kp in (token_a, token_b, reward)
    ))

    raw_amount = fixture.initial_token_amount * 10 ** fixture.decimals

    # one batch per mint; every (mint, destination) pair in a batch is distinct
    for mint_kp in (token_a, token_b):
        await _join(*(
            mint_to(banks_client, root, mint_kp.pubkey(), root, owner.pubkey(), raw_amount)
            for owner in (payer, user)
        ))

    await mint_to(banks_client, root, reward.pubkey(), root, funder.pubkey(), raw_amount)
    await mint_to(banks_client, root, reward.pubkey(), root, user.pubkey(), raw_amount)

    logger.info(
        f"Test context ready: token A {token_a.pubkey()}, token B {token_b.pubkey()}, "
        f"reward {reward.pubkey()} (token2022={token2022})"
    )
    return TestContext(
        admin=admin,
        payer=payer,
        pool_creator=pool_creator,
        token_a_mint=token_a.pubkey(),
        token_b_mint=token_b.pubkey(),
        reward_mint=reward.pubkey(),
        funder=funder,
        user=user,
    )


def random_int(min_value: int = 0, max_value: int = 10000) -> int:
    """Uniform integer in ``[min_value, max_value)``."""
    return math.floor(random.random() * (max_value - min_value) + min_value)


async def warp_slot_by(context: ProgramTestContext, slots: int) -> int:
    """Advance the ledger by *slots* and return the new slot.

    Warping also rolls the blockhash, which is what lets an identical
    transaction be submitted again.
    """
    if slots < 0:
        raise ValueError(f"Cannot warp by a negative number of slots: {slots}")
    current = await context.banks_client.get_slot()
    if slots == 0:
        return current
    target = current + slots
    context.warp_to_slot(target)
    return target
