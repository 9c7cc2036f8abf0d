"""
Async token helpers used by test fixtures.

Each helper builds one transaction with the ``spl.token`` instruction
builders against the latest blockhash, signs it and submits it through
``banks_client.process_transaction``, so a failure surfaces as
``BanksTransactionError``.  The token program for an existing mint is read
from the mint account's owner, which lets the same helpers drive both the
legacy and the token-2022 program.
"""

from __future__ import annotations

import logging

from solders.bankrun import BanksClient
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, TransferParams, create_account, transfer
from solders.token.state import Mint, TokenAccount
from spl.token.constants import ACCOUNT_LEN, MINT_LEN, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    InitializeMintParams,
    MintToParams,
    SyncNativeParams,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    sync_native,
)
from spl.token.instructions import mint_to as mint_to_ix

from banksim_core.banks_client import build_transaction, process_transaction
from banksim_core.constants import NATIVE_MINT

logger = logging.getLogger("banksim_token")

TOKEN_PROGRAM_IDS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


class TokenAccountNotFoundError(LookupError):
    """The requested mint or token account does not exist or is not token-owned."""


def token_program_for(token2022: bool) -> Pubkey:
    return TOKEN_2022_PROGRAM_ID if token2022 else TOKEN_PROGRAM_ID


async def _submit(
    banks_client: BanksClient,
    payer: Keypair,
    instructions: list[Instruction],
    *signers: Keypair,
) -> None:
    tx = await build_transaction(banks_client, payer, instructions, *signers)
    await process_transaction(banks_client, tx)


async def _owning_program(banks_client: BanksClient, address: Pubkey) -> Pubkey:
    account = await banks_client.get_account(address)
    if account is None or account.owner not in TOKEN_PROGRAM_IDS:
        raise TokenAccountNotFoundError(f"No token-program account at {address}")
    return account.owner


async def create_mint(
    banks_client: BanksClient,
    payer: Keypair,
    mint_keypair: Keypair,
    authority: Pubkey,
    decimals: int,
    token2022: bool = False,
) -> Pubkey:
    """Create and initialize a mint; *authority* is both mint and freeze authority."""
    program_id = token_program_for(token2022)
    mint = mint_keypair.pubkey()
    rent = await banks_client.get_rent()
    await _submit(
        banks_client,
        payer,
        [
            create_account(CreateAccountParams(
                from_pubkey=payer.pubkey(),
                to_pubkey=mint,
                lamports=rent.minimum_balance(MINT_LEN),
                space=MINT_LEN,
                owner=program_id,
            )),
            initialize_mint(InitializeMintParams(
                decimals=decimals,
                program_id=program_id,
                mint=mint,
                mint_authority=authority,
                freeze_authority=authority,
            )),
        ],
        mint_keypair,
    )
    logger.debug(f"Created mint {mint} (decimals={decimals}, program={program_id})")
    return mint


async def get_or_create_ata(
    banks_client: BanksClient,
    payer: Keypair,
    mint: Pubkey,
    owner: Pubkey,
    token_program_id: Pubkey | None = None,
) -> Pubkey:
    """Return *owner*'s associated token account for *mint*, creating it if absent."""
    program_id = token_program_id or await _owning_program(banks_client, mint)
    ata = get_associated_token_address(owner, mint, token_program_id=program_id)
    if await banks_client.get_account(ata) is None:
        await _submit(
            banks_client,
            payer,
            [create_associated_token_account(payer.pubkey(), owner, mint, token_program_id=program_id)],
        )
    return ata


async def mint_to(
    banks_client: BanksClient,
    payer: Keypair,
    mint: Pubkey,
    authority: Keypair,
    owner: Pubkey,
    raw_amount: int,
) -> Pubkey:
    """Credit *raw_amount* to *owner*'s associated token account, creating it if needed.

    Two calls with the same arguments inside one slot compile to the same
    signed transaction, and the ledger rejects the second as already
    processed.  Advance the ledger (``warp_slot_by(context, 1)``) between
    identical calls; never issue them concurrently.
    """
    program_id = await _owning_program(banks_client, mint)
    ata = await get_or_create_ata(banks_client, payer, mint, owner, program_id)
    await _submit(
        banks_client,
        payer,
        [
            mint_to_ix(MintToParams(
                program_id=program_id,
                mint=mint,
                dest=ata,
                mint_authority=authority.pubkey(),
                amount=raw_amount,
            )),
        ],
        authority,
    )
    logger.debug(f"Minted {raw_amount} of {mint} to {owner}")
    return ata


async def wrap_sol(banks_client: BanksClient, owner: Keypair, lamports: int) -> Pubkey:
    """Move *lamports* of native balance into *owner*'s wrapped-native token account."""
    ata = await get_or_create_ata(banks_client, owner, NATIVE_MINT, owner.pubkey(), TOKEN_PROGRAM_ID)
    await _submit(
        banks_client,
        owner,
        [
            transfer(TransferParams(from_pubkey=owner.pubkey(), to_pubkey=ata, lamports=lamports)),
            sync_native(SyncNativeParams(program_id=TOKEN_PROGRAM_ID, account=ata)),
        ],
    )
    logger.debug(f"Wrapped {lamports} lamports for {owner.pubkey()}")
    return ata


async def get_mint(banks_client: BanksClient, mint: Pubkey) -> Mint:
    account = await banks_client.get_account(mint)
    if account is None or account.owner not in TOKEN_PROGRAM_IDS:
        raise TokenAccountNotFoundError(f"Mint {mint} not found")
    return Mint.from_bytes(bytes(account.data[:MINT_LEN]))


async def get_token_account(banks_client: BanksClient, address: Pubkey) -> TokenAccount:
    """Decode the base token-account state; token-2022 extension bytes are ignored."""
    account = await banks_client.get_account(address)
    if account is None or account.owner not in TOKEN_PROGRAM_IDS:
        raise TokenAccountNotFoundError(f"Token account {address} not found")
    return TokenAccount.from_bytes(bytes(account.data[:ACCOUNT_LEN]))


async def get_token_balance(
    banks_client: BanksClient,
    owner: Pubkey,
    mint: Pubkey,
) -> int:
    """Raw balance of *owner*'s associated token account, 0 if it does not exist."""
    program_id = await _owning_program(banks_client, mint)
    ata = get_associated_token_address(owner, mint, token_program_id=program_id)
    try:
        return (await get_token_account(banks_client, ata)).amount
    except TokenAccountNotFoundError:
        return 0
