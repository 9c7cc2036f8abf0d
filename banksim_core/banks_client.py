"""
Ledger bootstrap and transaction gateway on top of ``solders.bankrun``.

``start()`` / ``start_anchor()`` spin up a bankrun ledger (which ships the
real SPL token, token-2022 and associated token account programs), load
the programs under test from their SBF build artifacts and pre-seed
accounts, returning bankrun's ``ProgramTestContext``.

Programs are placed in genesis as executable accounts owned by the BPF
loader, so every artifact is read and validated here first: anything
that is not a 64-bit little-endian SBF/BPF shared object is refused with
``ProgramLoadError`` instead of failing later at invocation time.

Transactions go through ``process_transaction``: it simulates first to
collect the result and program logs, submits when the simulation
succeeded, and raises ``BanksTransactionError`` otherwise.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from solders.account import Account
from solders.bankrun import BanksClient, BanksClientError, ProgramTestContext, start as bankrun_start
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rent import Rent
from solders.transaction import Transaction

from banksim_core.config import BanksimConfig
from banksim_core.constants import BPF_LOADER_ID
from banksim_core.errors import BanksTransactionError, ProgramLoadError

logger = logging.getLogger("banksim_client")

# e_ident (magic, class, data, version, osabi, abiversion, padding) then the
# fixed part of the ELF64 header
_ELF64_HEADER = struct.Struct("<4sBBBBB7xHHIQQQIHHHHHH")
_ELF_MAGIC = b"\x7fELF"
_ELFCLASS64 = 2
_ELFDATA2LSB = 1
_ET_DYN = 3
_EM_BPF = 247
_EM_SBF = 263


@dataclass
class ProgramSpec:
    """A program to load from ``<name>.so``."""
    name: str
    program_id: Pubkey | str


@dataclass
class AddedAccount:
    address: Pubkey
    info: Account


@dataclass
class TransactionOutcome:
    """What the ledger reported for one transaction; ``result`` is ``None`` on success."""
    result: str | None
    logs: list[str]
    compute_units_consumed: int = 0


def validate_program_elf(data: bytes, name: str = "program") -> None:
    """Raise ``ProgramLoadError`` unless *data* looks like a loadable SBF program."""
    if len(data) < _ELF64_HEADER.size:
        raise ProgramLoadError(f"{name}.so is {len(data)} bytes, too short for an ELF header")
    (
        magic, ei_class, ei_data, _version, _osabi, _abiversion,
        e_type, e_machine, _e_version, _e_entry, e_phoff, e_shoff, _e_flags,
        _e_ehsize, e_phentsize, e_phnum, e_shentsize, e_shnum, _e_shstrndx,
    ) = _ELF64_HEADER.unpack_from(data)
    if magic != _ELF_MAGIC:
        raise ProgramLoadError(f"{name}.so is not an ELF file")
    if ei_class != _ELFCLASS64 or ei_data != _ELFDATA2LSB:
        raise ProgramLoadError(f"{name}.so is not a 64-bit little-endian ELF")
    if e_type != _ET_DYN:
        raise ProgramLoadError(f"{name}.so is not a shared object (e_type={e_type})")
    if e_machine not in (_EM_BPF, _EM_SBF):
        raise ProgramLoadError(f"{name}.so targets machine {e_machine}, not BPF/SBF")
    if e_phoff + e_phnum * e_phentsize > len(data) or e_shoff + e_shnum * e_shentsize > len(data):
        raise ProgramLoadError(f"{name}.so is truncated")


def program_search_paths(cfg: BanksimConfig, anchor_root: str | Path | None = None) -> list[Path]:
    """Directories searched for ``<name>.so``, in order.

    ``SBF_OUT_DIR`` / ``BPF_OUT_DIR`` (as set by ``cargo test-sbf`` and
    ``anchor test``) come first, then the workspace's ``target/deploy``,
    then the configured fixtures directory.
    """
    paths = [Path(v) for v in (os.environ.get("SBF_OUT_DIR"), os.environ.get("BPF_OUT_DIR")) if v]
    root = Path(anchor_root).resolve() if anchor_root is not None else cfg.program.workspace_root()
    paths.append(root / "target" / "deploy")
    paths.append(cfg.program.fixtures_path())
    return paths


def read_program_artifact(name: str, search_paths: Sequence[Path]) -> bytes:
    for directory in search_paths:
        candidate = directory / f"{name}.so"
        if candidate.is_file():
            data = candidate.read_bytes()
            validate_program_elf(data, name)
            logger.debug(f"Loaded {candidate} ({len(data)} bytes)")
            return data
    searched = ", ".join(str(p) for p in search_paths) or "<none>"
    raise ProgramLoadError(f"Program file {name}.so not found (searched: {searched})")


def _program_account(spec: ProgramSpec, search_paths: Sequence[Path]) -> tuple[Pubkey, Account]:
    try:
        program_id = spec.program_id if isinstance(spec.program_id, Pubkey) else Pubkey.from_string(spec.program_id)
    except ValueError as exc:
        raise ProgramLoadError(f"Invalid program id for {spec.name}: {spec.program_id!r}") from exc
    data = read_program_artifact(spec.name, search_paths)
    return program_id, Account(
        lamports=max(Rent.default().minimum_balance(len(data)), 1),
        data=data,
        owner=BPF_LOADER_ID,
        executable=True,
    )


async def start(
    programs: Iterable[ProgramSpec] = (),
    accounts: Iterable[AddedAccount] = (),
    cfg: BanksimConfig | None = None,
    search_paths: Iterable[str | Path] = (),
) -> ProgramTestContext:
    """Start a fresh ledger with *programs* loaded and *accounts* pre-seeded."""
    cfg = cfg or BanksimConfig()
    paths = [Path(p) for p in search_paths] or program_search_paths(cfg)
    genesis = [_program_account(spec, paths) for spec in programs]
    genesis += [(added.address, added.info) for added in accounts]
    context = await bankrun_start(
        accounts=genesis,
        compute_max_units=cfg.ledger.compute_max_units,
    )
    logger.info(f"Ledger started with {len(genesis)} genesis accounts; payer {context.payer.pubkey()}")
    return context


async def start_anchor(
    path: str | Path,
    extra_programs: Iterable[ProgramSpec] = (),
    accounts: Iterable[AddedAccount] = (),
    cfg: BanksimConfig | None = None,
) -> ProgramTestContext:
    """Like ``start`` but looks for program files under the workspace at *path* first."""
    cfg = cfg or BanksimConfig()
    return await start(extra_programs, accounts, cfg, program_search_paths(cfg, path))


async def latest_blockhash(banks_client: BanksClient) -> Hash:
    latest = await banks_client.get_latest_blockhash()
    if latest is None:
        raise BanksTransactionError("Ledger returned no blockhash")
    blockhash, _last_valid_block_height = latest
    return blockhash


async def build_transaction(
    banks_client: BanksClient,
    payer: Keypair,
    instructions: Sequence[Instruction],
    *signers: Keypair,
) -> Transaction:
    """Sign *instructions* against the latest blockhash, *payer* paying the fee."""
    blockhash = await latest_blockhash(banks_client)
    unique: dict[Pubkey, Keypair] = {payer.pubkey(): payer}
    for signer in signers:
        unique.setdefault(signer.pubkey(), signer)
    return Transaction.new_signed_with_payer(instructions, payer.pubkey(), list(unique.values()), blockhash)


async def try_process_transaction(banks_client: BanksClient, transaction: Transaction) -> TransactionOutcome:
    """Submit *transaction* and report the outcome without raising.

    A transaction whose simulation fails is not submitted, so it leaves the
    ledger untouched.
    """
    simulated = await banks_client.simulate_transaction(transaction)
    meta = simulated.meta
    logs = list(meta.log_messages) if meta is not None else []
    units = meta.compute_units_consumed if meta is not None else 0
    if simulated.result is not None:
        return TransactionOutcome(str(simulated.result), logs, units)
    try:
        await banks_client.process_transaction(transaction)
    except BanksClientError as exc:
        return TransactionOutcome(str(exc), logs, units)
    return TransactionOutcome(None, logs, units)


async def process_transaction(banks_client: BanksClient, transaction: Transaction) -> TransactionOutcome:
    """Submit *transaction*; raise ``BanksTransactionError`` if the ledger rejects it."""
    outcome = await try_process_transaction(banks_client, transaction)
    if outcome.result is not None:
        logger.debug(f"Transaction {transaction.signatures[0]} failed: {outcome.result}")
        raise BanksTransactionError(outcome.result, outcome.logs)
    return outcome
