"""
Shared pytest fixtures for the banksim test suite.
"""

import hashlib
from pathlib import Path

import pytest
import pytest_asyncio
from solders.keypair import Keypair

from banksim_core.banks_client import program_search_paths
from banksim_core.config import BanksimConfig, load_config
from banksim_core.harness import LOCAL_ADMIN_KEYPAIR, setup_test_context, start_test
from banksim_core.logging_config import setup_logging_from_config

ROOT = Path(__file__).resolve().parent.parent
FIXTURES_DIR = ROOT / "tests" / "fixtures"


def pytest_configure(config):
    setup_logging_from_config(load_config().logging)


@pytest.fixture
def cfg():
    """Default config anchored at the repository root."""
    c = BanksimConfig()
    c.program.fixtures_dir = str(FIXTURES_DIR)
    c.program.anchor_root = str(ROOT)
    return c


@pytest.fixture
def alice():
    """Deterministic keypair for Alice."""
    return Keypair.from_seed(hashlib.sha256(b"alice-fixture-seed").digest())


@pytest.fixture
def bob():
    """Deterministic keypair for Bob."""
    return Keypair.from_seed(hashlib.sha256(b"bob-fixture-seed").digest())


@pytest_asyncio.fixture
async def context(cfg):
    """Ledger with the root identity funded and only the built-in programs."""
    return await start_test(cfg, programs=())


@pytest_asyncio.fixture
async def program_context(cfg):
    """Ledger with the program under test loaded; skipped until it has been built."""
    paths = program_search_paths(cfg)
    if not any((p / f"{cfg.program.name}.so").is_file() for p in paths):
        pytest.skip(f"{cfg.program.name}.so not built (run `anchor build`)")
    return await start_test(cfg)


@pytest_asyncio.fixture
async def test_context(context):
    """Actors and mints provisioned on the legacy token program."""
    return await setup_test_context(context.banks_client, LOCAL_ADMIN_KEYPAIR, token2022=False)
