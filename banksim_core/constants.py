"""
Well-known addresses and units for test ledgers.
"""

from __future__ import annotations

from solders.pubkey import Pubkey
from spl.token.constants import WRAPPED_SOL_MINT

LAMPORTS_PER_SOL: int = 1_000_000_000

# Token decimals used by every mint the harness creates
DECIMALS: int = 6

# Loader that owns non-upgradeable programs placed directly in genesis
BPF_LOADER_ID = Pubkey.from_string("BPFLoader2111111111111111111111111111111111")

NATIVE_MINT = WRAPPED_SOL_MINT
NATIVE_DECIMALS: int = 9

# Program under test
CP_AMM_PROGRAM_NAME = "cp_amm"
CP_AMM_PROGRAM_ID = Pubkey.from_string("cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG")

# Test-only root identity (bossj3JvwiNK7pvjr149DqdtJxf2gdygbcmEPTkb2F1).
# Never use this key against a non-simulated ledger.
LOCAL_ADMIN_SECRET_KEY: tuple[int, ...] = (
    230, 207, 238, 109, 95, 154, 47, 93, 183, 250, 147, 189, 87, 15, 117, 184,
    44, 91, 94, 231, 126, 140, 238, 134, 29, 58, 8, 182, 88, 22, 113, 234, 8,
    234, 192, 109, 87, 125, 190, 55, 129, 173, 227, 8, 104, 201, 104, 13, 31,
    178, 74, 80, 54, 14, 77, 78, 226, 57, 47, 122, 166, 165, 57, 144,
)
LOCAL_ADMIN_ADDRESS = "bossj3JvwiNK7pvjr149DqdtJxf2gdygbcmEPTkb2F1"
