"""
banksim - an async test harness for Anchor programs running on bankrun.

Key features:
- Ledger bootstrap on solders.bankrun with SBF artifact discovery and validation
- Simulate-then-submit transaction gateway with program logs in its errors
- Token helpers for the legacy and token-2022 programs built on spl.token
- Fixture helpers: actor funding, mint provisioning, failure assertions, slot warping
"""

__version__ = "0.1.0"
__all__ = [
    "constants",
    "errors",
    "banks_client",
    "token",
    "harness",
    "config",
    "logging_config",
]
