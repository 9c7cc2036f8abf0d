"""
TOML-based configuration for banksim test runs.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from banksim_core.config import load_config
    cfg = load_config("banksim.toml")
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import base58

from banksim_core.constants import (
    CP_AMM_PROGRAM_ID,
    CP_AMM_PROGRAM_NAME,
    DECIMALS,
    LAMPORTS_PER_SOL,
    LOCAL_ADMIN_SECRET_KEY,
)

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]

WORKSPACE_MARKER = "Anchor.toml"


def find_workspace_root(start: str | Path | None = None) -> Path:
    """Nearest directory at or above *start* (default: cwd) holding an Anchor.toml.

    Falls back to *start* itself when no workspace marker is found.
    """
    origin = Path(start or Path.cwd()).resolve()
    for directory in (origin, *origin.parents):
        if (directory / WORKSPACE_MARKER).is_file():
            return directory
    return origin


@dataclass
class LedgerConfig:
    """Ledger limits passed through to bankrun (``None`` keeps its default)."""
    compute_max_units: int | None = None


@dataclass
class ProgramConfig:
    """The program under test and where its build artifact lives.

    ``anchor_root`` is the Anchor workspace; when unset it is discovered by
    walking up from the working directory.  A relative ``fixtures_dir`` is
    taken relative to the workspace, never to the working directory.
    """
    name: str = CP_AMM_PROGRAM_NAME
    program_id: str = str(CP_AMM_PROGRAM_ID)
    fixtures_dir: str = "tests/fixtures"
    anchor_root: str | None = None

    def workspace_root(self) -> Path:
        if self.anchor_root:
            return Path(self.anchor_root).resolve()
        return find_workspace_root()

    def fixtures_path(self) -> Path:
        path = Path(self.fixtures_dir)
        return path if path.is_absolute() else self.workspace_root() / path


@dataclass
class FixtureConfig:
    """Actors and assets provisioned by the harness.

    ``root_secret_key`` is the 64-byte secret (seed || public key) of the
    root identity that funds every other actor and owns every mint.  It is
    test-only material and must never be used against a real ledger.
    """
    root_secret_key: list[int] = field(default_factory=lambda: list(LOCAL_ADMIN_SECRET_KEY))
    root_lamports: int = 100 * LAMPORTS_PER_SOL
    actor_lamports: int = LAMPORTS_PER_SOL
    decimals: int = DECIMALS
    initial_token_amount: int = 1_000_000


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "WARNING"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class BanksimConfig:
    """Top-level configuration container."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    program: ProgramConfig = field(default_factory=ProgramConfig)
    fixture: FixtureConfig = field(default_factory=FixtureConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def parse_secret_key(text: str) -> list[int]:
    """Accept a JSON byte array (``[1, 2, ...]``) or base58 text."""
    text = text.strip()
    if text.startswith("["):
        raw = json.loads(text)
    else:
        raw = list(base58.b58decode(text))
    if len(raw) != 64 or not all(isinstance(b, int) and 0 <= b <= 255 for b in raw):
        raise ValueError("Root secret key must be 64 bytes")
    return raw


def load_config(path: str | None = None) -> BanksimConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    With no *path*, the file named by BANKSIM_CONFIG is used if set.  A
    relative ``program.anchor_root`` in the file is resolved against the
    file's directory.

    Env-var mapping:
        BANKSIM_COMPUTE_MAX_UNITS      -> ledger.compute_max_units
        BANKSIM_PROGRAM_NAME           -> program.name
        BANKSIM_PROGRAM_ID             -> program.program_id
        BANKSIM_ANCHOR_ROOT            -> program.anchor_root
        BANKSIM_FIXTURES_DIR           -> program.fixtures_dir
        BANKSIM_ROOT_SECRET            -> fixture.root_secret_key (JSON array or base58)
        BANKSIM_DECIMALS               -> fixture.decimals
        BANKSIM_LOG_LEVEL              -> logging.level
        BANKSIM_LOG_FMT                -> logging.format
        BANKSIM_LOG_FILE               -> logging.file
    """
    cfg = BanksimConfig()
    if path is None:
        path = os.environ.get("BANKSIM_CONFIG") or None

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("ledger", cfg.ledger),
                ("program", cfg.program),
                ("fixture", cfg.fixture),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
            if cfg.program.anchor_root and not Path(cfg.program.anchor_root).is_absolute():
                cfg.program.anchor_root = str(p.resolve().parent / cfg.program.anchor_root)

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("BANKSIM_COMPUTE_MAX_UNITS"):
        cfg.ledger.compute_max_units = int(v)
    if v := os.environ.get("BANKSIM_PROGRAM_NAME"):
        cfg.program.name = v
    if v := os.environ.get("BANKSIM_PROGRAM_ID"):
        cfg.program.program_id = v
    if v := os.environ.get("BANKSIM_ANCHOR_ROOT"):
        cfg.program.anchor_root = v
    if v := os.environ.get("BANKSIM_FIXTURES_DIR"):
        cfg.program.fixtures_dir = v
    if v := os.environ.get("BANKSIM_ROOT_SECRET"):
        cfg.fixture.root_secret_key = parse_secret_key(v)
    if v := os.environ.get("BANKSIM_DECIMALS"):
        cfg.fixture.decimals = int(v)
    if v := os.environ.get("BANKSIM_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("BANKSIM_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("BANKSIM_LOG_FILE"):
        cfg.logging.file = v

    return cfg
