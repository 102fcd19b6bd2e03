#!/usr/bin/env python3
"""
BackfillConfig.py

Configuration for every backfill stage, read from environment variables
(optionally from a .env file). One frozen BackfillConfig is built per run and
passed explicitly into each stage.

Variables
=========
  SUBGRAPH_URL                 subgraph GraphQL endpoint (export)
  PAGE_SIZE                    entities per page, default 1000
  SNAPSHOT_BLOCK               pin every page to this block; unset = latest
  TRANCHE_FILE                 optional CSV address,tranche overriding the midpoint split

  TOKEN_DECIMALS               default 6 (USDC)
  TOTAL_BACKFILL_TOKENS        human amount, e.g. "100000" (allocate, required)
  PIONEERS_SHARE_BPS           pioneers' share in bps, default 7500
  TIME_WEIGHTING               "on" / "off", default off
  TRANCHE1_START_TS            unix seconds, required when TIME_WEIGHTING=on
  TRANCHE2_START_TS            idem
  BACKFILL_END_TS              idem

  ARBITRUM_MAINNET_RPC_URL     RPC used to read the AddressManager
  ADDRESS_MANAGER_ADDRESS      AddressManager contract
  REVENUE_RECEIVER_KEY         default REVENUE_RECEIVER

  BACKFILL_BATCH_SIZE          default 20
  REV_SHARE_MODULE_ADDRESS     target contract of the backfill calls
  BACKFILL_FUNCTION            default adminBackfillRevenue
  SAFE_ADDRESS                 executing Safe multisig
  SAFE_CHAIN_ID                default 42161 (Arbitrum One)

  BACKFILL_OUTPUT_DIR          artifact root, default "output"

Malformed values fail at load time with ConfigError. Values only some stages
need are checked by the require_* methods when that stage starts.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv
from eth_utils import is_address

from RevShareBackfill.BackfillCommon import BPS_DENOMINATOR, ConfigError

DEFAULT_PAGE_SIZE = 1000
DEFAULT_BATCH_SIZE = 20
DEFAULT_TOKEN_DECIMALS = 6
DEFAULT_PIONEERS_SHARE_BPS = 7500
DEFAULT_SAFE_CHAIN_ID = "42161"
DEFAULT_REVENUE_RECEIVER_KEY = "REVENUE_RECEIVER"
DEFAULT_BACKFILL_FUNCTION = "adminBackfillRevenue"
DEFAULT_OUTPUT_DIR = "output"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"", "0", "false", "no", "off"}


@dataclass(frozen=True)
class TimeWeighting:
    tranche1_start_ts: int
    tranche2_start_ts: int
    backfill_end_ts: int

    def validate(self) -> None:
        if not (self.tranche1_start_ts < self.tranche2_start_ts < self.backfill_end_ts):
            raise ConfigError(
                "Time weighting requires TRANCHE1_START_TS < TRANCHE2_START_TS < BACKFILL_END_TS "
                f"(got {self.tranche1_start_ts}, {self.tranche2_start_ts}, {self.backfill_end_ts})"
            )

    @property
    def segment1_duration(self) -> int:
        return self.tranche2_start_ts - self.tranche1_start_ts

    @property
    def total_duration(self) -> int:
        return self.backfill_end_ts - self.tranche1_start_ts


@dataclass(frozen=True)
class BackfillConfig:
    subgraph_url: Optional[str] = None
    page_size: int = DEFAULT_PAGE_SIZE
    snapshot_block: Optional[int] = None
    tranche_file: Optional[str] = None

    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    total_backfill_tokens: Optional[str] = None
    pioneers_share_bps: int = DEFAULT_PIONEERS_SHARE_BPS
    time_weighting: Optional[TimeWeighting] = None

    rpc_url: Optional[str] = None
    address_manager_address: Optional[str] = None
    revenue_receiver_key: str = DEFAULT_REVENUE_RECEIVER_KEY

    batch_size: int = DEFAULT_BATCH_SIZE
    rev_share_module_address: Optional[str] = None
    backfill_function: str = DEFAULT_BACKFILL_FUNCTION
    safe_address: Optional[str] = None
    safe_chain_id: str = DEFAULT_SAFE_CHAIN_ID

    output_dir: str = DEFAULT_OUTPUT_DIR

    # -- stage preconditions -------------------------------------------------

    def require_export(self) -> None:
        if not self.subgraph_url:
            raise ConfigError("SUBGRAPH_URL environment variable is not set.")
        if self.page_size < 1:
            raise ConfigError(f"PAGE_SIZE must be >= 1 (got {self.page_size})")

    def require_allocation(self) -> None:
        if not self.total_backfill_tokens:
            raise ConfigError("TOTAL_BACKFILL_TOKENS environment variable is not set.")
        if self.token_decimals < 0:
            raise ConfigError(f"TOKEN_DECIMALS must be >= 0 (got {self.token_decimals})")
        if not 0 <= self.pioneers_share_bps <= BPS_DENOMINATOR:
            raise ConfigError(
                f"PIONEERS_SHARE_BPS must be within 0..{BPS_DENOMINATOR} (got {self.pioneers_share_bps})"
            )
        if self.time_weighting is not None:
            self.time_weighting.validate()
        if self.address_manager_address and not is_address(self.address_manager_address):
            raise ConfigError(f"ADDRESS_MANAGER_ADDRESS is not a valid address: {self.address_manager_address!r}")

    def require_batches(self) -> None:
        if not self.rev_share_module_address:
            raise ConfigError("REV_SHARE_MODULE_ADDRESS is not set.")
        if not is_address(self.rev_share_module_address):
            raise ConfigError(f"REV_SHARE_MODULE_ADDRESS is not a valid address: {self.rev_share_module_address!r}")
        if not self.safe_address:
            raise ConfigError("SAFE_ADDRESS is not set.")
        if not is_address(self.safe_address):
            raise ConfigError(f"SAFE_ADDRESS is not a valid address: {self.safe_address!r}")
        self.require_batch_size()

    def require_batch_size(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"BACKFILL_BATCH_SIZE must be >= 1 (got {self.batch_size})")


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------

def _opt_str(env: Mapping[str, str], name: str) -> Optional[str]:
    v = (env.get(name) or "").strip()
    return v or None


def _int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got: {raw!r})")


def _flag(env: Mapping[str, str], name: str) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name} must be on/off (got: {raw!r})")


def load_time_weighting(env: Mapping[str, str]) -> Optional[TimeWeighting]:
    if not _flag(env, "TIME_WEIGHTING"):
        return None

    names = ("TRANCHE1_START_TS", "TRANCHE2_START_TS", "BACKFILL_END_TS")
    values = [_int(env, n, None) for n in names]
    missing = [n for n, v in zip(names, values) if v is None]
    if missing:
        raise ConfigError(f"TIME_WEIGHTING=on requires: {', '.join(missing)}")

    tw = TimeWeighting(*values)
    tw.validate()
    return tw


def load_config(environ: Optional[Mapping[str, str]] = None) -> BackfillConfig:
    """
    Build a BackfillConfig from `environ`, or from os.environ after loading
    a .env file when no mapping is given.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    env = environ
    return BackfillConfig(
        subgraph_url=_opt_str(env, "SUBGRAPH_URL"),
        page_size=_int(env, "PAGE_SIZE", DEFAULT_PAGE_SIZE),
        snapshot_block=_int(env, "SNAPSHOT_BLOCK", None),
        tranche_file=_opt_str(env, "TRANCHE_FILE"),
        token_decimals=_int(env, "TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS),
        total_backfill_tokens=_opt_str(env, "TOTAL_BACKFILL_TOKENS"),
        pioneers_share_bps=_int(env, "PIONEERS_SHARE_BPS", DEFAULT_PIONEERS_SHARE_BPS),
        time_weighting=load_time_weighting(env),
        rpc_url=_opt_str(env, "ARBITRUM_MAINNET_RPC_URL"),
        address_manager_address=_opt_str(env, "ADDRESS_MANAGER_ADDRESS"),
        revenue_receiver_key=_opt_str(env, "REVENUE_RECEIVER_KEY") or DEFAULT_REVENUE_RECEIVER_KEY,
        batch_size=_int(env, "BACKFILL_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        rev_share_module_address=_opt_str(env, "REV_SHARE_MODULE_ADDRESS"),
        backfill_function=_opt_str(env, "BACKFILL_FUNCTION") or DEFAULT_BACKFILL_FUNCTION,
        safe_address=_opt_str(env, "SAFE_ADDRESS"),
        safe_chain_id=_opt_str(env, "SAFE_CHAIN_ID") or DEFAULT_SAFE_CHAIN_ID,
        output_dir=_opt_str(env, "BACKFILL_OUTPUT_DIR") or DEFAULT_OUTPUT_DIR,
    )
