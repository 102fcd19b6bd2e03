from __future__ import annotations

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from RevShareBackfill.ArtifactStore import MemoryArtifactStore
from RevShareBackfill.BackfillConfig import BackfillConfig
from RevShareBackfill.TreasuryRegistry import StaticRegistry

ADDR_A = "0x" + "1" * 40
ADDR_B = "0x" + "2" * 40
ADDR_C = "0x" + "3" * 40
TREASURY = "0x" + "f" * 40
REV_SHARE_MODULE = "0x" + "5" * 40
SAFE = "0x" + "6" * 40


def make_snapshot(holders: List[tuple], current_supply: Optional[int] = None) -> Dict[str, Any]:
    """holders: [(address, balance, tranche), ...]"""
    pioneers = [{"address": a, "nftBalance": str(b), "tranche": t} for a, b, t in holders]
    total = sum(b for _a, b, _t in holders)
    return {
        "snapshotBlock": None,
        "totalNftsFromMap": str(total),
        "totalPioneers": len(pioneers),
        "globalStats": (
            {"currentSupply": str(current_supply), "totalUniquePioneers": str(len(pioneers))}
            if current_supply is not None
            else None
        ),
        "pioneers": pioneers,
    }


def make_response(data: Optional[Dict[str, Any]] = None, status: int = 200, errors=None) -> MagicMock:
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.reason = "OK" if resp.ok else "Internal Server Error"
    resp.text = "" if resp.ok else "boom"
    body: Dict[str, Any] = {"data": data or {}}
    if errors is not None:
        body["errors"] = errors
    resp.json.return_value = body
    return resp


@pytest.fixture
def three_holders() -> Dict[str, Any]:
    """Balances 100/200/700, tranches 1/1/2, supply 1000."""
    return make_snapshot([(ADDR_A, 100, 1), (ADDR_B, 200, 1), (ADDR_C, 700, 2)], current_supply=1000)


@pytest.fixture
def base_config() -> BackfillConfig:
    return BackfillConfig(
        token_decimals=6,
        total_backfill_tokens="10",
        pioneers_share_bps=7500,
        batch_size=20,
        rev_share_module_address=REV_SHARE_MODULE,
        safe_address=SAFE,
        subgraph_url="https://subgraph.example/graphql",
    )


@pytest.fixture
def registry() -> StaticRegistry:
    return StaticRegistry({"REVENUE_RECEIVER": TREASURY})


@pytest.fixture
def store() -> MemoryArtifactStore:
    return MemoryArtifactStore()
