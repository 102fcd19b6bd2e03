#!/usr/bin/env python3
"""
BuildAllocations.py: STEP 2 of the RevShare backfill pipeline.

Turn the pioneers snapshot into exact per-address token allocations.

Inputs
======
1) pioneers/revshare_pioneers.json (written by ExportPioneers.py)
   Uses pioneers[].address, pioneers[].nftBalance, pioneers[].tranche.

2) Environment (see BackfillConfig.py):
   TOKEN_DECIMALS, TOTAL_BACKFILL_TOKENS, PIONEERS_SHARE_BPS,
   TIME_WEIGHTING (+ TRANCHE1_START_TS, TRANCHE2_START_TS, BACKFILL_END_TS),
   ARBITRUM_MAINNET_RPC_URL, ADDRESS_MANAGER_ADDRESS, REVENUE_RECEIVER_KEY.

Computation Details
===================
All values are integers in raw token units; every division floors.

Step A: Total
  TOTAL_RAW = TOTAL_BACKFILL_TOKENS * 10^TOKEN_DECIMALS   (exact, else ConfigError)

Step B: Split
  PB = TOTAL_RAW * PIONEERS_SHARE_BPS / 10000     (pioneers)
  TB = TOTAL_RAW - PB                              (Takadao treasury)

Step C: Per-pioneer share, with totalNfts = sum of all balances
  Time weighting off:
      amount_i = PB * bal_i / totalNfts

  Time weighting on, with t1 < t2 < end:
      segment 1 = [t1, t2): only tranche-1 pioneers earn, divisor tranche1Nfts
      segment 2 = [t2, end]: every pioneer earns, divisor totalNfts
      POT1 = PB * (t2 - t1) / (end - t1)
      POT2 = PB - POT1
      tranche 1: amount_i = POT1 * bal_i / tranche1Nfts + POT2 * bal_i / totalNfts
      tranche 2: amount_i = POT2 * bal_i / totalNfts

Step D: Rounding remainder
  delta = PB - sum(amount_i). One raw unit goes to each pioneer in address
  order until delta is 0 (starting over from the first address when delta is
  larger than the number of pioneers, which only time weighting can cause).
  Afterwards sum(amount_i) == PB exactly, or we raise InvariantViolation.

Step E: Treasury
  The revenue receiver is looked up by name in the AddressManager. If it
  cannot be resolved we warn (ResolutionWarning) and leave TB out; the
  allocations then only sum to PB. If the receiver is itself a pioneer its TB
  is added to that record so no address appears twice.

Pioneers with a zero balance get no record.

Outputs
=======
    allocations/revshare_backfill_allocations.json
    allocations/revshare_backfill_allocations.csv   (address,amountRaw)

The JSON contains no timestamps: the same snapshot and configuration always
produce a byte-identical file.

Usage
=====
    python -m RevShareBackfill allocate
"""

import sys
import warnings
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from eth_utils import is_address

from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill.BackfillCommon import (
    BPS_DENOMINATOR,
    BackfillError,
    ConfigError,
    InvariantViolation,
    ResolutionWarning,
    format_raw,
    normalize_addr,
    parse_amount_to_raw,
)
from RevShareBackfill.BackfillConfig import BackfillConfig, TimeWeighting, load_config
from RevShareBackfill.TreasuryRegistry import AddressManagerRegistry, AddressRegistry

Resolver = Union[AddressRegistry, Callable[[str], Optional[str]]]

# (address, nftBalance, tranche)
Holder = Tuple[str, int, int]


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

def load_holders(snapshot: Dict[str, Any]) -> List[Holder]:
    """
    Validate the snapshot pioneers and return them sorted by address.
    Duplicate addresses are rejected here; the export step already merged them.
    """
    pioneers = snapshot.get("pioneers") or []
    if not pioneers:
        raise ConfigError("No pioneers found in snapshot. Run the export stage first.")

    seen = set()
    holders: List[Holder] = []
    for idx, p in enumerate(pioneers):
        addr = normalize_addr(str(p.get("address") or ""))
        if not addr:
            raise ConfigError(f"Pioneer {idx}: empty address")
        if addr in seen:
            raise ConfigError(f"Pioneer {addr} appears more than once in the snapshot")
        seen.add(addr)

        try:
            bal = int(str(p.get("nftBalance", "")).strip())
        except ValueError:
            raise ConfigError(f"Pioneer {addr}: nftBalance is not an integer ({p.get('nftBalance')!r})")
        if bal < 0:
            raise ConfigError(f"Pioneer {addr}: negative nftBalance {bal}")

        tranche = p.get("tranche")
        if tranche not in (1, 2):
            raise ConfigError(f"Pioneer {addr}: tranche must be 1 or 2 (got {tranche!r})")

        holders.append((addr, bal, tranche))

    holders.sort(key=lambda h: h[0])
    return holders


def check_snapshot_total(snapshot: Dict[str, Any], total_nfts: int) -> None:
    from_file = snapshot.get("totalNftsFromMap")
    if from_file is not None and int(from_file) != total_nfts:
        print(
            f"Warning: totalNftsFromMap ({from_file}) != recomputed totalNfts ({total_nfts})",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# Core computation
# ---------------------------------------------------------------------------

def split_backfill(total_raw: int, pioneers_share_bps: int) -> Tuple[int, int]:
    """Return (pioneers pool, treasury pool); they always sum to total_raw."""
    pioneers_raw = total_raw * pioneers_share_bps // BPS_DENOMINATOR
    return pioneers_raw, total_raw - pioneers_raw


def pro_rata_amounts(pool: int, holders: List[Holder], total_nfts: int) -> List[Tuple[str, int]]:
    return [(addr, pool * bal // total_nfts) for addr, bal, _t in holders if bal > 0]


def time_weighted_amounts(
    pool: int,
    holders: List[Holder],
    total_nfts: int,
    tranche1_nfts: int,
    tw: TimeWeighting,
) -> Tuple[List[Tuple[str, int]], int, int]:
    """Return (amounts, segment1 pot, segment2 pot)."""
    pot1 = pool * tw.segment1_duration // tw.total_duration
    pot2 = pool - pot1

    amounts: List[Tuple[str, int]] = []
    for addr, bal, tranche in holders:
        if bal == 0:
            continue
        amount = pot2 * bal // total_nfts
        if tranche == 1:
            amount += pot1 * bal // tranche1_nfts
        amounts.append((addr, amount))
    return amounts, pot1, pot2


def distribute_remainder(amounts: List[Tuple[str, int]], target: int) -> Tuple[List[Dict[str, str]], int]:
    """
    Hand out target - sum(amounts) one raw unit at a time in list order.
    Returns the allocation records and the delta that was distributed.
    """
    values = [amt for _addr, amt in amounts]
    delta = target - sum(values)
    if delta < 0:
        raise InvariantViolation(f"Floored allocations exceed the pool by {-delta} raw units")
    if delta and not values:
        raise InvariantViolation(f"No pioneers to receive the remaining {delta} raw units")

    full_rounds, rest = divmod(delta, len(values)) if values else (0, 0)
    for i in range(len(values)):
        values[i] += full_rounds + (1 if i < rest else 0)

    if sum(values) != target:
        raise InvariantViolation(
            f"Sum of pioneers allocations ({sum(values)}) != pioneersBackfillRaw ({target}) after adjustment"
        )

    records = [{"address": addr, "amountRaw": str(v)} for (addr, _a), v in zip(amounts, values)]
    return records, delta


def resolve_treasury(registry: Optional[Resolver], key: str) -> Optional[str]:
    """Resolve the revenue receiver, warning instead of failing when it is unavailable."""
    if registry is None:
        warnings.warn(
            "Treasury registry not configured (ARBITRUM_MAINNET_RPC_URL / ADDRESS_MANAGER_ADDRESS). "
            "Skipping Takadao allocation entry; set them and rerun if you want it included.",
            ResolutionWarning,
            stacklevel=2,
        )
        return None

    lookup = registry.resolve_address if isinstance(registry, AddressRegistry) else registry
    addr = normalize_addr(lookup(key) or "")
    if not addr:
        warnings.warn(
            f"Could not resolve {key} from the registry. Skipping Takadao allocation entry.",
            ResolutionWarning,
            stacklevel=2,
        )
        return None
    if not is_address(addr):
        warnings.warn(
            f"Registry returned an invalid address for {key}: {addr!r}. Skipping Takadao allocation entry.",
            ResolutionWarning,
            stacklevel=2,
        )
        return None
    return addr


def add_treasury(records: List[Dict[str, str]], receiver: str, amount: int) -> None:
    for r in records:
        if r["address"] == receiver:
            print(f"Revenue receiver {receiver} is also a pioneer; merging its allocation.", file=sys.stderr)
            r["amountRaw"] = str(int(r["amountRaw"]) + amount)
            return
    records.append({"address": receiver, "amountRaw": str(amount)})


def compute_allocations(
    snapshot: Dict[str, Any],
    config: BackfillConfig,
    registry: Optional[Resolver] = None,
) -> Dict[str, Any]:
    config.require_allocation()
    decimals = config.token_decimals
    tw = config.time_weighting

    # Eager preconditions: everything that could divide by zero is checked here.
    total_raw = parse_amount_to_raw(config.total_backfill_tokens, decimals)
    holders = load_holders(snapshot)
    total_nfts = sum(bal for _a, bal, _t in holders)
    tranche1_nfts = sum(bal for _a, bal, t in holders if t == 1)
    if total_nfts == 0:
        raise ConfigError("Total NFT balance is zero; nothing to allocate against.")
    if tw is not None and tranche1_nfts == 0:
        raise ConfigError("Time weighting is on but tranche 1 holds no NFTs.")

    print(f"Loaded {len(holders)} pioneers, total NFTs: {total_nfts}", file=sys.stderr)
    check_snapshot_total(snapshot, total_nfts)

    pioneers_raw, takadao_raw = split_backfill(total_raw, config.pioneers_share_bps)
    print(f"TOTAL_BACKFILL: {config.total_backfill_tokens} tokens = {total_raw} raw", file=sys.stderr)
    print(
        f"Pioneers share ({config.pioneers_share_bps} bps) raw: {pioneers_raw} "
        f"(~{format_raw(pioneers_raw, decimals)} tokens)",
        file=sys.stderr,
    )
    print(f"Takadao share raw: {takadao_raw} (~{format_raw(takadao_raw, decimals)} tokens)", file=sys.stderr)

    time_weighting_out: Optional[Dict[str, Any]] = None
    if tw is None:
        amounts = pro_rata_amounts(pioneers_raw, holders, total_nfts)
    else:
        amounts, pot1, pot2 = time_weighted_amounts(pioneers_raw, holders, total_nfts, tranche1_nfts, tw)
        time_weighting_out = {
            "tranche1StartTs": tw.tranche1_start_ts,
            "tranche2StartTs": tw.tranche2_start_ts,
            "backfillEndTs": tw.backfill_end_ts,
            "segment1PotRaw": str(pot1),
            "segment2PotRaw": str(pot2),
        }
        print(f"Time weighting on: segment1 pot {pot1} raw, segment2 pot {pot2} raw", file=sys.stderr)

    print(f"Sum of pioneers allocations BEFORE delta: {sum(a for _x, a in amounts)} raw", file=sys.stderr)
    records, delta = distribute_remainder(amounts, pioneers_raw)
    print(f"Delta distributed (raw units): {delta}", file=sys.stderr)

    receiver = resolve_treasury(registry, config.revenue_receiver_key)
    if receiver is not None:
        print(f"{config.revenue_receiver_key} resolved to: {receiver}", file=sys.stderr)
        if takadao_raw > 0:
            add_treasury(records, receiver, takadao_raw)

    expected = total_raw if receiver is not None else pioneers_raw
    allocated = sum(int(r["amountRaw"]) for r in records)
    if allocated != expected:
        raise InvariantViolation(f"Sum of ALL allocations ({allocated}) != expected total ({expected})")
    if len({r["address"] for r in records}) != len(records):
        raise InvariantViolation("An address appears more than once in the allocations")
    print(f"Sum of ALL allocations: {allocated} raw (expected {expected})", file=sys.stderr)

    return {
        "snapshotBlock": snapshot.get("snapshotBlock"),
        "tokenDecimals": decimals,
        "totalBackfillTokens": config.total_backfill_tokens,
        "totalBackfillRaw": str(total_raw),
        "pioneersBackfillRaw": str(pioneers_raw),
        "takadaoBackfillRaw": str(takadao_raw),
        "pioneersShareBps": config.pioneers_share_bps,
        "totalNfts": str(total_nfts),
        "tranche1Nfts": str(tranche1_nfts),
        "perNftRaw": str(pioneers_raw // total_nfts),  # informational only
        "pioneersCount": len(holders),
        "timeWeighting": time_weighting_out,
        "treasuryReceiver": receiver,
        "allocations": records,
    }


def render_allocations(result: Dict[str, Any]) -> Dict[str, str]:
    return {
        artifacts.ALLOCATIONS_JSON: artifacts.dump_json(result),
        artifacts.ALLOCATIONS_CSV: artifacts.dump_csv(
            ["address", "amountRaw"],
            ((a["address"], a["amountRaw"]) for a in result["allocations"]),
        ),
    }


def default_registry(config: BackfillConfig) -> Optional[AddressRegistry]:
    if not config.rpc_url or not config.address_manager_address:
        return None
    return AddressManagerRegistry(config.rpc_url, config.address_manager_address)


def run(
    config: BackfillConfig,
    store: artifacts.ArtifactStore,
    registry: Optional[Resolver] = None,
) -> Dict[str, Any]:
    config.require_allocation()
    snapshot = store.read_json(artifacts.PIONEERS_JSON, producer="export")
    if registry is None:
        registry = default_registry(config)

    result = compute_allocations(snapshot, config, registry)

    digests = store.write_group(render_allocations(result))
    for key, digest in digests.items():
        print(f"Wrote: {store.describe(key)} (sha256 {digest})", file=sys.stderr)
    return result


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    try:
        config = load_config()
        run(config, artifacts.LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Error while building backfill allocations: {e}")


if __name__ == "__main__":
    main()
