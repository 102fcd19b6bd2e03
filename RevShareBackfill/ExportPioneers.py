#!/usr/bin/env python3
"""
ExportPioneers.py: STEP 1 of the RevShare backfill pipeline.

Export every RevShare NFT holder ("pioneer") with a positive balance from the
subgraph and write a snapshot that the allocation step consumes.

Inputs
======
Environment (see BackfillConfig.py):
    SUBGRAPH_URL     required
    PAGE_SIZE        entities per page (default 1000)
    SNAPSHOT_BLOCK   optional; pins all pages to one block for a consistent view
    TRANCHE_FILE     optional CSV (address,tranche) overriding the midpoint split

Behavior
========
- Pages `pioneers(first, skip, where: {balance_gt: 0})` until a page returns
  fewer than PAGE_SIZE rows. Pages are fetched strictly one after another.
- Without SNAPSHOT_BLOCK every page reads the latest indexed block; pages may
  then disagree slightly while indexing progresses. That is accepted.
- `globalNftStat` is taken from the first page that carries it.
- Addresses are lowercased and duplicates (same holder split across pages)
  are merged by summing balances.
- Rows are sorted by address. Tranches come from a classifier; the default
  puts the first half of the sorted list in tranche 1 and the rest in
  tranche 2. This positional split is a placeholder, not a join-date rule.
- If the summed balances differ from globalNftStat.currentSupply we only warn
  (indexer lag).

Any HTTP error or GraphQL error aborts the export before anything is written.

Outputs
=======
    pioneers/revshare_pioneers.json
        {snapshotBlock, totalNftsFromMap, totalPioneers, globalStats, pioneers: [...]}
    pioneers/revshare_pioneers.csv
        address,nftBalance,tranche

Usage
=====
    python -m RevShareBackfill export
"""

import csv
import sys
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill.BackfillCommon import BackfillError, ConfigError, IndexerError, normalize_addr
from RevShareBackfill.BackfillConfig import BackfillConfig, load_config

RETRY_MAX = 5
RETRY_BACKOFF = 1.6  # exponential backoff factor for transport retries
TIMEOUT = 30  # seconds

PIONEERS_QUERY = """
query Pioneers($first: Int!, $skip: Int!, $block: Block_height) {
  pioneers(first: $first, skip: $skip, where: { balance_gt: 0 }, block: $block) {
    pioneerAddress
    balance
  }
  globalNftStat(id: "global", block: $block) {
    currentSupply
    totalUniquePioneers
  }
}
"""

# classify(index, total, pioneer_row) -> tranche (1 or 2)
TrancheClassifier = Callable[[int, int, Dict[str, Any]], int]


# ---------------------------------------------------------------------------
# Subgraph GraphQL
# ---------------------------------------------------------------------------

def gql(session: requests.Session, url: str, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
    """
    POST a GraphQL query and return its "data" field.

    Connection errors and timeouts are retried with exponential backoff.
    A non-2xx status or a populated "errors" array is not retried: the
    request reached the subgraph and was rejected, so we raise IndexerError.
    """
    payload = {"query": query, "variables": variables}
    last_exc: Optional[Exception] = None

    for attempt in range(1, RETRY_MAX + 1):
        try:
            resp = session.post(url, json=payload, timeout=TIMEOUT)
        except (requests.ConnectionError, requests.Timeout) as e:
            last_exc = e
            if attempt == RETRY_MAX:
                break
            time.sleep(RETRY_BACKOFF ** (attempt - 1))
            continue

        if not resp.ok:
            raise IndexerError(f"Subgraph HTTP error: {resp.status_code} {resp.reason}\n{resp.text}")

        try:
            body = resp.json()
        except ValueError as e:
            raise IndexerError(f"Subgraph returned a non-JSON body: {resp.text[:200]!r}") from e

        if body.get("errors"):
            raise IndexerError(f"Subgraph GraphQL error: {body['errors']}")
        return body.get("data") or {}

    raise IndexerError(f"Subgraph request failed after {RETRY_MAX} attempts: {last_exc}")


def fetch_pioneers_page(
    session: requests.Session,
    url: str,
    first: int,
    skip: int,
    block_number: Optional[int],
) -> Dict[str, Any]:
    variables: Dict[str, Any] = {"first": first, "skip": skip}
    if block_number is not None:
        variables["block"] = {"number": block_number}
    return gql(session, url, PIONEERS_QUERY, variables)


# ---------------------------------------------------------------------------
# Tranche classifiers
# ---------------------------------------------------------------------------

def midpoint_tranche(index: int, total: int, pioneer: Dict[str, Any]) -> int:
    """First half of the address-sorted list -> tranche 1, second half -> tranche 2."""
    return 1 if index < total // 2 else 2


def load_tranche_file(path: str) -> TrancheClassifier:
    """
    Build a classifier from a CSV with columns address,tranche.
    Every exported address must be listed.
    """
    mapping: Dict[str, int] = {}
    with open(path, "r", newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        cols = set(reader.fieldnames or [])
        if "address" not in cols or "tranche" not in cols:
            raise ConfigError(f"{path} must have columns address,tranche")
        for row in reader:
            addr = normalize_addr(row.get("address") or "")
            if not addr:
                continue
            tranche_raw = (row.get("tranche") or "").strip()
            if tranche_raw not in ("1", "2"):
                raise ConfigError(f"{path}: tranche for {addr} must be 1 or 2 (got {tranche_raw!r})")
            mapping[addr] = int(tranche_raw)

    def classify(index: int, total: int, pioneer: Dict[str, Any]) -> int:
        tranche = mapping.get(pioneer["address"])
        if tranche is None:
            raise ConfigError(f"{path} has no tranche for pioneer {pioneer['address']}")
        return tranche

    return classify


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------

def aggregate_pioneers(raw_pioneers: List[Dict[str, Any]]) -> Dict[str, int]:
    """Lowercase addresses and sum balances of duplicates."""
    balances: Dict[str, int] = {}
    for p in raw_pioneers:
        addr = normalize_addr(str(p.get("pioneerAddress") or ""))
        if not addr:
            continue
        try:
            balance = int(p.get("balance") or 0)
        except (TypeError, ValueError) as e:
            raise IndexerError(f"Subgraph returned a non-integer balance for {addr}: {p.get('balance')!r}") from e
        balances[addr] = balances.get(addr, 0) + balance
    return balances


def build_snapshot(
    balances: Dict[str, int],
    global_stats: Optional[Dict[str, int]],
    snapshot_block: Optional[int],
    classify: Optional[TrancheClassifier] = None,
) -> Dict[str, Any]:
    classify = classify or midpoint_tranche

    rows: List[Dict[str, Any]] = [
        {"address": addr, "nftBalance": str(bal)} for addr, bal in sorted(balances.items())
    ]
    total = len(rows)
    for idx, row in enumerate(rows):
        tranche = classify(idx, total, row)
        if tranche not in (1, 2):
            raise ConfigError(f"Tranche classifier returned {tranche!r} for {row['address']}")
        row["tranche"] = tranche

    total_nfts = sum(int(r["nftBalance"]) for r in rows)

    return {
        "snapshotBlock": snapshot_block,
        "totalNftsFromMap": str(total_nfts),
        "totalPioneers": total,
        "globalStats": (
            {
                "currentSupply": str(global_stats["currentSupply"]),
                "totalUniquePioneers": str(global_stats["totalUniquePioneers"]),
            }
            if global_stats
            else None
        ),
        "pioneers": rows,
    }


def export_pioneers(
    session: requests.Session,
    subgraph_url: str,
    page_size: int,
    snapshot_block: Optional[int] = None,
    classify: Optional[TrancheClassifier] = None,
) -> Dict[str, Any]:
    """Page through the subgraph and return the snapshot (nothing is written here)."""
    if page_size < 1:
        raise ConfigError(f"page size must be >= 1 (got {page_size})")

    all_pioneers: List[Dict[str, Any]] = []
    global_stats: Optional[Dict[str, int]] = None
    skip = 0

    while True:
        print(f"Fetching page: first={page_size}, skip={skip} ...", file=sys.stderr)
        data = fetch_pioneers_page(session, subgraph_url, page_size, skip, snapshot_block)
        pioneers = data.get("pioneers") or []

        stat = data.get("globalNftStat")
        if global_stats is None and stat:
            try:
                global_stats = {
                    "currentSupply": int(stat["currentSupply"]),
                    "totalUniquePioneers": int(stat["totalUniquePioneers"]),
                }
            except (KeyError, TypeError, ValueError) as e:
                raise IndexerError(f"Malformed globalNftStat in subgraph response: {stat!r}") from e

        all_pioneers.extend(pioneers)
        print(f"  -> got {len(pioneers)} pioneers (total so far: {len(all_pioneers)})", file=sys.stderr)

        if len(pioneers) < page_size:
            break  # last page
        skip += page_size

    balances = aggregate_pioneers(all_pioneers)
    return build_snapshot(balances, global_stats, snapshot_block, classify)


def check_supply(snapshot: Dict[str, Any]) -> None:
    """Warn (never fail) when the summed balances disagree with the subgraph's own supply counter."""
    stats = snapshot.get("globalStats")
    if not stats:
        print("Warning: globalNftStat not found in subgraph response.", file=sys.stderr)
        return
    if stats["currentSupply"] != snapshot["totalNftsFromMap"]:
        print(
            f"Warning: totalNftsFromMap ({snapshot['totalNftsFromMap']}) != "
            f"globalNftStat.currentSupply ({stats['currentSupply']}). Indexer may be lagging.",
            file=sys.stderr,
        )


def render_snapshot(snapshot: Dict[str, Any]) -> Dict[str, str]:
    return {
        artifacts.PIONEERS_JSON: artifacts.dump_json(snapshot),
        artifacts.PIONEERS_CSV: artifacts.dump_csv(
            ["address", "nftBalance", "tranche"],
            ((p["address"], p["nftBalance"], p["tranche"]) for p in snapshot["pioneers"]),
        ),
    }


def run(config: BackfillConfig, store: artifacts.ArtifactStore, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    config.require_export()
    classify = load_tranche_file(config.tranche_file) if config.tranche_file else None

    if config.snapshot_block is not None:
        print(f"Using snapshot block: {config.snapshot_block}", file=sys.stderr)
    else:
        print("Using latest block (no snapshot block set).", file=sys.stderr)

    own_session = session is None
    if own_session:
        session = requests.Session()
        session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "revshare-backfill/1.0",
            }
        )
    try:
        snapshot = export_pioneers(
            session,
            config.subgraph_url,
            config.page_size,
            config.snapshot_block,
            classify,
        )
    finally:
        if own_session:
            session.close()

    print(f"Pioneers with balance > 0: {snapshot['totalPioneers']}", file=sys.stderr)
    print(f"Total NFTs from map:      {snapshot['totalNftsFromMap']}", file=sys.stderr)
    check_supply(snapshot)

    digests = store.write_group(render_snapshot(snapshot))
    for key, digest in digests.items():
        print(f"Wrote: {store.describe(key)} (sha256 {digest})", file=sys.stderr)
    return snapshot


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    try:
        config = load_config()
        run(config, artifacts.LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Error while exporting pioneers: {e}")


if __name__ == "__main__":
    main()
