#!/usr/bin/env python3
"""
VerifyBackfillBatches.py: optional check between STEP 3/4 and execution.

Decode every transaction in the Safe batch and make sure it pays exactly what
the allocations file says, in the same batches the metadata summary lists:

  - each tx targets the same contract and starts with the backfill selector
  - decoded (batchIndex, numAddresses, sumRaw) == summary batches
  - decoded accounts/amounts, concatenated, == allocations (same order)
  - no account is paid twice
  - decoded total == sum of allocations

Any mismatch raises InvariantViolation and nothing is written.

Output
======
    verify/revshare_backfill_verification.json

Usage
=====
    python -m RevShareBackfill verify
"""

import sys
from typing import Any, Dict, List, Tuple

from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector, to_bytes

from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill.BackfillCommon import (
    BackfillError,
    InvariantViolation,
    load_allocation_records,
    normalize_addr,
)
from RevShareBackfill.BackfillConfig import BackfillConfig, load_config
from RevShareBackfill.BuildBackfillBatches import BACKFILL_ARG_TYPES, backfill_signature


def decode_backfill_call(data: str, function_name: str) -> Tuple[List[str], List[int]]:
    raw = to_bytes(hexstr=data)
    selector = function_signature_to_4byte_selector(backfill_signature(function_name))
    if raw[:4] != selector:
        raise InvariantViolation(f"Unexpected selector 0x{raw[:4].hex()} (expected 0x{selector.hex()})")
    accounts, amounts = decode(BACKFILL_ARG_TYPES, raw[4:])
    return [normalize_addr(a) for a in accounts], list(amounts)


def verify_batches(
    allocations_json: Dict[str, Any],
    safe_batch: Dict[str, Any],
    summary: Dict[str, Any],
    function_name: str,
) -> Dict[str, Any]:
    allocations, _decimals = load_allocation_records(allocations_json)
    transactions = safe_batch.get("transactions") or []
    expected_batches = summary.get("batches") or []

    if len(transactions) != len(expected_batches):
        raise InvariantViolation(
            f"Safe batch has {len(transactions)} txs but the summary lists {len(expected_batches)} batches"
        )

    targets = {normalize_addr(tx.get("to") or "") for tx in transactions}
    if len(targets) > 1:
        raise InvariantViolation(f"Safe batch targets more than one contract: {sorted(targets)}")

    decoded_accounts: List[str] = []
    decoded_amounts: List[int] = []
    triples: List[Dict[str, Any]] = []

    for idx, (tx, expected) in enumerate(zip(transactions, expected_batches)):
        if str(tx.get("value", "0")) != "0":
            raise InvariantViolation(f"Tx {idx} sends value {tx.get('value')!r}; backfill calls must send 0")

        accounts, amounts = decode_backfill_call(tx.get("data") or "0x", function_name)
        got = (idx, len(accounts), sum(amounts))
        want = (int(expected["batchIndex"]), int(expected["numAddresses"]), int(expected["sumRaw"]))
        if got != want:
            raise InvariantViolation(f"Batch {idx}: decoded (index, count, sum) {got} != summary {want}")

        triples.append({"batchIndex": idx, "numAddresses": got[1], "sumRaw": str(got[2])})
        decoded_accounts.extend(accounts)
        decoded_amounts.extend(amounts)

    expected_accounts = [normalize_addr(a["address"]) for a in allocations]
    expected_amounts = [int(a["amountRaw"]) for a in allocations]
    if decoded_accounts != expected_accounts or decoded_amounts != expected_amounts:
        raise InvariantViolation("Decoded accounts/amounts do not match the allocations file")

    if len(set(decoded_accounts)) != len(decoded_accounts):
        raise InvariantViolation("An account is paid more than once across the Safe batch")

    total = sum(decoded_amounts)
    if total != sum(expected_amounts):
        raise InvariantViolation(f"Decoded total {total} != allocations total {sum(expected_amounts)}")

    return {
        "target": next(iter(targets), None),
        "function": backfill_signature(function_name),
        "totalBatches": len(triples),
        "totalAddresses": len(decoded_accounts),
        "totalRaw": str(total),
        "totalBackfillRaw": allocations_json.get("totalBackfillRaw"),
        "treasuryIncluded": allocations_json.get("treasuryReceiver") is not None,
        "batches": triples,
    }


def run(config: BackfillConfig, store: artifacts.ArtifactStore) -> Dict[str, Any]:
    allocations_json = store.read_json(artifacts.ALLOCATIONS_JSON, producer="allocate")
    safe_batch = store.read_json(artifacts.SAFE_BATCH_JSON, producer="batches")
    summary = store.read_json(artifacts.SUMMARY_JSON, producer="metadata")

    report = verify_batches(allocations_json, safe_batch, summary, config.backfill_function)
    print(
        f"Verified {report['totalBatches']} txs paying {report['totalAddresses']} addresses "
        f"{report['totalRaw']} raw in total",
        file=sys.stderr,
    )
    if not report["treasuryIncluded"]:
        print("Warning: allocations do not include the Takadao treasury share.", file=sys.stderr)

    digests = store.write_group({artifacts.VERIFICATION_JSON: artifacts.dump_json(report)})
    for key, digest in digests.items():
        print(f"Wrote: {store.describe(key)} (sha256 {digest})", file=sys.stderr)
    return report


def main():
    try:
        config = load_config()
        run(config, artifacts.LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Verification failed: {e}")


if __name__ == "__main__":
    main()
