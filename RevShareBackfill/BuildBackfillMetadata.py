#!/usr/bin/env python3
"""
BuildBackfillMetadata.py: STEP 4 of the RevShare backfill pipeline.

Summarize the allocations per batch, without touching the chain. The batch
boundaries are the same as in BuildBackfillBatches.py for the same
BACKFILL_BATCH_SIZE, so both outputs can be reconciled line by line.

Outputs
=======
    metadata/revshare_backfill_batches_summary.json / .csv
        batchIndex,startIndex,endIndex,numAddresses,sumRaw,sumTokens
    metadata/revshare_backfill_batches_detailed.json / .csv
        batchIndex,address,amountRaw,amountTokens

Usage
=====
    python -m RevShareBackfill metadata
"""

import sys
from typing import Any, Dict, List

from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill.BackfillCommon import BackfillError, format_raw, iter_batches, load_allocation_records
from RevShareBackfill.BackfillConfig import BackfillConfig, load_config

SUMMARY_HEADER = ["batchIndex", "startIndex", "endIndex", "numAddresses", "sumRaw", "sumTokens"]
DETAILED_HEADER = ["batchIndex", "address", "amountRaw", "amountTokens"]


def build_summary(allocations_json: Dict[str, Any], batch_size: int) -> Dict[str, Dict[str, Any]]:
    allocations, decimals = load_allocation_records(allocations_json)

    batches: List[Dict[str, Any]] = []
    rows: List[Dict[str, Any]] = []
    total = 0

    for batch in iter_batches(allocations, batch_size):
        sum_raw = batch.sum_raw
        total += sum_raw
        batches.append(
            {
                "batchIndex": batch.batch_index,
                "startIndex": batch.start_index,
                "endIndex": batch.end_index,
                "numAddresses": batch.num_addresses,
                "sumRaw": str(sum_raw),
                "sumTokens": format_raw(sum_raw, decimals),
            }
        )
        for addr, amount in zip(batch.accounts, batch.amounts):
            rows.append(
                {
                    "batchIndex": batch.batch_index,
                    "address": addr,
                    "amountRaw": str(amount),
                    "amountTokens": format_raw(amount, decimals),
                }
            )

    summary = {
        "tokenDecimals": decimals,
        "batchSize": batch_size,
        "totalAllocations": len(allocations),
        "totalFromAllocationsRaw": str(total),
        "totalFromAllocationsTokens": format_raw(total, decimals),
        "batches": batches,
    }
    detailed = {
        "tokenDecimals": decimals,
        "batchSize": batch_size,
        "rows": rows,
    }
    return {"summary": summary, "detailed": detailed}


def render_summary(result: Dict[str, Dict[str, Any]]) -> Dict[str, str]:
    summary, detailed = result["summary"], result["detailed"]
    return {
        artifacts.SUMMARY_JSON: artifacts.dump_json(summary),
        artifacts.SUMMARY_CSV: artifacts.dump_csv(
            SUMMARY_HEADER, ([b[h] for h in SUMMARY_HEADER] for b in summary["batches"])
        ),
        artifacts.DETAILED_JSON: artifacts.dump_json(detailed),
        artifacts.DETAILED_CSV: artifacts.dump_csv(
            DETAILED_HEADER, ([r[h] for h in DETAILED_HEADER] for r in detailed["rows"])
        ),
    }


def run(config: BackfillConfig, store: artifacts.ArtifactStore) -> Dict[str, Dict[str, Any]]:
    config.require_batch_size()
    allocations_json = store.read_json(artifacts.ALLOCATIONS_JSON, producer="allocate")

    result = build_summary(allocations_json, config.batch_size)
    summary = result["summary"]
    print(
        f"Total from allocations: {summary['totalFromAllocationsRaw']} raw "
        f"(~{summary['totalFromAllocationsTokens']} tokens)",
        file=sys.stderr,
    )
    print(f"Built metadata for {len(summary['batches'])} batches.", file=sys.stderr)

    digests = store.write_group(render_summary(result))
    for key, digest in digests.items():
        print(f"Wrote: {store.describe(key)} (sha256 {digest})", file=sys.stderr)
    return result


def main():
    try:
        config = load_config()
        run(config, artifacts.LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Error while building RevShare backfill metadata: {e}")


if __name__ == "__main__":
    main()
