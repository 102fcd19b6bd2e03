#!/usr/bin/env python3
"""
BuildBackfillBatches.py: STEP 3 of the RevShare backfill pipeline.

Package the allocations into adminBackfillRevenue(address[], uint256[]) calls
on the RevShareModule, BACKFILL_BATCH_SIZE addresses per call, and write:

  1) safe/revshare_backfill_safe_batch.json
     A Safe Transaction Builder batch: one zero-value CALL per batch to the
     RevShareModule. Gas / refund / nonce fields are zeroed, the Safe UI
     fills them when the batch is proposed.

  2) calldata/revshare_backfill_calldata.json and .csv
     The same calls with accounts, amounts, the encoded calldata and a
     human-readable sum per batch, for a manual check before signing.

Allocations are batched in the order they appear in the allocations file.
They are not re-sorted here.

Usage
=====
    python -m RevShareBackfill batches
"""

import sys
import time
from typing import Any, Dict, List, Optional

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill.BackfillCommon import (
    ZERO_ADDRESS,
    BackfillError,
    ConfigError,
    format_raw,
    iter_batches,
    load_allocation_records,
)
from RevShareBackfill.BackfillConfig import DEFAULT_BACKFILL_FUNCTION, BackfillConfig, load_config

BACKFILL_ARG_TYPES = ["address[]", "uint256[]"]
TX_BUILDER_VERSION = "1.17.1"


def backfill_signature(function_name: str) -> str:
    return f"{function_name}({','.join(BACKFILL_ARG_TYPES)})"


def encode_backfill_call(function_name: str, accounts: List[str], amounts: List[int]) -> str:
    """ABI-encode function_name(address[] accounts, uint256[] amounts) as 0x-prefixed calldata."""
    if len(accounts) != len(amounts):
        raise ConfigError("accounts and amounts must have the same length")
    selector = function_signature_to_4byte_selector(backfill_signature(function_name))
    return "0x" + (selector + encode(BACKFILL_ARG_TYPES, [accounts, amounts])).hex()


def safe_transaction(to: str, data: str) -> Dict[str, Any]:
    """A SafeTransactionData entry for a plain CALL."""
    return {
        "to": to,
        "value": "0",
        "data": data,
        "operation": 0,  # 0 = CALL
        "baseGas": "0",
        "gasPrice": "0",
        "gasToken": ZERO_ADDRESS,
        "refundReceiver": ZERO_ADDRESS,
        "safeTxGas": "0",
        "nonce": 0,  # set by the Transaction Builder
    }


def build_batches(
    allocations_json: Dict[str, Any],
    batch_size: int,
    target: str,
    safe_address: str,
    chain_id: str,
    function_name: str = DEFAULT_BACKFILL_FUNCTION,
    created_at: Optional[int] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    Return {"safeBatch": ..., "calldata": ...} for the given allocations artifact.
    created_at is the Safe batch timestamp in milliseconds (defaults to now).
    """
    if not target or not is_address(target):
        raise ConfigError(f"Target contract address is missing or invalid: {target!r}")
    if not safe_address or not is_address(safe_address):
        raise ConfigError(f"Safe address is missing or invalid: {safe_address!r}")

    allocations, decimals = load_allocation_records(allocations_json)
    to = to_checksum_address(target)

    transactions: List[Dict[str, Any]] = []
    calldata_batches: List[Dict[str, Any]] = []

    for batch in iter_batches(allocations, batch_size):
        accounts = batch.accounts
        amounts = batch.amounts
        data = encode_backfill_call(function_name, accounts, amounts)
        sum_raw = sum(amounts)

        transactions.append(safe_transaction(to, data))
        calldata_batches.append(
            {
                "batchIndex": batch.batch_index,
                "to": to,
                "numAddresses": batch.num_addresses,
                "sumRaw": str(sum_raw),
                "sumTokens": format_raw(sum_raw, decimals),
                "accounts": accounts,
                "amounts": [str(a) for a in amounts],
                "calldata": data,
            }
        )

    safe_batch = {
        "version": "1.0",
        "chainId": str(chain_id),
        "createdAt": created_at if created_at is not None else int(time.time() * 1000),
        "meta": {
            "name": "RevShare backfill",
            "description": f"Backfill allocations for {len(allocations)} addresses (batch size {batch_size})",
            "txBuilderVersion": TX_BUILDER_VERSION,
            "createdFromSafeAddress": to_checksum_address(safe_address),
            "createdFromOwnerAddress": "",
        },
        "transactions": transactions,
    }

    calldata = {
        "revShareModule": to,
        "function": backfill_signature(function_name),
        "batchSize": batch_size,
        "tokenDecimals": decimals,
        "totalBatches": len(calldata_batches),
        "batches": calldata_batches,
    }

    return {"safeBatch": safe_batch, "calldata": calldata}


def render_batches(result: Dict[str, Dict[str, Any]]) -> Dict[str, str]:
    batches = result["calldata"]["batches"]
    return {
        artifacts.SAFE_BATCH_JSON: artifacts.dump_json(result["safeBatch"]),
        artifacts.CALLDATA_JSON: artifacts.dump_json(result["calldata"]),
        artifacts.CALLDATA_CSV: artifacts.dump_csv(
            ["batchIndex", "to", "numAddresses", "sumRaw", "sumTokens", "calldata"],
            (
                (b["batchIndex"], b["to"], b["numAddresses"], b["sumRaw"], b["sumTokens"], b["calldata"])
                for b in batches
            ),
        ),
    }


def run(config: BackfillConfig, store: artifacts.ArtifactStore) -> Dict[str, Dict[str, Any]]:
    config.require_batches()
    allocations_json = store.read_json(artifacts.ALLOCATIONS_JSON, producer="allocate")

    print(f"Using BATCH_SIZE = {config.batch_size}", file=sys.stderr)
    print(f"RevShareModule: {config.rev_share_module_address}", file=sys.stderr)

    result = build_batches(
        allocations_json,
        config.batch_size,
        config.rev_share_module_address,
        config.safe_address,
        config.safe_chain_id,
        config.backfill_function,
    )
    print(
        f"Constructed {result['calldata']['totalBatches']} {config.backfill_function} txs "
        f"for {len(allocations_json['allocations'])} addresses",
        file=sys.stderr,
    )

    digests = store.write_group(render_batches(result))
    for key, digest in digests.items():
        print(f"Wrote: {store.describe(key)} (sha256 {digest})", file=sys.stderr)
    print("You can now import the Safe batch in Safe > Transaction Builder.", file=sys.stderr)
    return result


def main():
    try:
        config = load_config()
        run(config, artifacts.LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Error while building RevShare backfill batches: {e}")


if __name__ == "__main__":
    main()
