"""
Tests for the Safe batch / calldata builder, the metadata summarizer and the
verification pass that reconciles them.
"""

from __future__ import annotations

import copy
import dataclasses

import pytest
from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector, to_bytes, to_checksum_address

from conftest import REV_SHARE_MODULE, SAFE
from RevShareBackfill import ArtifactStore as artifacts
from RevShareBackfill import BuildBackfillBatches, BuildBackfillMetadata, VerifyBackfillBatches
from RevShareBackfill.BackfillCommon import ConfigError, InvariantViolation, ZERO_ADDRESS

CREATED_AT = 1_700_000_000_000


def make_allocations(n: int, treasury: bool = True) -> dict:
    allocations = [{"address": f"0x{i + 1:040x}", "amountRaw": str((i + 1) * 1000)} for i in range(n)]
    return {
        "tokenDecimals": 6,
        "totalBackfillRaw": str(sum(int(a["amountRaw"]) for a in allocations)),
        "treasuryReceiver": allocations[-1]["address"] if treasury and allocations else None,
        "allocations": allocations,
    }


def build(allocations_json, batch_size=2, **kw):
    return BuildBackfillBatches.build_batches(
        allocations_json, batch_size, REV_SHARE_MODULE, SAFE, "42161", created_at=CREATED_AT, **kw
    )


class TestEncoding:
    def test_selector_and_arguments(self):
        accounts = ["0x" + "1" * 40, "0x" + "2" * 40]
        data = BuildBackfillBatches.encode_backfill_call("adminBackfillRevenue", accounts, [5, 7])

        raw = to_bytes(hexstr=data)
        assert raw[:4] == function_signature_to_4byte_selector("adminBackfillRevenue(address[],uint256[])")
        decoded_accounts, decoded_amounts = decode(["address[]", "uint256[]"], raw[4:])
        assert [a.lower() for a in decoded_accounts] == accounts
        assert list(decoded_amounts) == [5, 7]

    def test_length_mismatch(self):
        with pytest.raises(ConfigError):
            BuildBackfillBatches.encode_backfill_call("adminBackfillRevenue", ["0x" + "1" * 40], [])


class TestBuildBatches:
    def test_five_records_in_batches_of_two(self):
        result = build(make_allocations(5))

        txs = result["safeBatch"]["transactions"]
        batches = result["calldata"]["batches"]
        assert len(txs) == 3
        assert [b["numAddresses"] for b in batches] == [2, 2, 1]
        assert [b["sumRaw"] for b in batches] == ["3000", "7000", "5000"]
        assert result["calldata"]["totalBatches"] == 3

    def test_safe_transaction_fields(self):
        tx = build(make_allocations(1))["safeBatch"]["transactions"][0]

        assert tx["to"] == to_checksum_address(REV_SHARE_MODULE)
        assert tx["value"] == "0"
        assert tx["operation"] == 0
        assert tx["gasToken"] == ZERO_ADDRESS
        assert tx["refundReceiver"] == ZERO_ADDRESS
        assert tx["safeTxGas"] == tx["baseGas"] == tx["gasPrice"] == "0"
        assert tx["nonce"] == 0

    def test_batch_header(self):
        safe_batch = build(make_allocations(3))["safeBatch"]

        assert safe_batch["version"] == "1.0"
        assert safe_batch["chainId"] == "42161"
        assert safe_batch["createdAt"] == CREATED_AT
        assert safe_batch["meta"]["createdFromSafeAddress"] == to_checksum_address(SAFE)
        assert safe_batch["meta"]["txBuilderVersion"] == BuildBackfillBatches.TX_BUILDER_VERSION

    def test_calldata_matches_safe_transactions(self):
        result = build(make_allocations(5))

        for tx, batch in zip(result["safeBatch"]["transactions"], result["calldata"]["batches"]):
            assert tx["data"] == batch["calldata"]
            accounts, amounts = VerifyBackfillBatches.decode_backfill_call(batch["calldata"], "adminBackfillRevenue")
            assert accounts == batch["accounts"]
            assert [str(a) for a in amounts] == batch["amounts"]

    def test_input_order_is_kept(self):
        allocations_json = make_allocations(3)
        allocations_json["allocations"].reverse()

        result = build(allocations_json, batch_size=10)

        assert result["calldata"]["batches"][0]["accounts"] == [a["address"] for a in allocations_json["allocations"]]

    def test_custom_function_name(self):
        result = build(make_allocations(1), function_name="backfill")
        assert result["calldata"]["function"] == "backfill(address[],uint256[])"
        assert result["calldata"]["batches"][0]["calldata"].startswith(
            "0x" + function_signature_to_4byte_selector("backfill(address[],uint256[])").hex()
        )

    @pytest.mark.parametrize("target,safe", [("", SAFE), ("0x1234", SAFE), (REV_SHARE_MODULE, None)])
    def test_invalid_addresses(self, target, safe):
        with pytest.raises(ConfigError):
            BuildBackfillBatches.build_batches(make_allocations(1), 2, target, safe, "42161")

    def test_empty_allocations(self):
        with pytest.raises(ConfigError, match="No allocations"):
            build({"tokenDecimals": 6, "allocations": []})


class TestBuildSummary:
    def test_summary_rows(self):
        result = BuildBackfillMetadata.build_summary(make_allocations(5), 2)

        summary = result["summary"]
        assert summary["totalAllocations"] == 5
        assert summary["totalFromAllocationsRaw"] == "15000"
        assert summary["totalFromAllocationsTokens"] == "0.015"
        assert summary["batches"][2] == {
            "batchIndex": 2,
            "startIndex": 4,
            "endIndex": 4,
            "numAddresses": 1,
            "sumRaw": "5000",
            "sumTokens": "0.005",
        }

    def test_detailed_rows(self):
        rows = BuildBackfillMetadata.build_summary(make_allocations(3), 2)["detailed"]["rows"]

        assert [r["batchIndex"] for r in rows] == [0, 0, 1]
        assert rows[0] == {"batchIndex": 0, "address": "0x" + "0" * 39 + "1", "amountRaw": "1000", "amountTokens": "0.001"}

    @pytest.mark.parametrize("n,batch_size", [(1, 1), (5, 2), (20, 20), (21, 20), (45, 7)])
    def test_partition_agrees_with_batches(self, n, batch_size):
        allocations_json = make_allocations(n)
        calldata = build(allocations_json, batch_size)["calldata"]["batches"]
        summary = BuildBackfillMetadata.build_summary(allocations_json, batch_size)["summary"]["batches"]

        assert [(b["batchIndex"], b["numAddresses"], b["sumRaw"]) for b in calldata] == [
            (b["batchIndex"], b["numAddresses"], b["sumRaw"]) for b in summary
        ]

    def test_csv_output(self):
        rendered = BuildBackfillMetadata.render_summary(BuildBackfillMetadata.build_summary(make_allocations(3), 2))

        lines = rendered[artifacts.SUMMARY_CSV].splitlines()
        assert lines[0] == "batchIndex,startIndex,endIndex,numAddresses,sumRaw,sumTokens"
        assert lines[1] == "0,0,1,2,3000,0.003"
        assert len(rendered[artifacts.DETAILED_CSV].splitlines()) == 4


class TestMalformedAllocations:
    BAD_RECORDS = [
        {"address": "not-an-address", "amountRaw": "5"},
        {"address": "0x" + "1" * 40, "amountRaw": str(2**256)},
    ]

    @pytest.mark.parametrize("record", BAD_RECORDS)
    def test_batch_builder_rejects(self, record):
        with pytest.raises(ConfigError):
            build({"tokenDecimals": 6, "allocations": [record]})

    @pytest.mark.parametrize("record", BAD_RECORDS)
    def test_summarizer_rejects(self, record):
        with pytest.raises(ConfigError):
            BuildBackfillMetadata.build_summary({"tokenDecimals": 6, "allocations": [record]}, 2)

    def test_largest_uint256_amount_encodes(self):
        result = build({"tokenDecimals": 6, "allocations": [{"address": "0x" + "1" * 40, "amountRaw": str(2**256 - 1)}]})
        assert result["calldata"]["batches"][0]["sumRaw"] == str(2**256 - 1)


class TestVerify:
    def _artifacts(self, n=5, batch_size=2):
        allocations_json = make_allocations(n)
        safe_batch = build(allocations_json, batch_size)["safeBatch"]
        summary = BuildBackfillMetadata.build_summary(allocations_json, batch_size)["summary"]
        return allocations_json, safe_batch, summary

    def test_consistent_artifacts_pass(self):
        allocations_json, safe_batch, summary = self._artifacts()

        report = VerifyBackfillBatches.verify_batches(allocations_json, safe_batch, summary, "adminBackfillRevenue")

        assert report["totalBatches"] == 3
        assert report["totalAddresses"] == 5
        assert report["totalRaw"] == "15000"
        assert report["treasuryIncluded"] is True

    def test_tampered_amount_is_caught(self):
        allocations_json, safe_batch, summary = self._artifacts()
        tampered = copy.deepcopy(allocations_json)
        tampered["allocations"][0]["amountRaw"] = "999"
        safe_batch = build(tampered)["safeBatch"]

        with pytest.raises(InvariantViolation):
            VerifyBackfillBatches.verify_batches(allocations_json, safe_batch, summary, "adminBackfillRevenue")

    def test_batch_size_mismatch_is_caught(self):
        allocations_json, safe_batch, _summary = self._artifacts(batch_size=2)
        summary = BuildBackfillMetadata.build_summary(allocations_json, 3)["summary"]

        with pytest.raises(InvariantViolation):
            VerifyBackfillBatches.verify_batches(allocations_json, safe_batch, summary, "adminBackfillRevenue")

    def test_nonzero_value_is_caught(self):
        allocations_json, safe_batch, summary = self._artifacts()
        safe_batch["transactions"][1]["value"] = "1"

        with pytest.raises(InvariantViolation, match="value"):
            VerifyBackfillBatches.verify_batches(allocations_json, safe_batch, summary, "adminBackfillRevenue")

    def test_wrong_selector_is_caught(self):
        allocations_json, safe_batch, summary = self._artifacts()

        with pytest.raises(InvariantViolation, match="selector"):
            VerifyBackfillBatches.verify_batches(allocations_json, safe_batch, summary, "somethingElse")


class TestRunStages:
    def test_batches_metadata_verify(self, store, base_config):
        store.write_group({artifacts.ALLOCATIONS_JSON: artifacts.dump_json(make_allocations(5))})
        config = dataclasses.replace(base_config, batch_size=2)

        BuildBackfillBatches.run(config, store)
        BuildBackfillMetadata.run(config, store)
        report = VerifyBackfillBatches.run(config, store)

        assert store.read_json(artifacts.SAFE_BATCH_JSON)["chainId"] == "42161"
        assert store.read_text(artifacts.CALLDATA_CSV).splitlines()[0] == (
            "batchIndex,to,numAddresses,sumRaw,sumTokens,calldata"
        )
        assert store.exists(artifacts.DETAILED_JSON)
        assert store.read_json(artifacts.VERIFICATION_JSON) == report

    def test_batches_require_target(self, store, base_config):
        store.write_group({artifacts.ALLOCATIONS_JSON: artifacts.dump_json(make_allocations(1))})
        config = dataclasses.replace(base_config, rev_share_module_address=None)

        with pytest.raises(ConfigError, match="REV_SHARE_MODULE_ADDRESS"):
            BuildBackfillBatches.run(config, store)
        assert not store.exists(artifacts.SAFE_BATCH_JSON)

    def test_metadata_without_allocations(self, store, base_config):
        with pytest.raises(ConfigError, match="allocate"):
            BuildBackfillMetadata.run(base_config, store)

    def test_verify_without_batches(self, store, base_config):
        store.write_group({artifacts.ALLOCATIONS_JSON: artifacts.dump_json(make_allocations(1))})
        with pytest.raises(ConfigError, match="batches"):
            VerifyBackfillBatches.run(base_config, store)
