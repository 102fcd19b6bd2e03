#!/usr/bin/env python3
"""
Run one stage of the RevShare backfill pipeline (or all of them in order).

Usage
=====
    python -m RevShareBackfill <stage>

Stages:
    export     STEP 1  subgraph -> pioneers snapshot
    allocate   STEP 2  snapshot -> allocations
    batches    STEP 3  allocations -> Safe batch JSON + calldata
    metadata   STEP 4  allocations -> batch summary + detailed report
    verify     decode the Safe batch and reconcile it with allocations + summary
    all        export, allocate, batches, metadata, verify

Stages only talk to each other through the files under BACKFILL_OUTPUT_DIR,
so any stage can be rerun on its own.
"""

import sys
from typing import Callable, Dict

from RevShareBackfill import (
    BuildAllocations,
    BuildBackfillBatches,
    BuildBackfillMetadata,
    ExportPioneers,
    VerifyBackfillBatches,
)
from RevShareBackfill.ArtifactStore import ArtifactStore, LocalArtifactStore
from RevShareBackfill.BackfillCommon import BackfillError
from RevShareBackfill.BackfillConfig import BackfillConfig, load_config

StageRunner = Callable[[BackfillConfig, ArtifactStore], object]

STAGES: Dict[str, StageRunner] = {
    "export": ExportPioneers.run,
    "allocate": BuildAllocations.run,
    "batches": BuildBackfillBatches.run,
    "metadata": BuildBackfillMetadata.run,
    "verify": VerifyBackfillBatches.run,
}


def usage() -> str:
    return "Usage:\n  python -m RevShareBackfill <" + "|".join(list(STAGES) + ["all"]) + ">\n"


def run_stage(stage: str, config: BackfillConfig, store: ArtifactStore) -> None:
    names = list(STAGES) if stage == "all" else [stage]
    for name in names:
        print(f"=== {name} ===", file=sys.stderr)
        STAGES[name](config, store)


def main(argv=None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1 or (argv[0] not in STAGES and argv[0] != "all"):
        print(usage(), file=sys.stderr)
        raise SystemExit(2)

    stage = argv[0]
    try:
        config = load_config()
        run_stage(stage, config, LocalArtifactStore(config.output_dir))
    except BackfillError as e:
        raise SystemExit(f"Error in stage {stage!r}: {type(e).__name__}: {e}")

    print("Done.", file=sys.stderr)


if __name__ == "__main__":
    main()
