#!/usr/bin/env python3
"""
ArtifactStore.py

Named-artifact storage for the backfill pipeline. Every stage reads the
artifacts it consumes by key and writes its outputs as one group, so the
stages never depend on a particular directory layout.

Group writes stage every blob before replacing anything, so a stage that
fails while computing or staging leaves the previous run's files untouched.
A failure during the final replace step (after staging succeeded) is reported
and the leftover staged files are removed, but the group may then be partly
replaced.
"""

import csv
import hashlib
import io
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Union

from RevShareBackfill.BackfillCommon import ConfigError

# ---------------------------------------------------------------------------
# Artifact keys
# ---------------------------------------------------------------------------

PIONEERS_JSON = "pioneers/revshare_pioneers.json"
PIONEERS_CSV = "pioneers/revshare_pioneers.csv"

ALLOCATIONS_JSON = "allocations/revshare_backfill_allocations.json"
ALLOCATIONS_CSV = "allocations/revshare_backfill_allocations.csv"

SAFE_BATCH_JSON = "safe/revshare_backfill_safe_batch.json"
CALLDATA_JSON = "calldata/revshare_backfill_calldata.json"
CALLDATA_CSV = "calldata/revshare_backfill_calldata.csv"

SUMMARY_JSON = "metadata/revshare_backfill_batches_summary.json"
SUMMARY_CSV = "metadata/revshare_backfill_batches_summary.csv"
DETAILED_JSON = "metadata/revshare_backfill_batches_detailed.json"
DETAILED_CSV = "metadata/revshare_backfill_batches_detailed.csv"

VERIFICATION_JSON = "verify/revshare_backfill_verification.json"

Blob = Union[str, bytes]


def dump_json(obj: Any) -> str:
    return json.dumps(obj, indent=2) + "\n"


def dump_csv(header: List[str], rows: Iterable[Sequence[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def _to_bytes(blob: Blob) -> bytes:
    return blob.encode("utf-8") if isinstance(blob, str) else blob


class ArtifactStore:
    """Base class: key -> blob. Subclasses implement the four primitives."""

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        raise NotImplementedError

    def _stage(self, key: str, data: bytes) -> Any:
        raise NotImplementedError

    def _commit(self, key: str, staged: Any) -> None:
        raise NotImplementedError

    def _discard(self, staged: Any) -> None:
        pass

    def describe(self, key: str) -> str:
        return key

    def read_text(self, key: str) -> str:
        return self.read_bytes(key).decode("utf-8")

    def read_json(self, key: str, producer: str = "") -> Dict[str, Any]:
        if not self.exists(key):
            hint = f" Run the {producer} stage first." if producer else ""
            raise ConfigError(f"Artifact not found: {self.describe(key)}.{hint}")
        try:
            data = json.loads(self.read_text(key))
        except ValueError as e:
            raise ConfigError(f"Artifact {self.describe(key)} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Artifact {self.describe(key)} must hold a JSON object")
        return data

    def write_group(self, blobs: Dict[str, Blob]) -> Dict[str, str]:
        """
        Write several artifacts together and return {key: sha256 hex}.

        All blobs are staged before any of them replaces an existing artifact.
        If a replace fails, the remaining staged blobs are discarded and the
        error propagates; artifacts replaced before the failure stay replaced.
        """
        encoded = {k: _to_bytes(v) for k, v in blobs.items()}
        staged: Dict[str, Any] = {}
        try:
            for k, data in encoded.items():
                staged[k] = self._stage(k, data)
        except OSError:
            for handle in staged.values():
                self._discard(handle)
            raise

        pending = dict(staged)
        try:
            for key, handle in staged.items():
                self._commit(key, handle)
                del pending[key]
        finally:
            for handle in pending.values():
                self._discard(handle)
        return {k: hashlib.sha256(data).hexdigest() for k, data in encoded.items()}


class LocalArtifactStore(ArtifactStore):
    """Artifacts as files under a root directory (key = relative path)."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / key

    def describe(self, key: str) -> str:
        return str(self.path_for(key))

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def read_bytes(self, key: str) -> bytes:
        return self.path_for(key).read_bytes()

    def _stage(self, key: str, data: bytes) -> str:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return tmp

    def _commit(self, key: str, staged: str) -> None:
        os.replace(staged, self.path_for(key))

    def _discard(self, staged: str) -> None:
        if os.path.exists(staged):
            os.remove(staged)


class MemoryArtifactStore(ArtifactStore):
    """In-process store, handy for tests and dry runs."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def exists(self, key: str) -> bool:
        return key in self.blobs

    def read_bytes(self, key: str) -> bytes:
        return self.blobs[key]

    def _stage(self, key: str, data: bytes) -> bytes:
        return data

    def _commit(self, key: str, staged: bytes) -> None:
        self.blobs[key] = staged
