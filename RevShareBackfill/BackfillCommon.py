#!/usr/bin/env python3
"""
BackfillCommon.py

Helpers shared by every stage of the RevShare backfill pipeline:

  - address normalization (lowercase, stripped)
  - exact conversion between human token amounts and raw integer units
  - the batch partitioning used by both the calldata builder and the
    metadata summarizer (they must agree on batch boundaries)
  - the error taxonomy raised by the stages

All amount math is integer math. Decimal is only used to parse the human
amount string, never to compute allocations.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Tuple

from eth_utils import is_address

BPS_DENOMINATOR = 10000
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
UINT256_MAX = 2**256 - 1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BackfillError(Exception):
    """Base class for fatal pipeline errors. A stage that raises writes nothing."""


class IndexerError(BackfillError):
    """Subgraph transport failure, non-2xx status or GraphQL error payload."""


class ConfigError(BackfillError):
    """Missing or invalid configuration, or an unmet input precondition."""


class InvariantViolation(BackfillError):
    """A post-computation conservation check failed. Always a logic defect."""


class ResolutionWarning(UserWarning):
    """Treasury receiver could not be resolved; artifact holds only the participant pool."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_addr(addr: str) -> str:
    """Strip whitespace and lowercase. Always use this for wallet addresses."""
    if not addr:
        return ""
    return addr.strip().lower()


def parse_amount_to_raw(value: str, decimals: int) -> int:
    """
    Convert a human token amount (e.g. "100000.5") into raw integer units.

    - decimals must be a non-negative integer
    - the amount must be a finite, non-negative decimal string
    - more fractional digits than `decimals` is rejected rather than rounded
    """
    if not isinstance(decimals, int) or decimals < 0:
        raise ConfigError(f"token decimals must be a non-negative integer (got: {decimals!r})")

    v = (value or "").strip()
    if not v:
        raise ConfigError("total backfill amount is empty")

    try:
        d = Decimal(v)
    except InvalidOperation as e:
        raise ConfigError(f"total backfill amount is not a valid decimal: {value!r}") from e

    if not d.is_finite():
        raise ConfigError(f"total backfill amount must be finite (got: {value!r})")
    if d < 0:
        raise ConfigError(f"total backfill amount cannot be negative (got: {value!r})")

    _sign, digits, exponent = d.as_tuple()
    exp = -exponent if exponent < 0 else 0
    if exp > decimals:
        raise ConfigError(
            f"Too many decimal places in {value!r}: {exp}, max is {decimals}"
        )

    # integer scaling of the digit tuple; Decimal context precision never applies
    return int("".join(map(str, digits))) * 10 ** (exponent + decimals)


def format_raw(amount_raw: int, decimals: int) -> str:
    """Format raw units as a human string with trailing zeros trimmed (for logs and CSVs)."""
    base = 10 ** decimals
    int_part, frac_part = divmod(amount_raw, base)
    if frac_part == 0:
        return str(int_part)
    frac_str = str(frac_part).rjust(decimals, "0").rstrip("0")
    return f"{int_part}.{frac_str}"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

@dataclass
class Batch:
    batch_index: int
    start_index: int
    end_index: int
    records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def num_addresses(self) -> int:
        return len(self.records)

    @property
    def accounts(self) -> List[str]:
        return [normalize_addr(r["address"]) for r in self.records]

    @property
    def amounts(self) -> List[int]:
        return [int(r["amountRaw"]) for r in self.records]

    @property
    def sum_raw(self) -> int:
        return sum(self.amounts)


def iter_batches(allocations: List[Dict[str, Any]], batch_size: int) -> Iterator[Batch]:
    """
    Slice allocation records into consecutive batches of at most `batch_size`,
    keeping the artifact order (already address-sorted, treasury last).
    """
    if not isinstance(batch_size, int) or batch_size < 1:
        raise ConfigError(f"batch size must be a positive integer (got: {batch_size!r})")

    for i in range(0, len(allocations), batch_size):
        chunk = allocations[i:i + batch_size]
        yield Batch(
            batch_index=i // batch_size,
            start_index=i,
            end_index=i + len(chunk) - 1,
            records=list(chunk),
        )


def load_allocation_records(allocations_json: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Pull the allocation list and token decimals out of an allocations artifact,
    failing early when either is missing.
    """
    allocations = allocations_json.get("allocations") or []
    if not allocations:
        raise ConfigError("No allocations found in allocations artifact. Run the allocate stage first.")

    decimals = allocations_json.get("tokenDecimals")
    if not isinstance(decimals, int) or isinstance(decimals, bool):
        raise ConfigError("tokenDecimals missing or not an integer in allocations artifact")

    for idx, a in enumerate(allocations):
        addr = normalize_addr(a.get("address") or "")
        if not addr:
            raise ConfigError(f"Allocation {idx}: empty address")
        if not is_address(addr):
            raise ConfigError(f"Allocation {idx}: not a valid address ({addr!r})")
        amt = str(a.get("amountRaw", "")).strip()
        if not (amt.isascii() and amt.isdigit()):
            raise ConfigError(f"Allocation {idx}: amountRaw must be a non-negative integer string (got: {amt!r})")
        if int(amt) > UINT256_MAX:
            raise ConfigError(f"Allocation {idx}: amountRaw {amt} does not fit in uint256")

    return allocations, decimals
