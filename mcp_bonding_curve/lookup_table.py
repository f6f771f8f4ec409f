"""
Precomputed Lookup Tables

Lookup curves serve prices from a precomputed sequence (typically sampled from an off-chain
Bezier curve, whose provenance the engine treats as opaque). A table is created once, before
any edition of its curve is minted, and is never updated. Its lifetime is tied to the owning
curve: closing the curve discards the table.
"""
from typing import List, Optional

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve import config
from mcp_bonding_curve.credentials import derive_curve_address, derive_lookup_address
from mcp_bonding_curve.errors import (
    CurveKindMismatchError,
    LookupEntryNotFoundError,
    LookupTableValidationError,
    UnauthorizedError,
)
from mcp_bonding_curve.schemas import CurveConfig, CurveKind, LookupTable, U64_MAX

logger = get_logger(__name__)


def new_lookup_table(curve: CurveConfig, prices: List[int], max_entries: Optional[int] = None) -> LookupTable:
    """
    Validates a price sequence against its owning curve and builds the table.

    Args:
        curve: The owning curve; must be a lookup curve.
        prices: Price of edition 1, 2, ... in lamports.
        max_entries: Upper bound on the table size (defaults to MAX_LOOKUP_ENTRIES).

    Raises:
        CurveKindMismatchError: If the curve is not a lookup curve.
        LookupTableValidationError: If the sequence is empty, too long, or holds a non-u64 value.
    """
    if curve.curve_kind != CurveKind.lookup_table:
        raise CurveKindMismatchError(
            f"Curve for {curve.collection_id} is '{curve.curve_kind.value}', lookup tables require 'lookup_table'"
        )

    limit = max_entries if max_entries is not None else config.MAX_LOOKUP_ENTRIES
    if not prices:
        raise LookupTableValidationError("Lookup table must contain at least one price")
    if len(prices) > curve.max_supply:
        raise LookupTableValidationError(
            f"Lookup table has {len(prices)} prices but max_supply is {curve.max_supply}"
        )
    if len(prices) > limit:
        raise LookupTableValidationError(f"Lookup table has {len(prices)} prices, the limit is {limit}")

    for position, price in enumerate(prices):
        if isinstance(price, bool) or not isinstance(price, int) or not 0 <= price <= U64_MAX:
            raise LookupTableValidationError(f"Price for edition {position + 1} is not an unsigned 64-bit integer")

    curve_address, _ = derive_curve_address(curve.collection_id)
    table_address = derive_lookup_address(curve_address)
    return LookupTable(owning_curve=curve.collection_id, address=str(table_address), prices=list(prices))


def price_at(table: LookupTable, edition_index: int) -> int:
    """Returns the stored price of an edition (1-based)."""
    position = edition_index - 1
    if position < 0 or position >= len(table.prices):
        raise LookupEntryNotFoundError(
            f"No lookup price for edition {edition_index} of {table.owning_curve} "
            f"(table holds {len(table.prices)} editions)"
        )
    return table.prices[position]


async def register_lookup_table(registry, collection_id: str, caller: str, prices: List[int]) -> LookupTable:
    """
    Creates the lookup table of a curve. Only the curve authority may do this, only once,
    and only before the first edition is minted.
    """
    async with registry.exclusive(collection_id) as entry:
        curve = entry.curve
        if caller != curve.authority:
            logger.warning(f"Unauthorized lookup table creation for {collection_id} by {caller}")
            raise UnauthorizedError(f"{caller} is not the authority of curve {collection_id}")
        if entry.lookup_table is not None:
            raise LookupTableValidationError(f"Curve {collection_id} already has a lookup table")
        if curve.current_supply > 0:
            raise LookupTableValidationError(
                f"Curve {collection_id} has already minted {curve.current_supply} editions"
            )

        table = new_lookup_table(curve, prices)
        entry.lookup_table = table
        registry.persist(entry)

    logger.info(f"Created lookup table for {collection_id} with {len(table.prices)} prices at {table.address}")
    return table
