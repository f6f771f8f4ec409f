"""
Edition Pricing Engine with Bonding Curves

This module prices sequential editions of a collection. Each edition costs at least as much as
the one before it, following the curve kind configured for the collection, until the supply cap
is reached. All arithmetic is integer arithmetic in lamports, checked at every step against the
unsigned 64-bit range; nothing is rounded, wrapped or saturated.

Bonding Curve Kinds Supported:
- Linear: base + (edition - 1) * increment
- Exponential: base + base * ((increment_bps * (edition - 1)) // 10000)
- Logarithmic: base + increment * floor(log2(edition))
- Lookup Table: a stored precomputed price per edition, or, while no table exists,
  linear interpolation between price_floor and price_ceiling by supply progress

Key Features:
- A single evaluate() dispatches over the curve kind so the formulas sit side by side
- Domain errors (bad inputs) are distinct from overflow errors (unrepresentable results)
- Read-only quoting for the next edition, price tables and batch cost estimates
- Structured debug logging of every computed quote

Price Calculation Process:
1. Resolve the edition index (current_supply + 1 for the next mint)
2. Use the stored lookup table for lookup curves that have one
3. Otherwise evaluate the curve formula with checked arithmetic
4. Return the price in lamports
"""
from typing import List, Optional

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve import config
from mcp_bonding_curve import lookup_table as lookup
from mcp_bonding_curve.errors import (
    ArithmeticOverflowError,
    InvalidCurveParametersError,
    InvalidEditionIndexError,
    SupplyExhaustedError,
)
from mcp_bonding_curve.schemas import CurveConfig, CurveKind, LookupTable, PricePoint, U64_MAX

logger = get_logger(__name__)

BASIS_POINTS = 10_000


# --- Checked Arithmetic ---

def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > U64_MAX:
        raise ArithmeticOverflowError(f"{a} + {b} exceeds the u64 range")
    return result


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > U64_MAX:
        raise ArithmeticOverflowError(f"{a} * {b} exceeds the u64 range")
    return result


def floor_log2(value: int) -> int:
    """Exact floor(log2(value)) for a positive integer."""
    return value.bit_length() - 1


def _require_u64(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidCurveParametersError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidCurveParametersError(f"{name} must be non-negative, got {value}")
    if value > U64_MAX:
        raise ArithmeticOverflowError(f"{name} {value} exceeds the u64 range")


# --- Price Function ---

def evaluate(
    curve_kind: CurveKind,
    base_price: int,
    price_increment: int,
    edition_index: int,
    floor: Optional[int] = None,
    ceiling: Optional[int] = None,
    max_supply: int = 0,
) -> int:
    """
    Evaluates the price of one edition.

    Args:
        curve_kind: The pricing strategy.
        base_price: Price of the first edition, in lamports.
        price_increment: Step (linear, logarithmic) or growth rate in basis points (exponential).
        edition_index: 1-based index of the edition about to be minted.
        floor: Interpolation floor for lookup curves without a stored table.
        ceiling: Interpolation ceiling for lookup curves without a stored table.
        max_supply: Supply cap, used as the interpolation denominator.

    Returns:
        The edition price in lamports.

    Raises:
        InvalidEditionIndexError: If the edition index is below 1 or cannot be resolved.
        InvalidCurveParametersError: If parameters are missing, negative or inconsistent.
        ArithmeticOverflowError: If any intermediate result exceeds the u64 range.
    """
    if isinstance(edition_index, bool) or not isinstance(edition_index, int) or edition_index < 1:
        raise InvalidEditionIndexError(f"Edition index must be a positive integer, got {edition_index!r}")

    kind = CurveKind(curve_kind)
    _require_u64("base_price", base_price)
    _require_u64("price_increment", price_increment)
    step = edition_index - 1

    if kind == CurveKind.linear:
        return checked_add(base_price, checked_mul(step, price_increment))
    elif kind == CurveKind.exponential:
        growth = checked_mul(price_increment, step) // BASIS_POINTS
        return checked_add(base_price, checked_mul(base_price, growth))
    elif kind == CurveKind.logarithmic:
        return checked_add(base_price, checked_mul(price_increment, floor_log2(edition_index)))
    elif kind == CurveKind.lookup_table:
        return interpolate(edition_index, floor, ceiling, max_supply)
    else:
        # Unreachable while CurveKind has four members
        raise InvalidCurveParametersError(f"Invalid curve kind '{curve_kind}'")


def interpolate(edition_index: int, floor: Optional[int], ceiling: Optional[int], max_supply: int) -> int:
    """Linear interpolation between floor and ceiling by supply progress (0-10000)."""
    if floor is None or ceiling is None:
        raise InvalidCurveParametersError("Interpolated pricing requires both price_floor and price_ceiling")
    _require_u64("price_floor", floor)
    _require_u64("price_ceiling", ceiling)
    if ceiling < floor:
        raise InvalidCurveParametersError(f"price_ceiling {ceiling} is below price_floor {floor}")
    if max_supply <= 0:
        raise InvalidEditionIndexError("Edition index cannot be resolved against a max_supply of 0")

    progress = checked_mul(edition_index, BASIS_POINTS) // max_supply
    return checked_add(floor, checked_mul(ceiling - floor, progress) // BASIS_POINTS)


# --- Curve Quotes ---

def quote_price(curve: CurveConfig, lookup_table: Optional[LookupTable] = None, edition_index: Optional[int] = None) -> int:
    """
    Calculates the price of an edition of a curve.

    Args:
        curve: The curve configuration.
        lookup_table: The curve's stored table, if any.
        edition_index: Edition to price; defaults to the next one (current_supply + 1).

    Returns:
        The edition price in lamports.
    """
    edition = curve.current_supply + 1 if edition_index is None else edition_index

    if curve.curve_kind == CurveKind.lookup_table and lookup_table is not None:
        price = lookup.price_at(lookup_table, edition)
    else:
        price = evaluate(
            curve.curve_kind,
            curve.base_price,
            curve.price_increment,
            edition,
            floor=curve.price_floor,
            ceiling=curve.price_ceiling,
            max_supply=curve.max_supply,
        )

    logger.debug(f"Quote for {curve.collection_id} edition {edition} ({curve.curve_kind.value}): {price} lamports")
    return price


def quote_next_price(curve: CurveConfig, lookup_table: Optional[LookupTable] = None) -> int:
    """Price the next mint would pay, without mutating anything."""
    if curve.current_supply >= curve.max_supply:
        raise SupplyExhaustedError(
            f"Curve {curve.collection_id} has minted all {curve.max_supply} editions"
        )
    return quote_price(curve, lookup_table)


def total_cost(curve: CurveConfig, lookup_table: Optional[LookupTable], quantity: int) -> int:
    """Total lamports to mint the next ``quantity`` editions in sequence."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidEditionIndexError(f"Quantity must be a positive integer, got {quantity!r}")
    if curve.current_supply + quantity > curve.max_supply:
        raise SupplyExhaustedError(
            f"Only {curve.max_supply - curve.current_supply} editions of {curve.collection_id} remain"
        )

    total = 0
    for edition in range(curve.current_supply + 1, curve.current_supply + quantity + 1):
        total = checked_add(total, quote_price(curve, lookup_table, edition))
    return total


def price_table(curve: CurveConfig, lookup_table: Optional[LookupTable] = None, count: Optional[int] = None) -> List[PricePoint]:
    """
    Generates price points from edition 1 with the cumulative volume collected so far.

    The table stops at max_supply, at ``count`` rows, and at the end of a stored lookup table.
    """
    last = curve.max_supply
    if count is not None:
        last = min(last, count)
    if curve.curve_kind == CurveKind.lookup_table and lookup_table is not None:
        last = min(last, len(lookup_table.prices))

    points: List[PricePoint] = []
    cumulative = 0
    for edition in range(1, last + 1):
        price = quote_price(curve, lookup_table, edition)
        cumulative = checked_add(cumulative, price)
        points.append(PricePoint(edition=edition, price=price, cumulative_volume=cumulative))
    return points


def simulate_price_sequence(
    curve_kind: CurveKind,
    base_price: int,
    price_increment: int,
    count: int,
    floor: Optional[int] = None,
    ceiling: Optional[int] = None,
    max_supply: int = 0,
) -> List[int]:
    """Prices of editions 1..count for a parameter set, before any curve exists."""
    return [
        evaluate(curve_kind, base_price, price_increment, edition, floor, ceiling, max_supply)
        for edition in range(1, count + 1)
    ]


# --- Display Helpers ---

def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL (display only)."""
    return lamports / config.LAMPORTS_PER_SOL


def format_lamports(lamports: int) -> str:
    return f"{lamports} lamports ({lamports_to_sol(lamports):.9f} SOL)"
