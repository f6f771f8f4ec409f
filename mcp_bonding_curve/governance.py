"""
Curve Governance

Authority-gated operations on an existing curve: adjusting price parameters and the supply cap,
and closing (destroying) a curve that has not issued any edition. Both run under the curve's
exclusive lock. The authority check always comes first, so an unauthorized caller is rejected
regardless of the other arguments.
"""
from typing import Optional

from pydantic import ValidationError

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve.curve_registry import CurveRegistry
from mcp_bonding_curve.errors import (
    CurveNotEmptyError,
    InvalidCurveParametersError,
    InvalidMaxSupplyError,
    UnauthorizedError,
)
from mcp_bonding_curve.schemas import CurveConfig

logger = get_logger(__name__)


def _require_authority(curve: CurveConfig, caller: str, action: str) -> None:
    if caller != curve.authority:
        logger.warning(f"Unauthorized {action} of curve {curve.collection_id} by {caller}")
        raise UnauthorizedError(f"{caller} is not the authority of curve {curve.collection_id}")


async def update_parameters(
    registry: CurveRegistry,
    collection_id: str,
    caller: str,
    base_price: Optional[int] = None,
    price_increment: Optional[int] = None,
    max_supply: Optional[int] = None,
) -> CurveConfig:
    """
    Updates any subset of base price, price increment and supply cap.

    Omitted (None) fields are left unchanged. The curve kind, supply and volume never change here.

    Raises:
        UnauthorizedError: If the caller is not the curve authority.
        InvalidMaxSupplyError: If the new cap is below current supply or the stored lookup table.
        InvalidCurveParametersError: If a new value is out of range.
    """
    async with registry.exclusive(collection_id) as entry:
        curve = entry.curve
        _require_authority(curve, caller, "update")

        if max_supply is not None:
            if max_supply < curve.current_supply:
                raise InvalidMaxSupplyError(
                    f"max_supply {max_supply} is below current supply {curve.current_supply}"
                )
            if entry.lookup_table is not None and max_supply < len(entry.lookup_table.prices):
                raise InvalidMaxSupplyError(
                    f"max_supply {max_supply} is below the {len(entry.lookup_table.prices)} stored lookup prices"
                )

        changes = {
            name: value
            for name, value in (("base_price", base_price), ("price_increment", price_increment), ("max_supply", max_supply))
            if value is not None
        }
        if not changes:
            logger.debug(f"No parameter changes requested for {collection_id}")
            return curve

        try:
            updated = CurveConfig.model_validate({**curve.model_dump(), **changes})
        except ValidationError as e:
            raise InvalidCurveParametersError(f"Invalid curve parameters: {e}") from e

        entry.curve = updated
        registry.persist(entry)

    logger.info(f"Updated curve {collection_id}: {changes}")
    return updated


async def close_curve(registry: CurveRegistry, collection_id: str, caller: str) -> CurveConfig:
    """
    Closes an empty curve, discarding it together with its lookup table.

    Returns:
        The final snapshot of the closed curve.

    Raises:
        UnauthorizedError: If the caller is not the curve authority.
        CurveNotEmptyError: If any edition has been minted.
    """
    async with registry.exclusive(collection_id) as entry:
        curve = entry.curve
        _require_authority(curve, caller, "close")
        if curve.current_supply != 0:
            raise CurveNotEmptyError(
                f"Curve {collection_id} has issued {curve.current_supply} editions and cannot be closed"
            )
        registry.remove(entry)

    logger.info(f"Closed curve {collection_id}; storage reclaimed by {caller}")
    return curve
