"""
Edition Bonding Curve Server - MCP Server Implementation

This module provides the MCP server for the edition bonding curve engine. It exposes curve
creation, price quoting, lookup table creation, minting and governance as MCP tools.

Key Features:
- One curve per collection, priced by a linear, exponential, logarithmic or lookup-table curve
- Read-only quotes and price tables, plus cost estimates and dry-run simulations
- Atomic minting: payment to the curve authority and issuance of one unit happen together
- Authority-gated parameter updates and curve closure
- Settlement on Solana (RPC) or in an in-process ledger, selected by SETTLEMENT_BACKEND

Security Features:
- Input validation and sanitization
- Rate limiting of mint requests by client
- Payment signatures are accepted once
- Secure error message handling (no internal details exposed)
"""

import json
import time
from typing import Optional, Tuple

from pydantic import Field
from solders.pubkey import Pubkey

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve import config
from mcp_bonding_curve import curve_registry
from mcp_bonding_curve import governance
from mcp_bonding_curve import lookup_table
from mcp_bonding_curve import mint
from mcp_bonding_curve import pricing
from mcp_bonding_curve import rate_limiter
from mcp_bonding_curve import solana_utils
from mcp_bonding_curve.collaborators import InMemoryIssuer, InMemoryLedger, PaymentGateway, TokenIssuer
from mcp_bonding_curve.errors import (
    ArithmeticOverflowError,
    AuthorizationError,
    BondingCurveError,
    CapacityError,
    CurveNotFoundError,
    DomainError,
    IssuanceFailedError,
    IssuanceUnconfirmedError,
    PaymentFailedError,
    RateLimitExceededError,
)

logger = get_logger(__name__)

# Constants
MAX_ID_LENGTH = 100
MAX_PAYMENT_SOURCE_LENGTH = 200
MAX_CONFIG_JSON_SIZE = 10_000
MAX_PRICES_JSON_SIZE = 500_000
DEFAULT_TABLE_ROWS = 10
MAX_TABLE_ROWS = 1000

# --- Server Setup ---
mcp = FastMCP(name="Edition Bonding Curve Server")


def build_collaborators(backend: str) -> Tuple[PaymentGateway, TokenIssuer]:
    """Creates the payment and issuance collaborators for a settlement backend."""
    if backend == "memory":
        logger.info("Using in-memory settlement backend")
        return InMemoryLedger(config.MEMORY_LEDGER_BALANCES), InMemoryIssuer()
    logger.info(f"Using Solana RPC settlement backend at {config.RPC_ENDPOINT}")
    consumed = solana_utils.SignatureStore(curve_registry.MODULE_DIR / config.CONSUMED_SIGNATURES_FILE)
    return solana_utils.RpcPaymentGateway(consumed=consumed), solana_utils.RpcTokenIssuer()


payment_gateway, token_issuer = build_collaborators(config.SETTLEMENT_BACKEND)


def validate_collection_id(collection_id: str) -> None:
    """
    Validate a collection identifier.

    Raises:
        ValueError: If the identifier is empty, too long or not a public key
    """
    if not collection_id or not isinstance(collection_id, str):
        raise ValueError("Collection ID must be a non-empty string")
    if len(collection_id) > MAX_ID_LENGTH:
        raise ValueError("Collection ID is too long")
    try:
        Pubkey.from_string(collection_id)
    except ValueError:
        raise ValueError("Collection ID must be a valid public key")


def validate_mint_params(collection_id: str, payment_source: str, recipient: str, client_ip: str) -> None:
    """
    Validate parameters of a mint request.

    Raises:
        ValueError: If any parameter is invalid
    """
    validate_collection_id(collection_id)

    if not payment_source or not isinstance(payment_source, str):
        raise ValueError("Payment source must be a non-empty string")
    if len(payment_source) > MAX_PAYMENT_SOURCE_LENGTH:
        raise ValueError("Payment source is too long")

    if not recipient or not isinstance(recipient, str):
        raise ValueError("Recipient must be a non-empty string")
    if len(recipient) > MAX_ID_LENGTH:
        raise ValueError("Recipient is too long")

    if not client_ip or not isinstance(client_ip, str):
        raise ValueError("Client IP must be a non-empty string")


def log_mint_success(receipt, max_supply: int, duration: float, client_ip: str) -> None:
    """Log a completed mint with structured information."""
    logger.info(f"Mint completed for collection '{receipt.collection_id}': "
                f"edition={receipt.edition}/{max_supply}, "
                f"price={pricing.format_lamports(receipt.price)}, "
                f"recipient={receipt.recipient}, "
                f"payment_ref={receipt.payment_reference[:8]}..., "
                f"issuance_ref={receipt.issuance_reference[:8]}..., "
                f"duration={duration:.3f}s, client_ip={client_ip}")


def log_operation_error(operation: str, collection_id: str, error: Exception, client_ip: str, duration: float) -> None:
    """Log operation error with structured information."""
    logger.error(f"{operation} failed for collection '{collection_id}': {error}, "
                 f"client_ip: {client_ip}, duration: {duration:.3f}s")


# --- Read-only Tools ---

@mcp.tool()
async def get_curve_info(context: Context, collection_id: str = Field(..., description="The collection mint address.")) -> str:
    """Get the configuration, next price and lookup table summary of a collection's curve."""
    try:
        validate_collection_id(collection_id)

        registry = curve_registry.registry
        curve, table = registry.snapshot(collection_id)

        info = {"curve": curve.model_dump(mode="json")}
        info["remaining_supply"] = curve.max_supply - curve.current_supply
        try:
            info["next_price"] = pricing.quote_next_price(curve, table)
        except BondingCurveError as e:
            info["next_price"] = None
            info["next_price_unavailable"] = str(e)
        if table is not None:
            info["lookup_table"] = {"address": table.address, "entries": len(table.prices)}
        return json.dumps(info, indent=2)

    except CurveNotFoundError:
        logger.warning(f"Curve not found: {collection_id}")
        return f"Curve for collection {collection_id} not found."
    except ValueError as e:
        logger.error(f"Invalid collection ID provided: {e}")
        return f"Invalid collection ID: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error getting curve info for {collection_id}: {e}")
        return "An unexpected error occurred while retrieving curve information."


@mcp.tool()
async def get_price(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    edition: Optional[int] = Field(None, description="Edition to price (1-based). Defaults to the next edition."),
) -> str:
    """Quotes the price of an edition without minting anything."""
    try:
        validate_collection_id(collection_id)
        curve, table = curve_registry.registry.snapshot(collection_id)

        if edition is None:
            edition = curve.current_supply + 1
            price = pricing.quote_next_price(curve, table)
        else:
            price = pricing.quote_price(curve, table, edition)

        return f"Edition {edition} of {collection_id} costs {pricing.format_lamports(price)}."

    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except (CapacityError, ArithmeticOverflowError) as e:
        logger.warning(f"Price unavailable for {collection_id}: {e}")
        return str(e)
    except ValueError as e:
        logger.error(f"Validation error in get_price for {collection_id}: {e}")
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error quoting {collection_id}: {e}")
        return "An unexpected error occurred while calculating the price."


@mcp.tool()
async def get_price_table(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    count: int = Field(DEFAULT_TABLE_ROWS, description="Number of editions to list, starting at edition 1."),
) -> str:
    """Lists edition prices with the cumulative volume collected up to each edition."""
    try:
        validate_collection_id(collection_id)
        if not isinstance(count, int) or count <= 0:
            raise ValueError("Count must be a positive integer")
        if count > MAX_TABLE_ROWS:
            raise ValueError(f"Count must be at most {MAX_TABLE_ROWS}")

        curve, table = curve_registry.registry.snapshot(collection_id)
        points = pricing.price_table(curve, table, count)
        return json.dumps([point.model_dump() for point in points], indent=2)

    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except BondingCurveError as e:
        logger.warning(f"Price table unavailable for {collection_id}: {e}")
        return str(e)
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error building price table for {collection_id}: {e}")
        return "An unexpected error occurred while building the price table."


def validate_count(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    if value > MAX_TABLE_ROWS:
        raise ValueError(f"{name} must be at most {MAX_TABLE_ROWS}")


@mcp.tool()
async def estimate_cost(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    quantity: int = Field(..., description="Number of consecutive editions to buy, starting at the next one."),
) -> str:
    """Totals the price of the next editions of a collection, as if minted one after another."""
    try:
        validate_collection_id(collection_id)
        validate_count("Quantity", quantity)

        curve, table = curve_registry.registry.snapshot(collection_id)
        total = pricing.total_cost(curve, table, quantity)
        first = curve.current_supply + 1
        return (f"Editions {first} to {first + quantity - 1} of {collection_id} cost "
                f"{pricing.format_lamports(total)} in total.")

    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except (CapacityError, ArithmeticOverflowError) as e:
        logger.warning(f"Cost estimate unavailable for {collection_id}: {e}")
        return str(e)
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error estimating cost for {collection_id}: {e}")
        return "An unexpected error occurred while estimating the cost."


@mcp.tool()
async def simulate_curve(
    context: Context,
    curve_kind: str = Field(..., description="linear, exponential, logarithmic or lookup_table."),
    base_price: int = Field(..., description="Price of the first edition in lamports."),
    price_increment: int = Field(..., description="Price step (basis points for exponential curves)."),
    count: int = Field(DEFAULT_TABLE_ROWS, description="Number of editions to price, starting at edition 1."),
    price_floor: Optional[int] = Field(None, description="Interpolation floor for lookup_table curves."),
    price_ceiling: Optional[int] = Field(None, description="Interpolation ceiling for lookup_table curves."),
    max_supply: int = Field(0, description="Supply cap; the interpolation denominator for lookup_table curves."),
) -> str:
    """Prices editions for a parameter set without creating a curve."""
    try:
        validate_count("Count", count)
        prices = pricing.simulate_price_sequence(
            curve_kind, base_price, price_increment, count,
            floor=price_floor, ceiling=price_ceiling, max_supply=max_supply,
        )
        return json.dumps([{"edition": i, "price": price} for i, price in enumerate(prices, start=1)], indent=2)

    except ArithmeticOverflowError as e:
        return str(e)
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error simulating a {curve_kind} curve: {e}")
        return "An unexpected error occurred while simulating the curve."


# --- Curve Management Tools ---

@mcp.tool()
async def create_curve(context: Context, config_json: str = Field(..., description="The curve configuration as a JSON string.")) -> str:
    """
    Creates a bonding curve for a collection from a JSON configuration string.

    Expected keys: authority, collection_id, curve_kind (linear, exponential, logarithmic,
    lookup_table), base_price, price_increment, max_supply, and optionally price_floor and
    price_ceiling for lookup_table curves.
    """
    try:
        if not config_json or not isinstance(config_json, str):
            raise ValueError("Configuration JSON must be a non-empty string")
        if len(config_json) > MAX_CONFIG_JSON_SIZE:
            raise ValueError("Configuration JSON is too large (max 10KB)")

        config_data = json.loads(config_json)
        if not isinstance(config_data, dict):
            raise ValueError("Configuration JSON must be an object")

        curve = curve_registry.registry.create_curve(config_data)
        return f"Curve for collection '{curve.collection_id}' created successfully ({curve.curve_kind.value}, max supply {curve.max_supply})."

    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON for create_curve request: {e}")
        return "Error: Invalid JSON format provided. Please check your JSON syntax."
    except BondingCurveError as e:
        logger.error(f"Curve creation rejected: {e}")
        return f"Error: {e}"
    except ValueError as e:
        logger.error(f"Validation error in create_curve: {e}")
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error creating curve: {e}")
        return "An unexpected server error occurred while creating the curve."


@mcp.tool()
async def create_lookup_table(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    caller: str = Field(..., description="The curve authority requesting the table."),
    prices_json: str = Field(..., description="JSON array of edition prices in lamports, edition 1 first."),
) -> str:
    """Stores the precomputed price table of a lookup_table curve. Allowed once, before the first mint."""
    try:
        validate_collection_id(collection_id)
        if not prices_json or not isinstance(prices_json, str):
            raise ValueError("Prices JSON must be a non-empty string")
        if len(prices_json) > MAX_PRICES_JSON_SIZE:
            raise ValueError("Prices JSON is too large")

        prices = json.loads(prices_json)
        if not isinstance(prices, list):
            raise ValueError("Prices JSON must be an array")

        table = await lookup_table.register_lookup_table(curve_registry.registry, collection_id, caller, prices)
        return f"Lookup table with {len(table.prices)} prices created for {collection_id} at {table.address}."

    except json.JSONDecodeError:
        return "Error: Invalid JSON format provided. Please check your JSON syntax."
    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except AuthorizationError as e:
        return f"Unauthorized: {e}"
    except BondingCurveError as e:
        logger.warning(f"Lookup table rejected for {collection_id}: {e}")
        return f"Error: {e}"
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error creating lookup table for {collection_id}: {e}")
        return "An unexpected server error occurred while creating the lookup table."


@mcp.tool()
async def mint_edition(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    payment_source: str = Field(
        ...,
        description=(
            "With Solana settlement: the signature of a confirmed transfer of exactly the quoted price "
            "to the curve authority. With in-memory settlement: the paying account."
        ),
    ),
    recipient: str = Field(..., description="The account that receives the edition."),
    client_ip: str = Field(..., description="The client's IP address."),
) -> str:
    """
    Mints the next edition of a collection.

    The price is taken from the curve at the time the mint acquires the curve, so a quote can be
    outdated if another mint completes first. If issuance fails after payment, the payment is
    refunded and nothing is minted.

    Args:
        context: MCP context object (provided by framework)
        collection_id: Collection whose next edition is minted
        payment_source: Payment reference, depending on the settlement backend
        recipient: Account receiving the edition
        client_ip: Client's IP address for rate limiting

    Returns:
        str: Success message with edition, price and references, or error message
    """
    start_time = time.time()

    try:
        # 1. Input Validation
        validate_mint_params(collection_id, payment_source, recipient, client_ip)

        # 2. Rate Limiting Check
        if not rate_limiter.check_rate_limit(client_ip):
            raise RateLimitExceededError(f"Rate limit exceeded for IP: {client_ip}")

        # 3. Mint
        registry = curve_registry.registry
        receipt = await mint.mint_edition(
            registry, collection_id, payment_source, recipient, payment_gateway, token_issuer
        )

        # 4. Log and respond
        curve = registry.get_curve(collection_id)
        max_supply = curve.max_supply if curve else receipt.edition
        log_mint_success(receipt, max_supply, time.time() - start_time, client_ip)
        return (f"Successfully minted edition {receipt.edition} of {collection_id} to {receipt.recipient} "
                f"for {pricing.format_lamports(receipt.price)}. "
                f"Payment: {receipt.payment_reference}. Issuance: {receipt.issuance_reference}")

    # --- Error Handling ---
    except RateLimitExceededError as e:
        return str(e)
    except CurveNotFoundError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return f"Curve for collection {collection_id} not found."
    except CapacityError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return str(e)
    except ArithmeticOverflowError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return "The next edition's price cannot be represented. No payment was taken."
    except PaymentFailedError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return "Payment could not be completed. No edition was minted."
    except IssuanceUnconfirmedError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return (f"Edition issuance was sent but not confirmed. The payment was kept and the edition was "
                f"counted as minted. Check transaction {e.reference}.")
    except IssuanceFailedError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return "Edition issuance failed. The payment was refunded and no edition was minted."
    except DomainError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return f"The curve for collection {collection_id} is misconfigured and cannot price its next edition. No payment was taken."
    except ValueError as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return f"Error processing request: Invalid input parameters"
    except Exception as e:
        log_operation_error("Mint", collection_id, e, client_ip, time.time() - start_time)
        return f"An unexpected server error occurred"


# --- Governance Tools ---

@mcp.tool()
async def update_curve(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    caller: str = Field(..., description="The curve authority requesting the change."),
    base_price: Optional[int] = Field(None, description="New base price in lamports."),
    price_increment: Optional[int] = Field(None, description="New price increment (basis points for exponential curves)."),
    max_supply: Optional[int] = Field(None, description="New supply cap; cannot go below the current supply."),
) -> str:
    """Updates a curve's base price, increment and/or supply cap. Omitted values are unchanged."""
    try:
        validate_collection_id(collection_id)
        curve = await governance.update_parameters(
            curve_registry.registry,
            collection_id,
            caller,
            base_price=base_price,
            price_increment=price_increment,
            max_supply=max_supply,
        )
        return (f"Curve for {collection_id} updated: base_price={curve.base_price}, "
                f"price_increment={curve.price_increment}, max_supply={curve.max_supply}.")

    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except AuthorizationError as e:
        return f"Unauthorized: {e}"
    except DomainError as e:
        return f"Error: {e}"
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error updating curve {collection_id}: {e}")
        return "An unexpected server error occurred while updating the curve."


@mcp.tool()
async def close_curve(
    context: Context,
    collection_id: str = Field(..., description="The collection mint address."),
    caller: str = Field(..., description="The curve authority closing the curve."),
) -> str:
    """Closes a curve that has not minted any edition, discarding it and its lookup table."""
    try:
        validate_collection_id(collection_id)
        await governance.close_curve(curve_registry.registry, collection_id, caller)
        return f"Curve for {collection_id} closed."

    except CurveNotFoundError:
        return f"Curve for collection {collection_id} not found."
    except AuthorizationError as e:
        return f"Unauthorized: {e}"
    except BondingCurveError as e:
        return f"Error: {e}"
    except ValueError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error closing curve {collection_id}: {e}")
        return "An unexpected server error occurred while closing the curve."


# --- Main Execution ---
if __name__ == "__main__":
    startup_start = time.time()
    logger.info("Starting Edition Bonding Curve MCP Server...")

    # The curve registry loads records on import
    curve_count = len(curve_registry.registry)
    startup_duration = time.time() - startup_start
    logger.info(f"Server startup completed in {startup_duration:.3f}s, loaded {curve_count} curve(s).")

    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    except Exception as e:
        logger.exception(f"Server error: {e}")
    finally:
        logger.info("Edition Bonding Curve MCP Server stopped.")
