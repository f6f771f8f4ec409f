import base64
import os
from typing import Any, Dict, Optional, Tuple

import httpx
from flask import Flask, jsonify, request
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from mcp_bonding_curve import config
from mcp_bonding_curve import curve_registry
from mcp_bonding_curve import pricing
from mcp_bonding_curve import solana_utils
from mcp_bonding_curve.errors import BondingCurveError, CapacityError, CurveNotFoundError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


app = Flask(__name__)

# --- Action Metadata ---
ACTION_TITLE = "Mint Edition"
ACTION_DESCRIPTION = "Mint the next edition of this collection at its bonding curve price."
ACTION_LABEL = "Mint Edition"
MAX_TRANSACTION_SIZE = 1232  # Solana packet limit for a serialized transaction


def get_cors_headers(origin: str) -> Dict[str, str]:
    """Get CORS headers with origin validation."""
    allowed_origins = config.CORS_ALLOWED_ORIGINS
    allowed_origin = "*"
    if "*" not in allowed_origins:
        if origin in allowed_origins:
            allowed_origin = origin
        else:
            allowed_origin = allowed_origins[0] if allowed_origins else "null"

    return {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type, Authorization',
        'Access-Control-Max-Age': '3600',
        'Access-Control-Allow-Credentials': 'false'
    }


def _requested_collection(payload: Optional[dict] = None) -> str:
    collection_id = request.args.get("collection_id")
    if not collection_id and payload:
        collection_id = payload.get("collection_id")
    if not isinstance(collection_id, str) or not collection_id.strip() or len(collection_id) > 100:
        raise ValueError("collection_id is required")
    return collection_id.strip()


# --- Flask Routes ---

@app.route('/mint_edition_action', methods=['OPTIONS'])
def handle_options_mint_edition() -> Tuple[str, int, Dict[str, str]]:
    """Handles CORS preflight requests."""
    return '', 204, get_cors_headers(request.headers.get('Origin', '*'))


@app.route('/mint_edition_action', methods=['GET'])
def get_mint_edition_action_metadata() -> Tuple[Any, int, Dict[str, str]]:
    """Provides metadata for the Solana Action, including the current price of the next edition."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))

    try:
        collection_id = _requested_collection()
        curve, table = curve_registry.registry.snapshot(collection_id)
    except ValueError as e:
        return jsonify({"message": str(e)}), 400, cors_headers
    except CurveNotFoundError:
        return jsonify({"message": f"Curve for collection {collection_id} not found"}), 404, cors_headers

    metadata = {
        "icon": config.ACTION_ICON_URL,
        "title": ACTION_TITLE,
        "description": ACTION_DESCRIPTION,
        "label": ACTION_LABEL,
        "links": {"actions": []},
        "parameters": [],
    }
    try:
        price = pricing.quote_next_price(curve, table)
        metadata["label"] = f"{ACTION_LABEL} #{curve.current_supply + 1} ({pricing.lamports_to_sol(price):.9f} SOL)"
    except CapacityError as e:
        metadata["disabled"] = True
        metadata["error"] = {"message": str(e)}
    except BondingCurveError as e:
        logger.error(f"Cannot quote {collection_id} for action metadata: {e}")
        metadata["disabled"] = True
        metadata["error"] = {"message": "Price is currently unavailable"}

    return jsonify(metadata), 200, cors_headers


@app.route('/mint_edition_action', methods=['POST'])
async def post_mint_edition_action() -> Tuple[Any, int, Dict[str, str]]:
    """
    Builds the payment transaction for the next edition.

    The transaction is an unsigned transfer of the quoted price from the buyer to the curve
    authority. The buyer signs and sends it, then redeems its signature through the
    ``mint_edition`` tool.
    """
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))

    try:
        if not request.is_json:
            return jsonify({"message": "Content-Type must be application/json"}), 415, cors_headers

        payload = request.get_json(silent=True)
        if not payload or not isinstance(payload, dict):
            return jsonify({"message": "Empty or invalid JSON payload"}), 400, cors_headers

        user_account_str = payload.get("account")
        if not isinstance(user_account_str, str) or not user_account_str.strip():
            return jsonify({"message": "Account not provided in request"}), 400, cors_headers
        try:
            buyer = Pubkey.from_string(user_account_str.strip())
        except ValueError:
            logger.warning(f"Invalid user account address: {user_account_str}")
            return jsonify({"message": f"Invalid user account address: {user_account_str}"}), 400, cors_headers

        try:
            collection_id = _requested_collection(payload)
        except ValueError as e:
            return jsonify({"message": str(e)}), 400, cors_headers

        # Quote
        try:
            curve, table = curve_registry.registry.snapshot(collection_id)
            price = pricing.quote_next_price(curve, table)
        except CurveNotFoundError:
            return jsonify({"message": f"Curve for collection {collection_id} not found"}), 404, cors_headers
        except CapacityError as e:
            return jsonify({"message": str(e)}), 409, cors_headers
        except BondingCurveError as e:
            logger.error(f"Cannot quote {collection_id} for action: {e}")
            return jsonify({"message": "Price is currently unavailable"}), 500, cors_headers

        payment_ix = transfer(
            TransferParams(from_pubkey=buyer, to_pubkey=Pubkey.from_string(curve.authority), lamports=price)
        )

        # Get Blockhash
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                blockhash = await solana_utils.get_latest_blockhash(client)
        except httpx.TimeoutException:
            logger.error("Timeout fetching blockhash")
            return jsonify({"message": "Service temporarily unavailable"}), 503, cors_headers
        except Exception as e:
            logger.exception(f"Error fetching blockhash: {e}")
            return jsonify({"message": "Error fetching latest blockhash"}), 500, cors_headers

        # Create and Serialize Transaction
        txn = Transaction.new_unsigned(Message.new_with_blockhash([payment_ix], buyer, blockhash))
        serialized = bytes(txn)
        if len(serialized) > MAX_TRANSACTION_SIZE:
            logger.error(f"Transaction too large for collection {collection_id}")
            return jsonify({"message": "Transaction too large to process"}), 400, cors_headers

        edition = curve.current_supply + 1
        response_body = {
            "transaction": base64.b64encode(serialized).decode("ascii"),
            "message": f"Pay {pricing.format_lamports(price)} for edition {edition} of {collection_id}",
        }
        logger.info(f"Generated mint payment transaction for {collection_id} edition {edition}, buyer: {buyer}")
        return jsonify(response_body), 200, cors_headers

    except Exception as e:
        logger.exception(f"Unexpected error in post_mint_edition_action: {e}")
        return jsonify({"message": "An unexpected server error occurred"}), 500, cors_headers


# --- Main Execution (for running Flask app directly) ---
if __name__ == '__main__':
    port = config.ACTIONS_PORT
    logger.info(f"Starting Flask Action API server on port {port} with {len(curve_registry.registry)} curve(s)...")
    app.run(debug=os.getenv("FLASK_DEBUG", "False").lower() == "true", port=port, host="0.0.0.0")
