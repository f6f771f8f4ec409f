"""
Edition Minting

This module implements the mint transaction: quote the next edition's price, collect exactly
that payment, issue one unit to the buyer, and commit the curve's updated supply and volume.
The whole sequence runs while holding the curve's exclusive lock, so two mints against the
same curve can never observe the same supply.

Atomicity:
- Price and the new total volume are computed (with overflow checks) before any external call
- A payment failure leaves the curve untouched
- An issuance failure reverses the collected payment before the error is raised
- An issuance that was sent but whose outcome is unknown keeps the payment and commits the
  edition, so a late landing can never push on-chain supply past the recorded supply
- Otherwise supply and volume are only committed after issuance is confirmed
- Nothing is retried; the buyer resubmits a failed attempt as a new one
"""
import asyncio

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve import pricing
from mcp_bonding_curve.collaborators import PaymentGateway, PaymentReceipt, TokenIssuer
from mcp_bonding_curve.curve_registry import CurveRegistry
from mcp_bonding_curve.errors import (
    IssuanceFailedError,
    IssuanceUnconfirmedError,
    PaymentFailedError,
    SupplyExhaustedError,
)
from mcp_bonding_curve.schemas import MintReceipt

logger = get_logger(__name__)


async def _reverse_payment(payments: PaymentGateway, receipt: PaymentReceipt, collection_id: str) -> None:
    try:
        await payments.reverse(receipt)
        logger.info(f"Reversed payment {receipt.reference} for {collection_id} after failed issuance")
    except Exception as e:
        logger.exception(f"Failed to reverse payment {receipt.reference} for {collection_id}: {e}")
        raise IssuanceFailedError(
            f"Issuance failed and payment {receipt.reference} could not be reversed: {e}"
        ) from e


async def mint_edition(
    registry: CurveRegistry,
    collection_id: str,
    payment_source: str,
    issuance_target: str,
    payments: PaymentGateway,
    issuer: TokenIssuer,
) -> MintReceipt:
    """
    Mints the next edition of a collection to a buyer.

    Args:
        registry: Registry holding the curve.
        collection_id: Collection whose next edition is minted.
        payment_source: Where the payment comes from (account or payment signature,
            depending on the payment gateway).
        issuance_target: Account receiving the edition.
        payments: Payment collaborator.
        issuer: Token issuance collaborator.

    Returns:
        MintReceipt with the edition index and the price paid.

    Raises:
        CurveNotFoundError: If the collection has no curve.
        SupplyExhaustedError: If every edition has been minted.
        ArithmeticOverflowError: If the price or new volume is not representable.
        LookupEntryNotFoundError: If the lookup table has no price for the edition.
        PaymentFailedError: If the payment collaborator rejects the transfer.
        IssuanceFailedError: If issuance fails (the payment has been reversed).
        IssuanceUnconfirmedError: If the issuance outcome is unknown (the payment is kept and the
            edition is committed).
    """
    async with registry.exclusive(collection_id) as entry:
        curve = entry.curve

        # 1. Supply cap
        if curve.current_supply >= curve.max_supply:
            logger.warning(f"Mint rejected for {collection_id}: supply exhausted at {curve.max_supply}")
            raise SupplyExhaustedError(f"Curve {collection_id} has minted all {curve.max_supply} editions")

        # 2. Price of the edition about to be minted, from pre-increment supply
        edition = curve.current_supply + 1
        price = pricing.quote_price(curve, entry.lookup_table, edition)
        new_volume = pricing.checked_add(curve.total_volume, price)

        # 3. Payment to the curve authority
        try:
            payment = await payments.transfer(payment_source, curve.authority, price)
        except PaymentFailedError:
            raise
        except Exception as e:
            logger.error(f"Payment failed for {collection_id} edition {edition}: {e}")
            raise PaymentFailedError(f"Payment of {price} lamports failed: {e}") from e

        # 4. Issuance under the series credential
        try:
            issuance_reference = await issuer.issue_one(issuance_target, entry.credential)
        except asyncio.CancelledError:
            await _reverse_payment(payments, payment, collection_id)
            raise
        except IssuanceUnconfirmedError as e:
            logger.error(
                f"Issuance of {collection_id} edition {edition} unconfirmed ({e.reference}); "
                f"keeping payment {payment.reference} and committing the edition"
            )
            entry.curve = curve.model_copy(update={"current_supply": edition, "total_volume": new_volume})
            registry.persist(entry)
            raise
        except Exception as e:
            logger.error(f"Issuance failed for {collection_id} edition {edition}: {e}")
            await _reverse_payment(payments, payment, collection_id)
            raise IssuanceFailedError(f"Issuance of edition {edition} failed: {e}") from e

        # 5. Commit accounting
        entry.curve = curve.model_copy(update={"current_supply": edition, "total_volume": new_volume})
        registry.persist(entry)

    logger.info(
        f"Minted edition {edition}/{curve.max_supply} of {collection_id} to {issuance_target} "
        f"for {price} lamports (total volume {new_volume})"
    )
    return MintReceipt(
        collection_id=collection_id,
        edition=edition,
        price=price,
        recipient=issuance_target,
        payment_reference=payment.reference,
        issuance_reference=issuance_reference,
    )
