import asyncio
import base64
import json
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple, Union

import httpx
from solders.hash import Hash as Blockhash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    mint_to,
)
from spl.token.models import MintToParams

from mcp_bonding_curve import config
from mcp_bonding_curve.collaborators import PaymentReceipt
from mcp_bonding_curve.credentials import SeriesCredential
from mcp_bonding_curve.errors import (
    ConfigurationError,
    IssuanceFailedError,
    IssuanceUnconfirmedError,
    PaymentFailedError,
)
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


class RpcError(Exception):
    """Raised when the RPC node returns an error or an unusable response."""
    pass


class TransactionExpiredError(RpcError):
    """Raised when a sent transaction's blockhash expired before it was confirmed."""
    pass


class TransactionUnconfirmedError(RpcError):
    """Raised when a sent transaction is neither confirmed nor expired after the maximum wait."""

    def __init__(self, message: str, signature: str):
        super().__init__(message)
        self.signature = signature


class IncorrectPaymentError(PaymentFailedError):
    """Raised when a payment reached the destination with an amount other than the one required."""

    def __init__(self, message: str, transfers: List[Tuple[Pubkey, int]]):
        super().__init__(message)
        self.transfers = transfers


# --- JSON-RPC Plumbing ---

async def _rpc_call(client: httpx.AsyncClient, method: str, params: list, rpc_endpoint: Optional[str] = None):
    response = await client.post(
        rpc_endpoint or config.RPC_ENDPOINT,
        json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
    )
    response.raise_for_status()
    data = response.json()
    if data.get("error"):
        raise RpcError(f"{method} failed: {data['error']}")
    if "result" not in data:
        raise RpcError(f"{method} returned no result")
    return data["result"]


async def get_latest_blockhash_with_height(
    client: httpx.AsyncClient, rpc_endpoint: Optional[str] = None
) -> Tuple[Blockhash, int]:
    """Fetches the latest finalized blockhash and the last block height at which it is valid."""
    result = await _rpc_call(client, "getLatestBlockhash", [{"commitment": "finalized"}], rpc_endpoint)
    value = result["value"]
    return Blockhash.from_string(value["blockhash"]), int(value["lastValidBlockHeight"])


async def get_latest_blockhash(client: httpx.AsyncClient, rpc_endpoint: Optional[str] = None) -> Blockhash:
    """Fetches the latest finalized blockhash."""
    blockhash, _ = await get_latest_blockhash_with_height(client, rpc_endpoint)
    return blockhash


async def get_block_height(client: httpx.AsyncClient, rpc_endpoint: Optional[str] = None) -> int:
    return int(await _rpc_call(client, "getBlockHeight", [{"commitment": "confirmed"}], rpc_endpoint))


async def account_exists(client: httpx.AsyncClient, account: Pubkey, rpc_endpoint: Optional[str] = None) -> bool:
    result = await _rpc_call(
        client, "getAccountInfo", [str(account), {"encoding": "base64", "commitment": "confirmed"}], rpc_endpoint
    )
    return result.get("value") is not None


async def _signature_status(client: httpx.AsyncClient, tx_signature: str, rpc_endpoint: Optional[str]) -> Optional[dict]:
    result = await _rpc_call(
        client, "getSignatureStatuses", [[tx_signature], {"searchTransactionHistory": True}], rpc_endpoint
    )
    return result["value"][0]


def _is_confirmed(status: Optional[dict], tx_signature: str) -> bool:
    if not status or status.get("confirmationStatus") not in ("confirmed", "finalized"):
        return False
    if status.get("err") is not None:
        logger.error(f"Transaction {tx_signature} failed on-chain: {status['err']}")
        raise RpcError(f"Transaction {tx_signature} failed: {status['err']}")
    return True


async def send_and_confirm(
    client: httpx.AsyncClient,
    instructions: Sequence[Instruction],
    signers: Sequence[Keypair],
    payer: Keypair,
    rpc_endpoint: Optional[str] = None,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
    max_wait: Optional[float] = None,
) -> str:
    """
    Signs, sends and waits for confirmation of a transaction.

    The fee payer signs first; every other signer must be listed in ``signers``.

    Until ``timeout`` only the signature status is polled. After that the transaction is only
    declared failed once the block height has passed its blockhash's last valid height, since
    until then it can still land. A transaction still pending after ``max_wait`` has an unknown
    outcome.

    Returns:
        The transaction signature.

    Raises:
        RpcError: If the transaction fails on-chain or is rejected when sent.
        TransactionExpiredError: If the blockhash expired without the transaction landing.
        TransactionUnconfirmedError: If the outcome is still unknown after ``max_wait``.
    """
    timeout = config.CONFIRMATION_TIMEOUT if timeout is None else timeout
    interval = config.CONFIRMATION_INTERVAL if interval is None else interval
    max_wait = config.CONFIRMATION_MAX_WAIT if max_wait is None else max_wait

    blockhash, last_valid_height = await get_latest_blockhash_with_height(client, rpc_endpoint)
    all_signers: List[Keypair] = [payer] + [s for s in signers if s.pubkey() != payer.pubkey()]
    txn = Transaction(all_signers, Message(list(instructions), payer.pubkey()), blockhash)
    encoded = base64.b64encode(bytes(txn)).decode("ascii")
    tx_signature = str(txn.signatures[0])

    try:
        await _rpc_call(
            client,
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": "confirmed"}],
            rpc_endpoint,
        )
        logger.info(f"Sent transaction {tx_signature}")
    except httpx.TransportError as e:
        # The node may have received it; its status decides
        logger.warning(f"No response sending transaction {tx_signature}: {e}. Polling its status.")

    # Wait for transaction confirmation using getSignatureStatuses
    elapsed_time = 0.0
    while True:
        await asyncio.sleep(interval)
        elapsed_time += interval

        status = await _signature_status(client, tx_signature, rpc_endpoint)
        if _is_confirmed(status, tx_signature):
            logger.info(f"Transaction {tx_signature} confirmed.")
            return tx_signature
        if elapsed_time < timeout:
            continue

        if status is None and await get_block_height(client, rpc_endpoint) > last_valid_height:
            # Re-check once: it may have landed in the last valid block
            status = await _signature_status(client, tx_signature, rpc_endpoint)
            if _is_confirmed(status, tx_signature):
                logger.info(f"Transaction {tx_signature} confirmed.")
                return tx_signature
            if status is None:
                logger.warning(f"Transaction {tx_signature} expired at block height {last_valid_height}.")
                raise TransactionExpiredError(f"Transaction {tx_signature} expired before confirmation")

        if elapsed_time >= max_wait:
            logger.error(f"Transaction {tx_signature} neither confirmed nor expired after {max_wait}s.")
            raise TransactionUnconfirmedError(
                f"Transaction {tx_signature} was not confirmed within {max_wait}s and has not expired", tx_signature
            )


# --- Payment Verification ---

async def verify_payment_transaction(
    client: httpx.AsyncClient,
    tx_signature: Signature,
    destination: Pubkey,
    lamports: int,
    rpc_endpoint: Optional[str] = None,
) -> Pubkey:
    """
    Validates a SOL payment transaction and returns the payer's public key.

    The transaction must have succeeded and contain a System Program transfer of exactly
    ``lamports`` to ``destination``.

    Raises:
        IncorrectPaymentError: If the transaction paid ``destination`` a different amount.
        PaymentFailedError: If the transaction is missing, failed, or does not pay the destination.
    """
    try:
        result = await _rpc_call(
            client,
            "getTransaction",
            [
                str(tx_signature),
                {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
            ],
            rpc_endpoint,
        )
        if not result:
            raise PaymentFailedError(f"Transaction not found: {tx_signature}")

        meta = result.get("meta")
        if meta and meta.get("err"):
            raise PaymentFailedError(f"Transaction {tx_signature} failed on-chain: {meta['err']}")

        received: List[Tuple[Pubkey, int]] = []
        for instruction in result["transaction"]["message"]["instructions"]:
            if instruction.get("programId") != SYSTEM_PROGRAM_ID:
                continue
            parsed = instruction.get("parsed") or {}
            if parsed.get("type") != "transfer":
                continue
            info = parsed["info"]
            if Pubkey.from_string(info["destination"]) != destination:
                continue
            amount = int(info["lamports"])
            payer = Pubkey.from_string(info["source"])
            if amount == lamports:
                logger.info(f"Validated payment transaction {tx_signature} from {payer} for {lamports} lamports.")
                return payer
            received.append((payer, amount))

        if received:
            raise IncorrectPaymentError(
                f"Incorrect payment. Required: {lamports} lamports. "
                f"Received: {', '.join(str(amount) for _, amount in received)} lamports",
                received,
            )
        raise PaymentFailedError(f"Transaction {tx_signature} has no transfer to {destination}")

    except PaymentFailedError:
        raise
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error validating transaction {tx_signature}: {e.response.status_code} - {e.response.text}")
        raise PaymentFailedError(f"HTTP error validating transaction: {e.response.status_code}")
    except KeyError as e:
        logger.error(f"Missing expected key in transaction data for {tx_signature}: {e}")
        raise PaymentFailedError(f"Malformed transaction data received: Missing key {e}")
    except Exception as e:
        logger.exception(f"Unexpected error validating transaction {tx_signature}: {e}")
        raise PaymentFailedError(f"Unexpected error validating transaction: {e}")


# --- Redeemed Signatures ---

class SignatureStore:
    """
    Payment signatures that have been redeemed.

    With a path, the set is saved to a JSON file after every change and read back on creation,
    so a restarted server still refuses signatures redeemed before the restart.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._signatures: Set[str] = set()
        if self.path is not None and self.path.exists():
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise ValueError("expected a JSON array of signatures")
                self._signatures = {str(s) for s in data}
            except (OSError, ValueError) as e:
                raise ConfigurationError(f"Cannot read redeemed signatures from {self.path}: {e}") from e
            logger.info(f"Loaded {len(self._signatures)} redeemed payment signature(s) from {self.path}")

    def __contains__(self, signature: str) -> bool:
        return signature in self._signatures

    def __len__(self) -> int:
        return len(self._signatures)

    def add(self, signature: str) -> None:
        """Records a signature. Raises OSError, leaving it unrecorded, if the file cannot be written."""
        self._signatures.add(signature)
        try:
            self._save()
        except OSError:
            self._signatures.discard(signature)
            raise

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(sorted(self._signatures), f, indent=4)
        tmp_path.replace(self.path)


# --- Collaborators ---

class RpcPaymentGateway:
    """
    Settles mint payments on Solana.

    The buyer pays first, with a transfer of the quoted price to the curve authority; ``transfer``
    receives that transaction's signature as the payment source and verifies it. Each signature
    is redeemed once, across restarts when the store has a path. A payment to the authority of
    the wrong amount is redeemed and refunded. Reversals refund the payer from the operations
    wallet.
    """

    def __init__(
        self,
        rpc_endpoint: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        consumed: Optional[SignatureStore] = None,
    ):
        self.rpc_endpoint = rpc_endpoint or config.RPC_ENDPOINT
        self._transport = transport
        self.consumed = consumed if consumed is not None else SignatureStore()
        # Signatures being verified right now; each one excludes only itself
        self._pending: Set[str] = set()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    def _redeem(self, source: str) -> None:
        try:
            self.consumed.add(source)
        except OSError as e:
            logger.error(f"Could not record redeemed payment {source}: {e}")
            raise PaymentFailedError(f"Payment {source} could not be recorded; it was not redeemed") from e

    async def transfer(self, source: str, destination: str, amount: int) -> PaymentReceipt:
        try:
            tx_signature = Signature.from_string(source)
            destination_pubkey = Pubkey.from_string(destination)
        except ValueError as e:
            raise PaymentFailedError(f"Invalid payment reference: {e}") from e

        if source in self.consumed or source in self._pending:
            raise PaymentFailedError(f"Payment {source} has already been used")

        self._pending.add(source)
        try:
            async with self._client() as client:
                payer = await verify_payment_transaction(
                    client, tx_signature, destination_pubkey, amount, self.rpc_endpoint
                )
            self._redeem(source)
        except IncorrectPaymentError as e:
            self._redeem(source)
            await self._refund_incorrect(source, destination, e)
            raise PaymentFailedError(f"{e}. The payment was refunded.") from e
        finally:
            self._pending.discard(source)

        return PaymentReceipt(reference=source, payer=str(payer), destination=destination, amount=amount)

    async def _refund_incorrect(self, source: str, destination: str, error: IncorrectPaymentError) -> None:
        logger.warning(f"Refunding payment {source}: {error}")
        for payer, received in error.transfers:
            await self.reverse(
                PaymentReceipt(reference=source, payer=str(payer), destination=destination, amount=received)
            )

    async def reverse(self, receipt: PaymentReceipt) -> None:
        refund_ix = transfer(
            TransferParams(
                from_pubkey=config.OPERATIONS_WALLET.pubkey(),
                to_pubkey=Pubkey.from_string(receipt.payer),
                lamports=receipt.amount,
            )
        )
        try:
            async with self._client() as client:
                refund_signature = await send_and_confirm(
                    client, [refund_ix], [], config.OPERATIONS_WALLET, self.rpc_endpoint
                )
        except Exception as e:
            logger.error(f"Refund of payment {receipt.reference} to {receipt.payer} failed: {e}")
            raise PaymentFailedError(f"Refund of payment {receipt.reference} failed: {e}") from e

        logger.info(f"Refunded {receipt.amount} lamports to {receipt.payer} in {refund_signature}")


class RpcTokenIssuer:
    """Mints one unit of a collection's mint to the buyer's associated token account."""

    def __init__(self, rpc_endpoint: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rpc_endpoint = rpc_endpoint or config.RPC_ENDPOINT
        self._transport = transport

    async def issue_one(self, target: str, credential: SeriesCredential) -> str:
        try:
            owner = Pubkey.from_string(target)
            mint = Pubkey.from_string(credential.collection_id)
        except ValueError as e:
            raise IssuanceFailedError(f"Invalid issuance target: {e}") from e

        target_account = get_associated_token_address(owner, mint)
        payer = config.OPERATIONS_WALLET
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                instructions = []
                if not await account_exists(client, target_account, self.rpc_endpoint):
                    logger.info(f"Creating token account {target_account} for {owner}")
                    instructions.append(create_associated_token_account(payer=payer.pubkey(), owner=owner, mint=mint))
                instructions.append(
                    mint_to(
                        MintToParams(
                            program_id=TOKEN_PROGRAM_ID,
                            mint=mint,
                            dest=target_account,
                            mint_authority=credential.mint_authority,
                            amount=1,
                            signers=[],
                        )
                    )
                )
                tx_signature = await send_and_confirm(
                    client, instructions, [credential.signer], payer, self.rpc_endpoint
                )
        except TransactionUnconfirmedError as e:
            logger.error(f"Issuance of {credential.collection_id} to {target} is unconfirmed: {e}")
            raise IssuanceUnconfirmedError(f"Issuance transaction {e.signature} is unconfirmed", e.signature) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error issuing {credential.collection_id} to {target}: {e.response.status_code}")
            raise IssuanceFailedError(f"HTTP error issuing edition: {e.response.status_code}") from e
        except Exception as e:
            logger.exception(f"Unexpected error issuing {credential.collection_id} to {target}: {e}")
            raise IssuanceFailedError(f"Unexpected error issuing edition: {e}") from e

        logger.info(f"Issued one {credential.collection_id} to {target_account} in {tx_signature}")
        return tx_signature
