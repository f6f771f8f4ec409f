"""
Payment and Issuance Collaborators

The engine decides how much a buyer pays and that payment and issuance happen together; moving
funds and minting tokens belong to external collaborators. This module defines their
interfaces and in-process implementations used by the "memory" settlement backend and tests.
The Solana RPC implementations live in solana_utils.
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Set

from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_bonding_curve.credentials import SeriesCredential
from mcp_bonding_curve.errors import IssuanceFailedError, PaymentFailedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentReceipt:
    reference: str
    payer: str
    destination: str
    amount: int


class PaymentGateway(Protocol):
    async def transfer(self, source: str, destination: str, amount: int) -> PaymentReceipt:
        """Moves exactly ``amount`` lamports from ``source`` to ``destination``."""
        ...

    async def reverse(self, receipt: PaymentReceipt) -> None:
        """Returns a collected payment to its payer."""
        ...


class TokenIssuer(Protocol):
    async def issue_one(self, target: str, credential: SeriesCredential) -> str:
        """Issues one unit of the credential's collection to ``target``; returns a reference."""
        ...


def generate_reference() -> str:
    """Generates a unique settlement reference."""
    return str(uuid.uuid4())


class InMemoryLedger:
    """Balance ledger that settles payments in process."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances: Dict[str, int] = dict(balances or {})
        self.receipts: Dict[str, PaymentReceipt] = {}
        self.reversed: Set[str] = set()
        self._lock = asyncio.Lock()

    def deposit(self, account: str, amount: int) -> None:
        self.balances[account] = self.balances.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    async def transfer(self, source: str, destination: str, amount: int) -> PaymentReceipt:
        async with self._lock:
            available = self.balances.get(source, 0)
            if available < amount:
                raise PaymentFailedError(
                    f"Insufficient funds. Required: {amount} lamports. Available: {available} lamports"
                )
            self.balances[source] = available - amount
            self.balances[destination] = self.balances.get(destination, 0) + amount
            receipt = PaymentReceipt(reference=generate_reference(), payer=source, destination=destination, amount=amount)
            self.receipts[receipt.reference] = receipt

        logger.debug(f"Ledger transfer {receipt.reference}: {amount} lamports {source} -> {destination}")
        return receipt

    async def reverse(self, receipt: PaymentReceipt) -> None:
        async with self._lock:
            if receipt.reference not in self.receipts or receipt.reference in self.reversed:
                raise PaymentFailedError(f"Payment {receipt.reference} cannot be reversed")
            self.balances[receipt.destination] = self.balances.get(receipt.destination, 0) - receipt.amount
            self.balances[receipt.payer] = self.balances.get(receipt.payer, 0) + receipt.amount
            self.reversed.add(receipt.reference)

        logger.info(f"Reversed ledger payment {receipt.reference} of {receipt.amount} lamports to {receipt.payer}")


class InMemoryIssuer:
    """Records issued editions per collection in process."""

    def __init__(self):
        self.holdings: Dict[str, List[str]] = {}

    async def issue_one(self, target: str, credential: SeriesCredential) -> str:
        if not target:
            raise IssuanceFailedError("Issuance target must be a non-empty account")
        self.holdings.setdefault(credential.collection_id, []).append(target)
        reference = generate_reference()
        logger.debug(f"Issued edition of {credential.collection_id} to {target} ({reference})")
        return reference

    def issued_to(self, collection_id: str) -> List[str]:
        return list(self.holdings.get(collection_id, []))
