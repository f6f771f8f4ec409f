import asyncio
import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from mcp_bonding_curve import config, mint, solana_utils
from mcp_bonding_curve.collaborators import PaymentReceipt
from mcp_bonding_curve.credentials import derive_series_credential
from mcp_bonding_curve.errors import (
    ConfigurationError,
    IssuanceFailedError,
    IssuanceUnconfirmedError,
    PaymentFailedError,
)

PAYMENT_SIGNATURE = str(Signature(bytes([3] * 64)))
LAST_VALID_HEIGHT = 100


def transfer_result(source: str, destination: str, lamports: int, err=None) -> dict:
    return {
        "meta": {"err": err},
        "transaction": {
            "message": {
                "instructions": [
                    {
                        "programId": "ComputeBudget111111111111111111111111111111",
                        "data": "3DTZbgwsozUF",
                    },
                    {
                        "programId": solana_utils.SYSTEM_PROGRAM_ID,
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": source, "destination": destination, "lamports": lamports},
                        },
                    },
                ]
            }
        },
    }


class FakeRpc:
    """JSON-RPC node answering from canned results and recording the methods called."""

    def __init__(self, results: dict):
        self.results = results
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body["method"])
        result = self.results[body["method"]]
        if callable(result):
            result = result(body["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def confirmed_node(account_exists: bool = True, status_err=None) -> FakeRpc:
    return FakeRpc(
        {
            "getLatestBlockhash": {
                "value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": LAST_VALID_HEIGHT}
            },
            "getAccountInfo": {"value": {"lamports": 1} if account_exists else None},
            "sendTransaction": str(Signature(bytes([8] * 64))),
            "getSignatureStatuses": {"value": [{"confirmationStatus": "confirmed", "err": status_err}]},
            "getBlockHeight": LAST_VALID_HEIGHT - 50,
        }
    )


def pending_node(block_height: int) -> FakeRpc:
    """Node that never reports a status for sent transactions."""
    node = confirmed_node()
    node.results["getSignatureStatuses"] = {"value": [None]}
    node.results["getBlockHeight"] = block_height
    return node


@pytest.fixture(autouse=True)
def fast_confirmation(monkeypatch):
    monkeypatch.setattr(config, "CONFIRMATION_INTERVAL", 0.01)
    monkeypatch.setattr(config, "CONFIRMATION_TIMEOUT", 0.05)
    monkeypatch.setattr(config, "CONFIRMATION_MAX_WAIT", 0.2)


# --- verify_payment_transaction ---

@pytest.mark.asyncio
async def test_verify_exact_payment(authority, buyer):
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1100)})
    async with httpx.AsyncClient(transport=node.transport) as client:
        payer = await solana_utils.verify_payment_transaction(
            client, Signature.from_string(PAYMENT_SIGNATURE), Pubkey.from_string(authority), 1100
        )
    assert payer == Pubkey.from_string(buyer)


@pytest.mark.asyncio
@pytest.mark.parametrize("lamports", [1099, 1101])
async def test_verify_rejects_wrong_amount(authority, buyer, lamports):
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, lamports)})
    async with httpx.AsyncClient(transport=node.transport) as client:
        with pytest.raises(solana_utils.IncorrectPaymentError, match="Incorrect payment") as excinfo:
            await solana_utils.verify_payment_transaction(
                client, Signature.from_string(PAYMENT_SIGNATURE), Pubkey.from_string(authority), 1100
            )
    assert excinfo.value.transfers == [(Pubkey.from_string(buyer), lamports)]


@pytest.mark.asyncio
async def test_verify_rejects_other_destination(authority, buyer):
    node = FakeRpc({"getTransaction": transfer_result(buyer, str(Pubkey.new_unique()), 1100)})
    async with httpx.AsyncClient(transport=node.transport) as client:
        with pytest.raises(PaymentFailedError, match="no transfer"):
            await solana_utils.verify_payment_transaction(
                client, Signature.from_string(PAYMENT_SIGNATURE), Pubkey.from_string(authority), 1100
            )


@pytest.mark.asyncio
async def test_verify_rejects_failed_or_missing_transaction(authority, buyer):
    signature = Signature.from_string(PAYMENT_SIGNATURE)
    failed = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1100, err={"InstructionError": [0, "x"]})})
    missing = FakeRpc({"getTransaction": None})
    for node in (failed, missing):
        async with httpx.AsyncClient(transport=node.transport) as client:
            with pytest.raises(PaymentFailedError):
                await solana_utils.verify_payment_transaction(client, signature, Pubkey.from_string(authority), 1100)


@pytest.mark.asyncio
async def test_verify_reports_http_errors(authority):
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable"))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(PaymentFailedError, match="503"):
            await solana_utils.verify_payment_transaction(
                client, Signature.from_string(PAYMENT_SIGNATURE), Pubkey.from_string(authority), 1
            )


# --- SignatureStore ---

def test_signature_store_reloads_from_file(tmp_path):
    path = tmp_path / "signatures.json"
    store = solana_utils.SignatureStore(path)
    store.add(PAYMENT_SIGNATURE)

    reloaded = solana_utils.SignatureStore(path)
    assert PAYMENT_SIGNATURE in reloaded
    assert len(reloaded) == 1


def test_unreadable_signature_file_is_a_configuration_error(tmp_path):
    path = tmp_path / "signatures.json"
    path.write_text("{oops")
    with pytest.raises(ConfigurationError):
        solana_utils.SignatureStore(path)


def test_signature_is_not_kept_when_file_cannot_be_written(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = solana_utils.SignatureStore(blocker / "signatures.json")
    with pytest.raises(OSError):
        store.add(PAYMENT_SIGNATURE)
    assert PAYMENT_SIGNATURE not in store


# --- RpcPaymentGateway ---

@pytest.mark.asyncio
async def test_payment_signature_is_accepted_once(authority, buyer):
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1000)})
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)

    receipt = await gateway.transfer(PAYMENT_SIGNATURE, authority, 1000)
    assert receipt == PaymentReceipt(reference=PAYMENT_SIGNATURE, payer=buyer, destination=authority, amount=1000)

    with pytest.raises(PaymentFailedError, match="already been used"):
        await gateway.transfer(PAYMENT_SIGNATURE, authority, 1000)
    assert node.calls == ["getTransaction"]


@pytest.mark.asyncio
async def test_redeemed_signature_is_refused_after_restart(tmp_path, authority, buyer):
    path = tmp_path / "signatures.json"
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1000)})

    first = solana_utils.RpcPaymentGateway(transport=node.transport, consumed=solana_utils.SignatureStore(path))
    await first.transfer(PAYMENT_SIGNATURE, authority, 1000)

    restarted = solana_utils.RpcPaymentGateway(transport=node.transport, consumed=solana_utils.SignatureStore(path))
    with pytest.raises(PaymentFailedError, match="already been used"):
        await restarted.transfer(PAYMENT_SIGNATURE, authority, 1000)
    assert node.calls == ["getTransaction"]


@pytest.mark.asyncio
async def test_wrong_amount_is_redeemed_and_refunded(authority, buyer):
    node = confirmed_node()
    node.results["getTransaction"] = transfer_result(buyer, authority, 900)
    sent = []
    node.results["sendTransaction"] = lambda params: sent.append(params) or str(Signature(bytes([8] * 64)))
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)

    with pytest.raises(PaymentFailedError, match="Incorrect payment.*refunded"):
        await gateway.transfer(PAYMENT_SIGNATURE, authority, 1000)

    assert PAYMENT_SIGNATURE in gateway.consumed
    assert len(sent) == 1
    refund = Transaction.from_bytes(base64.b64decode(sent[0][0]))
    assert refund.message.account_keys[0] == config.OPERATIONS_WALLET.pubkey()
    assert Pubkey.from_string(buyer) in refund.message.account_keys

    with pytest.raises(PaymentFailedError, match="already been used"):
        await gateway.transfer(PAYMENT_SIGNATURE, authority, 900)
    assert len(sent) == 1


@pytest.mark.asyncio
async def test_missing_payment_is_not_redeemed(authority):
    node = FakeRpc({"getTransaction": None})
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)
    with pytest.raises(PaymentFailedError, match="not found"):
        await gateway.transfer(PAYMENT_SIGNATURE, authority, 1000)
    assert PAYMENT_SIGNATURE not in gateway.consumed


@pytest.mark.asyncio
async def test_unrecorded_payment_is_not_redeemed(tmp_path, authority, buyer):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1000)})
    gateway = solana_utils.RpcPaymentGateway(
        transport=node.transport, consumed=solana_utils.SignatureStore(blocker / "signatures.json")
    )
    with pytest.raises(PaymentFailedError, match="could not be recorded"):
        await gateway.transfer(PAYMENT_SIGNATURE, authority, 1000)
    assert PAYMENT_SIGNATURE not in gateway.consumed


@pytest.mark.asyncio
async def test_payments_are_verified_independently(authority, buyer):
    slow_signature = str(Signature(bytes([4] * 64)))
    fast_signature = str(Signature(bytes([5] * 64)))
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["params"][0] == slow_signature:
            await release.wait()
        result = transfer_result(buyer, authority, 1000)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    gateway = solana_utils.RpcPaymentGateway(transport=httpx.MockTransport(handler))
    slow = asyncio.create_task(gateway.transfer(slow_signature, authority, 1000))
    await asyncio.sleep(0)

    receipt = await asyncio.wait_for(gateway.transfer(fast_signature, authority, 1000), timeout=1)
    assert receipt.reference == fast_signature
    with pytest.raises(PaymentFailedError, match="already been used"):
        await gateway.transfer(slow_signature, authority, 1000)

    release.set()
    assert (await slow).reference == slow_signature


@pytest.mark.asyncio
async def test_malformed_payment_reference(authority):
    gateway = solana_utils.RpcPaymentGateway(transport=FakeRpc({}).transport)
    with pytest.raises(PaymentFailedError):
        await gateway.transfer("not-a-signature", authority, 1000)


@pytest.mark.asyncio
async def test_reverse_refunds_from_operations_wallet(authority, buyer):
    node = confirmed_node()
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)
    await gateway.reverse(PaymentReceipt(PAYMENT_SIGNATURE, buyer, authority, 1000))
    assert node.calls == ["getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]


@pytest.mark.asyncio
async def test_failed_refund_raises_payment_failure(authority, buyer):
    node = confirmed_node(status_err={"InstructionError": [0, "InsufficientFunds"]})
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)
    with pytest.raises(PaymentFailedError):
        await gateway.reverse(PaymentReceipt(PAYMENT_SIGNATURE, buyer, authority, 1000))


# --- RpcTokenIssuer ---

@pytest.mark.asyncio
async def test_issue_creates_missing_token_account(collection_id, buyer):
    node = confirmed_node(account_exists=False)
    sent = []
    node.results["sendTransaction"] = lambda params: sent.append(params) or str(Signature(bytes([8] * 64)))
    issuer = solana_utils.RpcTokenIssuer(transport=node.transport)

    reference = await issuer.issue_one(buyer, derive_series_credential(collection_id))

    assert node.calls == ["getAccountInfo", "getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]
    assert sent[0][1]["encoding"] == "base64"
    txn = Transaction.from_bytes(base64.b64decode(sent[0][0]))
    assert reference == str(txn.signatures[0])


@pytest.mark.asyncio
async def test_issue_failure_is_reported(collection_id, buyer):
    node = confirmed_node(status_err={"InstructionError": [1, {"Custom": 5}]})
    issuer = solana_utils.RpcTokenIssuer(transport=node.transport)
    with pytest.raises(IssuanceFailedError):
        await issuer.issue_one(buyer, derive_series_credential(collection_id))


@pytest.mark.asyncio
async def test_issue_with_unknown_outcome_is_unconfirmed(collection_id, buyer):
    issuer = solana_utils.RpcTokenIssuer(transport=pending_node(LAST_VALID_HEIGHT).transport)
    with pytest.raises(IssuanceUnconfirmedError) as excinfo:
        await issuer.issue_one(buyer, derive_series_credential(collection_id))
    Signature.from_string(excinfo.value.reference)


@pytest.mark.asyncio
async def test_issue_rejects_invalid_target(collection_id):
    issuer = solana_utils.RpcTokenIssuer(transport=FakeRpc({}).transport)
    with pytest.raises(IssuanceFailedError):
        await issuer.issue_one("nobody", derive_series_credential(collection_id))


# --- send_and_confirm ---

@pytest.mark.asyncio
async def test_send_and_confirm_reports_expiry():
    node = pending_node(LAST_VALID_HEIGHT + 1)
    async with httpx.AsyncClient(transport=node.transport) as client:
        with pytest.raises(solana_utils.TransactionExpiredError, match="expired"):
            await solana_utils.send_and_confirm(client, [], [], config.OPERATIONS_WALLET)


@pytest.mark.asyncio
async def test_send_and_confirm_waits_while_blockhash_is_valid():
    node = pending_node(LAST_VALID_HEIGHT)
    async with httpx.AsyncClient(transport=node.transport) as client:
        with pytest.raises(solana_utils.TransactionUnconfirmedError) as excinfo:
            await solana_utils.send_and_confirm(client, [], [], config.OPERATIONS_WALLET)
    assert "getBlockHeight" in node.calls
    assert node.calls.count("getSignatureStatuses") > 5
    Signature.from_string(excinfo.value.signature)


@pytest.mark.asyncio
async def test_send_and_confirm_accepts_late_confirmation():
    node = pending_node(LAST_VALID_HEIGHT)
    statuses = iter([None] * 8)
    node.results["getSignatureStatuses"] = lambda params: {
        "value": [next(statuses, {"confirmationStatus": "finalized", "err": None})]
    }
    async with httpx.AsyncClient(transport=node.transport) as client:
        signature = await solana_utils.send_and_confirm(client, [], [], config.OPERATIONS_WALLET)
    assert "getBlockHeight" in node.calls
    Signature.from_string(signature)


@pytest.mark.asyncio
async def test_send_and_confirm_polls_after_lost_send_response():
    node = confirmed_node()

    def lost(params):
        raise httpx.ReadTimeout("no response")

    node.results["sendTransaction"] = lost
    async with httpx.AsyncClient(transport=node.transport) as client:
        signature = await solana_utils.send_and_confirm(client, [], [], config.OPERATIONS_WALLET)
    assert node.calls == ["getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]
    Signature.from_string(signature)


# --- Minting with Solana settlement ---

@pytest.mark.asyncio
async def test_mint_refunds_payment_of_outdated_price(make_curve, registry, collection_id, authority, buyer, issuer):
    make_curve()
    node = confirmed_node()
    # Paid the quote for edition 1 while edition 1 went to someone else
    entry = registry._entry(collection_id)
    entry.curve = entry.curve.model_copy(update={"current_supply": 1, "total_volume": 1000})
    node.results["getTransaction"] = transfer_result(buyer, authority, 1000)
    gateway = solana_utils.RpcPaymentGateway(transport=node.transport)

    with pytest.raises(PaymentFailedError, match="Required: 1100 lamports"):
        await mint.mint_edition(registry, collection_id, PAYMENT_SIGNATURE, buyer, gateway, issuer)

    assert node.calls.count("sendTransaction") == 1
    assert PAYMENT_SIGNATURE in gateway.consumed
    assert registry.get_curve(collection_id).current_supply == 1
    assert issuer.issued_to(collection_id) == []


@pytest.mark.asyncio
async def test_mint_refuses_payment_replayed_after_restart(tmp_path, make_curve, registry, collection_id, authority, buyer, issuer):
    make_curve(price_increment=0)
    path = tmp_path / "signatures.json"
    node = FakeRpc({"getTransaction": transfer_result(buyer, authority, 1000)})

    gateway = solana_utils.RpcPaymentGateway(transport=node.transport, consumed=solana_utils.SignatureStore(path))
    await mint.mint_edition(registry, collection_id, PAYMENT_SIGNATURE, buyer, gateway, issuer)

    restarted = solana_utils.RpcPaymentGateway(transport=node.transport, consumed=solana_utils.SignatureStore(path))
    with pytest.raises(PaymentFailedError, match="already been used"):
        await mint.mint_edition(registry, collection_id, PAYMENT_SIGNATURE, buyer, restarted, issuer)

    assert registry.get_curve(collection_id).current_supply == 1
    assert issuer.issued_to(collection_id) == [buyer]


@pytest.mark.asyncio
async def test_mint_keeps_payment_when_issuance_is_unconfirmed(make_curve, registry, collection_id, authority, buyer, ledger):
    make_curve()
    issuer = solana_utils.RpcTokenIssuer(transport=pending_node(LAST_VALID_HEIGHT).transport)

    with pytest.raises(IssuanceUnconfirmedError):
        await mint.mint_edition(registry, collection_id, buyer, buyer, ledger, issuer)

    curve = registry.get_curve(collection_id)
    assert (curve.current_supply, curve.total_volume) == (1, 1000)
    assert ledger.balance_of(authority) == 1000
    assert ledger.reversed == set()


@pytest.mark.asyncio
async def test_mint_refunds_when_issuance_expired(make_curve, registry, collection_id, authority, buyer, ledger):
    make_curve()
    issuer = solana_utils.RpcTokenIssuer(transport=pending_node(LAST_VALID_HEIGHT + 1).transport)

    with pytest.raises(IssuanceFailedError):
        await mint.mint_edition(registry, collection_id, buyer, buyer, ledger, issuer)

    assert registry.get_curve(collection_id).current_supply == 0
    assert ledger.balance_of(buyer) == 10**12
    assert ledger.balance_of(authority) == 0
