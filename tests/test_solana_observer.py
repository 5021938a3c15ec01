"""
xessrewards/tests/test_solana_observer.py

Tests for the Solana JSON-RPC observer:
- request shape and error mapping
- account decoding
- jsonParsed transaction reduction
- program-derived addresses
"""

import base64
import struct
from unittest.mock import Mock

import pytest
import requests

from xessrewards.blockchain.observer import ChainObserverError, EpochRootAccount
from xessrewards.blockchain.solana import SolanaRpcObserver, parse_transaction
from xessrewards.config import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID


WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SIG = "5" + "K" * 86


def rpc_session(body=None, error=None):
    session = Mock()
    if error is not None:
        session.post.side_effect = error
    else:
        response = Mock()
        response.json.return_value = body
        session.post.return_value = response
    return session


def transfer_ix(source, destination, amount, kind="transfer"):
    info = {"source": source, "destination": destination, "authority": "Auth"}
    if kind == "transferChecked":
        info["tokenAmount"] = {"amount": str(amount), "decimals": 9}
        info["mint"] = USDC_MINT
    else:
        info["amount"] = str(amount)
    return {
        "program": "spl-token",
        "programId": TOKEN_PROGRAM_ID,
        "parsed": {"type": kind, "info": info},
    }


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def tx_result():
    return {
        "slot": 321,
        "meta": {
            "err": None,
            "innerInstructions": [
                {"index": 0, "instructions": [transfer_ix("Vault", "UserAta", 1500, "transferChecked")]},
            ],
        },
        "transaction": {
            "message": {
                "accountKeys": [{"pubkey": WALLET, "signer": True}, {"pubkey": "ClaimProg"}],
                "instructions": [
                    {"programId": "ClaimProg", "accounts": [], "data": ""},
                    transfer_ix("Vault", "Elsewhere", 7),
                ],
            },
        },
    }


class TestRpcCall:
    """Tests for request handling."""

    def test_request_shape(self):
        session = rpc_session({"jsonrpc": "2.0", "id": 1, "result": {"value": None}})
        observer = SolanaRpcObserver("http://rpc", timeout=3, session=session)
        observer.get_account(WALLET)

        args, kwargs = session.post.call_args
        assert args == ("http://rpc",)
        assert kwargs["timeout"] == 3
        assert kwargs["json"]["method"] == "getAccountInfo"
        assert kwargs["json"]["params"][0] == WALLET
        assert kwargs["json"]["params"][1]["encoding"] == "base64"

    def test_request_ids_increase(self):
        session = rpc_session({"result": {"value": None}})
        observer = SolanaRpcObserver("http://rpc", session=session)
        observer.get_account(WALLET)
        observer.get_account(WALLET)
        ids = [c.kwargs["json"]["id"] for c in session.post.call_args_list]
        assert ids == [1, 2]

    def test_timeout(self):
        observer = SolanaRpcObserver("http://rpc", session=rpc_session(error=requests.Timeout()))
        with pytest.raises(ChainObserverError, match="timed out"):
            observer.get_transaction(SIG)

    def test_connection_error(self):
        error = requests.ConnectionError("refused")
        observer = SolanaRpcObserver("http://rpc", session=rpc_session(error=error))
        with pytest.raises(ChainObserverError):
            observer.get_account(WALLET)

    def test_rpc_error(self):
        body = {"error": {"code": -32005, "message": "Node is behind"}}
        observer = SolanaRpcObserver("http://rpc", session=rpc_session(body))
        with pytest.raises(ChainObserverError, match="Node is behind"):
            observer.get_account(WALLET)

    def test_invalid_json(self):
        session = rpc_session({})
        session.post.return_value.json.side_effect = ValueError("not json")
        observer = SolanaRpcObserver("http://rpc", session=session)
        with pytest.raises(ChainObserverError):
            observer.get_account(WALLET)


class TestAccounts:
    """Tests for getAccountInfo decoding."""

    def test_missing_account(self):
        observer = SolanaRpcObserver("http://rpc", session=rpc_session({"result": {"value": None}}))
        assert observer.get_account(WALLET) is None
        assert observer.account_exists(WALLET) is False

    def test_account_data(self):
        data = b"\x00" * 8 + struct.pack("<Q", 4) + b"\xab" * 32
        body = {"result": {"value": {
            "owner": "ClaimProg",
            "lamports": 2039280,
            "data": [base64.b64encode(data).decode(), "base64"],
        }}}
        observer = SolanaRpcObserver("http://rpc", session=rpc_session(body))
        account = observer.get_account(WALLET)
        assert account.owner == "ClaimProg"
        assert account.lamports == 2039280
        root = EpochRootAccount.parse(account.data)
        assert root.epoch == 4
        assert root.root == b"\xab" * 32

    def test_short_epoch_root(self):
        with pytest.raises(ValueError):
            EpochRootAccount.parse(b"\x00" * 20)


class TestParseTransaction:
    """Tests for jsonParsed transaction reduction."""

    def test_transfers_include_inner_instructions(self, tx_result):
        tx = parse_transaction(SIG, tx_result)
        assert tx.failed is False
        assert tx.slot == 321
        assert tx.transferred("Vault", "UserAta") == 1500
        assert tx.transferred("Vault") == 1507
        assert tx.transfers[0].mint is None
        assert tx.transfers[1].mint == USDC_MINT

    def test_program_ids(self, tx_result):
        tx = parse_transaction(SIG, tx_result)
        assert tx.invokes("ClaimProg")
        assert tx.invokes(TOKEN_PROGRAM_ID)
        assert not tx.invokes("OtherProg")
        assert tx.account_keys == [WALLET, "ClaimProg"]

    def test_failed_transaction(self, tx_result):
        tx_result["meta"]["err"] = {"InstructionError": [0, {"Custom": 6001}]}
        assert parse_transaction(SIG, tx_result).failed is True

    def test_non_transfer_instructions_ignored(self):
        result = {
            "meta": {"err": None},
            "transaction": {"message": {"accountKeys": [], "instructions": [
                {"program": "spl-token", "programId": TOKEN_PROGRAM_ID,
                 "parsed": {"type": "closeAccount", "info": {}}},
                {"program": "system", "programId": "11111111111111111111111111111111",
                 "parsed": {"type": "transfer", "info": {"source": "a", "destination": "b", "lamports": 5}}},
            ]}},
        }
        tx = parse_transaction(SIG, result)
        assert tx.transfers == []

    def test_transaction_not_found(self):
        observer = SolanaRpcObserver("http://rpc", session=rpc_session({"result": None}))
        assert observer.get_transaction(SIG) is None


class TestAddresses:
    """Tests for program-derived addresses."""

    def test_address_bytes(self):
        observer = SolanaRpcObserver("http://rpc", session=Mock())
        assert observer.address_bytes("11111111111111111111111111111111") == b"\x00" * 32
        assert len(observer.address_bytes(WALLET)) == 32

    def test_pda_deterministic(self):
        observer = SolanaRpcObserver("http://rpc", session=Mock())
        first = observer.epoch_root_address(ASSOCIATED_TOKEN_PROGRAM_ID, 7)
        assert first == observer.epoch_root_address(ASSOCIATED_TOKEN_PROGRAM_ID, 7)
        assert first != observer.epoch_root_address(ASSOCIATED_TOKEN_PROGRAM_ID, 8)

    def test_receipt_depends_on_user(self):
        observer = SolanaRpcObserver("http://rpc", session=Mock())
        a = observer.receipt_address(ASSOCIATED_TOKEN_PROGRAM_ID, 1, b"\x01" * 32)
        b = observer.receipt_address(ASSOCIATED_TOKEN_PROGRAM_ID, 1, b"\x02" * 32)
        assert a != b

    def test_token_account_address(self):
        observer = SolanaRpcObserver("http://rpc", session=Mock())
        ata = observer.token_account_address(WALLET, USDC_MINT)
        assert len(observer.address_bytes(ata)) == 32
        assert ata != observer.token_account_address(WALLET, TOKEN_PROGRAM_ID)
