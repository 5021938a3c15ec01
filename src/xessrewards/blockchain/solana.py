"""
xessrewards/blockchain/solana.py

ChainObserver backed by a Solana JSON-RPC endpoint.

Every request carries a bounded timeout; transport errors, timeouts and
RPC error objects are raised as ChainObserverError so callers can treat
them as retryable.

Usage:
    observer = SolanaRpcObserver("https://api.mainnet-beta.solana.com", timeout=10)
    tx = observer.get_transaction(sig)
"""

import base64
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests
from solders.pubkey import Pubkey

from ..config import RPC_TIMEOUT_SECONDS
from .observer import (
    AccountInfo,
    ChainObserver,
    ChainObserverError,
    ObservedTransaction,
    TokenTransfer,
)

logger = logging.getLogger("xessrewards.blockchain.solana")

TOKEN_PROGRAMS = ("spl-token", "spl-token-2022")
TRANSFER_TYPES = ("transfer", "transferChecked")


class SolanaRpcObserver(ChainObserver):
    """
    Read-only Solana RPC client.

    Args:
        url: RPC endpoint
        timeout: Seconds allowed per request
        commitment: Commitment level for reads
    """

    def __init__(
        self,
        url: str,
        timeout: float = RPC_TIMEOUT_SECONDS,
        commitment: str = "confirmed",
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.commitment = commitment
        self._session = session or requests.Session()
        self._request_id = 0

    def _next_id(self) -> int:
        """Get next request ID."""
        self._request_id += 1
        return self._request_id

    def _call(self, method: str, *params) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            ChainObserverError: On transport, timeout or server error
        """
        request = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": list(params),
        }
        try:
            response = self._session.post(self.url, json=request, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as e:
            raise ChainObserverError(f"{method} timed out after {self.timeout}s") from e
        except (requests.RequestException, ValueError) as e:
            raise ChainObserverError(f"{method} failed: {e}") from e

        if "error" in body and body["error"]:
            error = body["error"]
            msg = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ChainObserverError(f"RPC error from {method}: {msg}")

        return body.get("result")

    # ========================================================================
    # CHAIN OBSERVER
    # ========================================================================

    def get_account(self, address: str) -> Optional[AccountInfo]:
        result = self._call(
            "getAccountInfo",
            address,
            {"encoding": "base64", "commitment": self.commitment},
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        raw = value.get("data") or ["", "base64"]
        data = base64.b64decode(raw[0]) if isinstance(raw, list) and raw[0] else b""
        return AccountInfo(
            address=address,
            owner=value.get("owner", ""),
            data=data,
            lamports=int(value.get("lamports", 0)),
        )

    def get_transaction(self, signature: str) -> Optional[ObservedTransaction]:
        result = self._call(
            "getTransaction",
            signature,
            {
                "encoding": "jsonParsed",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            },
        )
        if result is None:
            logger.debug(f"Transaction {signature} not found")
            return None
        return parse_transaction(signature, result)

    def find_program_address(self, seeds: Sequence[bytes], program_id: str) -> str:
        address, _bump = Pubkey.find_program_address(
            list(seeds), Pubkey.from_string(program_id)
        )
        return str(address)

    def address_bytes(self, address: str) -> bytes:
        return bytes(Pubkey.from_string(address))


def _account_key(key: Any) -> str:
    # jsonParsed returns {"pubkey": ...}; other encodings plain strings
    return key.get("pubkey", "") if isinstance(key, dict) else str(key)


def _parse_transfer(ix: Dict[str, Any]) -> Optional[TokenTransfer]:
    if ix.get("program") not in TOKEN_PROGRAMS:
        return None
    parsed = ix.get("parsed")
    if not isinstance(parsed, dict) or parsed.get("type") not in TRANSFER_TYPES:
        return None
    info = parsed.get("info", {})
    if "tokenAmount" in info:
        amount = info["tokenAmount"].get("amount", "0")
    else:
        amount = info.get("amount", "0")
    return TokenTransfer(
        source=info.get("source", ""),
        destination=info.get("destination", ""),
        amount=int(amount),
        authority=info.get("authority") or info.get("multisigAuthority"),
        mint=info.get("mint"),
    )


def parse_transaction(signature: str, result: Dict[str, Any]) -> ObservedTransaction:
    """Reduce a jsonParsed getTransaction result to an ObservedTransaction."""
    meta = result.get("meta") or {}
    message = (result.get("transaction") or {}).get("message") or {}

    account_keys = [_account_key(k) for k in message.get("accountKeys", [])]

    instructions: List[Dict[str, Any]] = list(message.get("instructions", []))
    for inner in meta.get("innerInstructions") or []:
        instructions.extend(inner.get("instructions", []))

    program_ids = []
    transfers = []
    for ix in instructions:
        program_id = ix.get("programId")
        if program_id and program_id not in program_ids:
            program_ids.append(program_id)
        transfer = _parse_transfer(ix)
        if transfer is not None:
            transfers.append(transfer)

    return ObservedTransaction(
        signature=signature,
        failed=meta.get("err") is not None,
        account_keys=account_keys,
        program_ids=program_ids,
        transfers=transfers,
        slot=result.get("slot"),
    )
