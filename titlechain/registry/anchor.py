"""
Ledger Anchor

Translates registry operations into calls on an external append-only ledger
(a land-registry smart contract) and classifies every outcome the core has to
react to.

Architecture:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    TRANSFER COORDINATOR / REGISTRAR                  │
    │  record_transfer(), register_asset(), update_status()               │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │
                                   ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    LEDGER ANCHOR                                     │
    │  Duplicate detection, gas estimate x safety margin,                 │
    │  circuit breaker, bounded confirmation wait                         │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │
                                   ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    LEDGER CLIENT (protocol)                          │
    │  estimate_gas · submit · wait_for_confirmation · get_transfer_record│
    └─────────────────────────────────────────────────────────────────────┘

Failure classes:

    Unconfirmed  submitted, receipt not observed in time. Carries tx_hash so
                 the caller can wait on it again instead of resubmitting.
    Rejected     the ledger refused the call (revert, on-ledger authority).
    Unavailable  nothing was submitted. Safe to retry.

The anchor never mutates off-chain state.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from titlechain.registry.errors import Rejected, Unavailable, Unconfirmed
from titlechain.registry.observability import RegistryLayer, get_logger
from titlechain.registry.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    OperationTimeout,
    Timeout,
)


logger = get_logger("anchor", RegistryLayer.ANCHOR)


# =============================================================================
# CALL SHAPES
# =============================================================================

class LedgerOperation(Enum):
    REGISTER = "register"
    TRANSFER = "transfer"
    STATUS_UPDATE = "status-update"


def holder_address(holder_id: str) -> str:
    """Deterministic ledger address for an off-chain holder id."""
    return "0x" + hashlib.sha256(f"titlechain:holder:{holder_id}".encode()).hexdigest()[:40]


@dataclass
class LedgerCall:
    """A contract call in the ledger's own shape."""
    operation: LedgerOperation
    contract_address: str
    asset_id: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "contract_address": self.contract_address,
            "asset_id": self.asset_id,
            "args": self.args,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LedgerCall":
        return cls(
            operation=LedgerOperation(d["operation"]),
            contract_address=str(d["contract_address"]),
            asset_id=str(d["asset_id"]),
            args=dict(d.get("args") or {}),
        )

    @property
    def calldata(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode()


@dataclass
class LedgerReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: str = "success"
    chain: str = ""
    duplicate: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "status": self.status,
            "chain": self.chain,
            "duplicate": self.duplicate,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LedgerReceipt":
        return cls(
            tx_hash=str(d["tx_hash"]),
            block_number=int(d.get("block_number", 0)),
            gas_used=int(d.get("gas_used", 0)),
            status=str(d.get("status", "success")),
            chain=str(d.get("chain", "")),
            duplicate=bool(d.get("duplicate", False)),
        )


# =============================================================================
# LEDGER CLIENT INTERFACE
# =============================================================================

class LedgerClientError(Exception):
    """Base class for errors raised by ledger clients."""


class LedgerReverted(LedgerClientError):
    """The ledger explicitly refused the call."""


class LedgerConnectionError(LedgerClientError):
    """The ledger endpoint could not be reached."""


class TransactionNotFound(LedgerClientError):
    """The ledger has no record of the transaction (dropped or never seen)."""


class LedgerClient(Protocol):
    """
    Protocol for ledger connections.

    ``wait_for_confirmation`` returns None when no receipt was observed
    within ``timeout`` seconds.
    """

    def estimate_gas(self, call: LedgerCall) -> int:
        ...

    def submit(self, call: LedgerCall, gas_limit: int) -> str:
        ...

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Optional[LedgerReceipt]:
        ...

    def get_transfer_record(self, asset_id: str) -> Optional[Dict[str, Any]]:
        ...


# =============================================================================
# SIMULATED LEDGER
# =============================================================================

class SimulatedLedger:
    """
    In-process ledger for tests and local operation.

    Behaves like an at-least-once contract endpoint: resubmitting the same
    call creates a second transaction. Failure injection knobs:

        fail_next_submissions   next N submits raise LedgerConnectionError
        reject_reason           every submit reverts with this reason
        hold_confirmations      submitted txs stay pending until release()
        release(drop=True)      forgets pending txs instead of confirming them

    With ``path`` set the ledger state is persisted as JSON after each change,
    which is what the CLI uses between invocations.
    """

    BASE_GAS = 50000
    GAS_PER_BYTE = 16

    def __init__(self, chain: str = "simulated", path: Optional[Path] = None):
        self.chain = chain
        self.path = Path(path) if path else None
        self.fail_next_submissions = 0
        self.reject_reason: Optional[str] = None
        self.hold_confirmations = False
        self.submit_count = 0
        self._block_number = 1_000_000
        self._nonce = 0
        self._transactions: Dict[str, Dict[str, Any]] = {}
        self._transfer_records: Dict[str, List[Dict[str, Any]]] = {}
        self._registrations: Dict[str, Dict[str, Any]] = {}
        self._cond = threading.Condition()
        if self.path and self.path.exists():
            self._load()

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        assert self.path is not None
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        self._block_number = int(raw.get("block_number", self._block_number))
        self._nonce = int(raw.get("nonce", 0))
        self._transactions = raw.get("transactions", {})
        self._transfer_records = raw.get("transfer_records", {})
        self._registrations = raw.get("registrations", {})

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = {
            "chain": self.chain,
            "block_number": self._block_number,
            "nonce": self._nonce,
            "transactions": self._transactions,
            "transfer_records": self._transfer_records,
            "registrations": self._registrations,
        }
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tmp-ledger-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(body, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    # -- client protocol -----------------------------------------------------

    def estimate_gas(self, call: LedgerCall) -> int:
        return self.BASE_GAS + self.GAS_PER_BYTE * len(call.calldata)

    def submit(self, call: LedgerCall, gas_limit: int) -> str:
        with self._cond:
            if self.fail_next_submissions > 0:
                self.fail_next_submissions -= 1
                raise LedgerConnectionError("ledger endpoint unreachable")
            if self.reject_reason:
                raise LedgerReverted(self.reject_reason)
            gas_needed = self.estimate_gas(call)
            if gas_limit < gas_needed:
                raise LedgerReverted(f"out of gas: limit {gas_limit} < required {gas_needed}")

            self._nonce += 1
            self.submit_count += 1
            tx_hash = "0x" + hashlib.sha256(call.calldata + str(self._nonce).encode()).hexdigest()
            self._transactions[tx_hash] = {
                "call": call.to_dict(),
                "gas_limit": gas_limit,
                "gas_used": gas_needed,
                "status": "pending",
                "block_number": None,
                "submitted_at": datetime.now(timezone.utc).isoformat(),
            }
            if not self.hold_confirmations:
                self._confirm(tx_hash)
            self._save()
            return tx_hash

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Optional[LedgerReceipt]:
        with self._cond:
            if tx_hash not in self._transactions:
                raise TransactionNotFound(tx_hash)
            self._cond.wait_for(
                lambda: self._transactions.get(tx_hash, {}).get("status") != "pending",
                timeout=timeout,
            )
            tx = self._transactions.get(tx_hash)
            if tx is None:
                raise TransactionNotFound(tx_hash)
            if tx["status"] == "pending":
                return None
            return LedgerReceipt(
                tx_hash=tx_hash,
                block_number=int(tx["block_number"]),
                gas_used=int(tx["gas_used"]),
                status=tx["status"],
                chain=self.chain,
            )

    def get_transfer_record(self, asset_id: str) -> Optional[Dict[str, Any]]:
        with self._cond:
            records = self._transfer_records.get(asset_id) or []
            return dict(records[-1]) if records else None

    # -- simulation controls -------------------------------------------------

    def _confirm(self, tx_hash: str) -> None:
        tx = self._transactions[tx_hash]
        self._block_number += 1
        tx["status"] = "success"
        tx["block_number"] = self._block_number
        call = LedgerCall.from_dict(tx["call"])
        if call.operation == LedgerOperation.TRANSFER:
            self._transfer_records.setdefault(call.asset_id, []).append({
                "asset_id": call.asset_id,
                "transfer_ref": call.args.get("transfer_ref"),
                "from": call.args.get("from"),
                "to": call.args.get("to"),
                "amount": call.args.get("amount"),
                "tx_hash": tx_hash,
                "block_number": self._block_number,
                "gas_used": tx["gas_used"],
            })
        elif call.operation == LedgerOperation.REGISTER:
            self._registrations[call.asset_id] = {"tx_hash": tx_hash, **call.args}
        self._cond.notify_all()

    def release(self, drop: bool = False) -> List[str]:
        """Confirm (or drop) every pending transaction; returns their hashes."""
        with self._cond:
            pending = [h for h, tx in self._transactions.items() if tx["status"] == "pending"]
            for tx_hash in pending:
                if drop:
                    del self._transactions[tx_hash]
                else:
                    self._confirm(tx_hash)
            self.hold_confirmations = False
            self._save()
            self._cond.notify_all()
            return pending

    def transfer_records(self, asset_id: str) -> List[Dict[str, Any]]:
        with self._cond:
            return [dict(r) for r in self._transfer_records.get(asset_id, [])]

    def transactions(self, operation: Optional[LedgerOperation] = None) -> List[Dict[str, Any]]:
        with self._cond:
            out = []
            for tx_hash, tx in self._transactions.items():
                if operation is None or tx["call"]["operation"] == operation.value:
                    out.append({"tx_hash": tx_hash, **tx})
            return out


# =============================================================================
# LEDGER ANCHOR
# =============================================================================

class LedgerAnchor:
    """
    Domain-level facade over a ledger client.

    ``confirmation_timeout`` is passed to the client's own wait and also
    enforced as a hard bound (plus ``timeout_grace``) around it.
    """

    def __init__(
        self,
        client: LedgerClient,
        contract_address: str,
        chain: str = "simulated",
        gas_safety_margin: Decimal = Decimal("1.2"),
        confirmation_timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        timeout_grace: float = 1.0,
    ):
        if gas_safety_margin < 1:
            raise ValueError("gas_safety_margin must be >= 1")
        self.client = client
        self.contract_address = contract_address
        self.chain = chain
        self.gas_safety_margin = Decimal(str(gas_safety_margin))
        self.confirmation_timeout = confirmation_timeout
        self.timeout_grace = timeout_grace
        self.breaker = breaker or CircuitBreaker(
            "ledger-submit",
            failure_threshold=5,
            timeout_seconds=30.0,
            excluded_exceptions=(LedgerReverted,),
        )

    def gas_limit_for(self, estimate: int) -> int:
        return int(math.ceil(Decimal(estimate) * self.gas_safety_margin))

    # -------------------------------------------------------------------------
    # Domain operations
    # -------------------------------------------------------------------------

    def record_transfer(
        self,
        asset_id: str,
        from_holder: str,
        to_holder: str,
        amount: Decimal,
        transfer_id: str,
        pending_tx_hash: Optional[str] = None,
    ) -> LedgerReceipt:
        """
        Record a holder change on the ledger and wait for its receipt.

        ``transfer_id`` is the idempotency context: a confirmed ledger record
        carrying it short-circuits resubmission, and ``pending_tx_hash`` (from
        an earlier Unconfirmed outcome) is waited on before anything new is
        submitted.
        """
        existing = self._existing_transfer(asset_id, transfer_id)
        if existing is not None:
            logger.info(
                "Transfer already recorded on ledger; not resubmitting",
                operation="record_transfer",
                asset_id=asset_id,
                transfer_id=transfer_id,
                tx_hash=existing.tx_hash,
            )
            return existing

        if pending_tx_hash:
            receipt = self._await_pending(pending_tx_hash, "record_transfer", transfer_id=transfer_id)
            if receipt is not None:
                return receipt

        call = LedgerCall(
            operation=LedgerOperation.TRANSFER,
            contract_address=self.contract_address,
            asset_id=asset_id,
            args={
                "from": holder_address(from_holder),
                "to": holder_address(to_holder),
                "amount": str(amount),
                "transfer_ref": transfer_id,
            },
        )
        return self._execute(call)

    def register_asset(
        self,
        asset_id: str,
        holder_id: str,
        certificate_hash: str,
        pending_tx_hash: Optional[str] = None,
    ) -> LedgerReceipt:
        """Register an asset; ``pending_tx_hash`` is waited on before resubmitting."""
        if pending_tx_hash:
            receipt = self._await_pending(pending_tx_hash, "register_asset", asset_id=asset_id)
            if receipt is not None:
                return receipt
        call = LedgerCall(
            operation=LedgerOperation.REGISTER,
            contract_address=self.contract_address,
            asset_id=asset_id,
            args={"owner": holder_address(holder_id), "certificate_hash": certificate_hash},
        )
        return self._execute(call)

    def update_status(self, asset_id: str, status: str) -> LedgerReceipt:
        call = LedgerCall(
            operation=LedgerOperation.STATUS_UPDATE,
            contract_address=self.contract_address,
            asset_id=asset_id,
            args={"status": status},
        )
        return self._execute(call)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _existing_transfer(self, asset_id: str, transfer_id: str) -> Optional[LedgerReceipt]:
        try:
            record = self.client.get_transfer_record(asset_id)
        except LedgerConnectionError as e:
            raise Unavailable(f"ledger unreachable while checking for duplicates: {e}") from e
        if not record or record.get("transfer_ref") != transfer_id:
            return None
        return LedgerReceipt(
            tx_hash=str(record["tx_hash"]),
            block_number=int(record.get("block_number", 0)),
            gas_used=int(record.get("gas_used", 0)),
            chain=self.chain,
            duplicate=True,
        )

    def _await_pending(self, tx_hash: str, operation: str, **context: Any) -> Optional[LedgerReceipt]:
        """Receipt of an earlier unconfirmed submission, or None if the ledger dropped it."""
        try:
            receipt = self._await(tx_hash)
        except TransactionNotFound:
            logger.warning(
                "Pending ledger transaction dropped; resubmitting",
                operation=operation,
                tx_hash=tx_hash,
                **context,
            )
            return None
        if receipt is None:
            raise Unconfirmed(f"ledger transaction {tx_hash} still unconfirmed", tx_hash=tx_hash)
        return self._checked(receipt)

    def _execute(self, call: LedgerCall) -> LedgerReceipt:
        tx_hash = self._submit(call)
        try:
            receipt = self._await(tx_hash)
        except TransactionNotFound as e:
            raise Unconfirmed(f"ledger lost transaction {tx_hash}", tx_hash=None) from e
        if receipt is None:
            raise Unconfirmed(f"ledger transaction {tx_hash} unconfirmed", tx_hash=tx_hash)
        return self._checked(receipt)

    def _submit(self, call: LedgerCall) -> str:
        try:
            with self.breaker:
                estimate = self.client.estimate_gas(call)
                gas_limit = self.gas_limit_for(estimate)
                tx_hash = self.client.submit(call, gas_limit)
        except CircuitBreakerError as e:
            raise Unavailable(f"ledger circuit open: {e}") from e
        except LedgerReverted as e:
            logger.warning(
                "Ledger rejected call",
                operation=call.operation.value,
                asset_id=call.asset_id,
                reason=str(e),
            )
            raise Rejected(f"ledger rejected {call.operation.value}: {e}") from e
        except LedgerConnectionError as e:
            raise Unavailable(f"ledger unreachable: {e}") from e

        logger.info(
            "Ledger call submitted",
            operation=call.operation.value,
            asset_id=call.asset_id,
            tx_hash=tx_hash,
            gas_estimate=estimate,
            gas_limit=gas_limit,
        )
        return tx_hash

    def _await(self, tx_hash: str) -> Optional[LedgerReceipt]:
        bound = Timeout(self.confirmation_timeout + self.timeout_grace, name="ledger-confirmation")
        try:
            return bound.execute(
                lambda: self.client.wait_for_confirmation(tx_hash, self.confirmation_timeout)
            )
        except OperationTimeout:
            return None
        except LedgerConnectionError:
            return None

    def _checked(self, receipt: LedgerReceipt) -> LedgerReceipt:
        if not receipt.succeeded:
            raise Rejected(f"ledger transaction {receipt.tx_hash} reverted", tx_hash=receipt.tx_hash)
        if not receipt.chain:
            receipt.chain = self.chain
        return receipt
