"""
Saga Reconciler

Background re-drive of approved transfers that have not completed. A request
parked in APPROVED (a retryable failure, a crash between steps, a ledger
receipt that never arrived) is resumed from its persisted markers; the
coordinator's idempotent steps make a re-drive of a request another process
is also driving harmless, with the loser seeing ``Conflict``.

The same pass repairs asset pins left behind by a crash between the asset
claim and the transfer insert, or between a rejection and the asset release.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from titlechain.registry.coordinator import TransferCoordinator
from titlechain.registry.errors import Conflict, RegistryError, Rejected
from titlechain.registry.observability import (
    RegistryLayer,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from titlechain.registry.transfer import TransferStatus


logger = get_logger("reconciler", RegistryLayer.RECONCILER)


@dataclass
class ReconciliationReport:
    """Outcome counts of one reconciliation pass."""
    examined: int = 0
    completed: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    halted: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    released_claims: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "completed": list(self.completed),
            "deferred": list(self.deferred),
            "halted": list(self.halted),
            "conflicts": list(self.conflicts),
            "released_claims": list(self.released_claims),
            "errors": dict(self.errors),
        }


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def reconcile_once(
    coordinator: TransferCoordinator,
    batch_size: int = 50,
    claim_grace_seconds: float = 300.0,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    """Run one pass over parked sagas and orphaned asset claims."""
    report = ReconciliationReport()

    for request in coordinator.parked()[:batch_size]:
        report.examined += 1
        transfer_id = request.transfer_id
        try:
            outcome = coordinator.resume(transfer_id)
        except Conflict:
            report.conflicts.append(transfer_id)
            continue
        except Rejected:
            report.halted.append(transfer_id)
            continue
        except RegistryError as e:
            report.errors[transfer_id] = f"{e.kind}: {e.message}"
            continue
        if outcome.deferred is not None:
            report.deferred.append(transfer_id)
        elif outcome.completed:
            report.completed.append(transfer_id)

    report.released_claims.extend(
        release_orphaned_claims(coordinator, claim_grace_seconds, now=now)
    )

    logger.info(
        "Reconciliation pass finished",
        operation="reconcile",
        examined=report.examined,
        completed=len(report.completed),
        deferred=len(report.deferred),
        halted=len(report.halted),
        conflicts=len(report.conflicts),
        released_claims=len(report.released_claims),
    )
    return report


def release_orphaned_claims(
    coordinator: TransferCoordinator,
    grace_seconds: float = 300.0,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Unpin assets whose in-flight transfer is missing or rejected.

    A missing transfer is only treated as orphaned once the claim is older
    than ``grace_seconds``; admission writes the claim before the transfer.
    """
    now = now or datetime.now(timezone.utc)
    released: List[str] = []
    for asset in coordinator.assets.all():
        transfer_id = asset.active_transfer_id
        if not transfer_id:
            continue
        request = coordinator.transfers.find(transfer_id)
        if request is None:
            claimed = _parse_ts(asset.claimed_at)
            if claimed is not None and now - claimed < timedelta(seconds=grace_seconds):
                continue
        elif request.status != TransferStatus.REJECTED:
            continue
        try:
            if coordinator._release_asset(asset.asset_id, transfer_id):
                released.append(asset.asset_id)
                logger.warning(
                    "Released orphaned asset claim",
                    operation="release_claim",
                    asset_id=asset.asset_id,
                    transfer_id=transfer_id,
                )
        except Conflict:
            continue
    return released


class Reconciler:
    """
    Periodic reconciliation on a daemon thread.

    Example:
        reconciler = Reconciler(coordinator, interval_seconds=60)
        reconciler.start()
        ...
        reconciler.stop()
    """

    def __init__(
        self,
        coordinator: TransferCoordinator,
        interval_seconds: float = 60.0,
        batch_size: int = 50,
        claim_grace_seconds: float = 300.0,
    ):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.claim_grace_seconds = claim_grace_seconds
        self.passes = 0
        self.last_report: Optional[ReconciliationReport] = None
        self.last_error: Optional[str] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, coordinator: TransferCoordinator, config: Any) -> "Reconciler":
        return cls(
            coordinator,
            interval_seconds=config.reconciliation.interval_seconds.get(),
            batch_size=config.reconciliation.batch_size.get(),
            claim_grace_seconds=config.reconciliation.claim_grace_seconds.get(),
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> ReconciliationReport:
        set_correlation_id(generate_correlation_id())
        report = reconcile_once(
            self.coordinator,
            batch_size=self.batch_size,
            claim_grace_seconds=self.claim_grace_seconds,
        )
        self.passes += 1
        self.last_report = report
        return report

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="titlechain-reconciler",
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
                self.last_error = None
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error("Reconciliation pass failed", exc_info=True, operation="reconcile")
            self._stop_event.wait(self.interval_seconds)
