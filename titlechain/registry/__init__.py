"""
Titlechain Registry

Off-chain system of record for land titles and the coordinator that moves
them between holders.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  ENTRY POINTS                                                            │
    │    actions.py       Schema-validated review / admission payloads        │
    │    cli.py           ``titlechain`` command line                         │
    │    reconciler.py    Background re-drive of parked sagas                 │
    │                                                                          │
    │  SERVICES                                                                │
    │    coordinator.py   Admission, review, four-step approve saga           │
    │    registration.py  Digitize, verify, certify, list, dispute            │
    │                                                                          │
    │  COLLABORATORS                                                           │
    │    certificate.py   Signed, QR-bearing certificates in the CAS          │
    │    anchor.py        Ledger calls with gas margin and bounded waits      │
    │    identity.py      Eligibility and reviewing authority                 │
    │                                                                          │
    │  STATE                                                                   │
    │    asset.py         Asset record, ownership history, in-flight pin      │
    │    transfer.py      Transfer request and its transition table           │
    │    repositories.py  Compare-and-swap accessors                          │
    │    store.py         Versioned document stores                           │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""


def __getattr__(name):
    """Lazy import registry modules on first access."""

    if name in ("TransferCoordinator", "ReviewOutcome", "ChargeSchedule"):
        from titlechain.registry import coordinator
        return getattr(coordinator, name)

    if name in ("AssetRegistrar",):
        from titlechain.registry import registration
        return getattr(registration, name)

    if name in ("Reconciler", "ReconciliationReport", "reconcile_once"):
        from titlechain.registry import reconciler
        return getattr(reconciler, name)

    if name in ("RegistryRuntime",):
        from titlechain.registry import runtime
        return getattr(runtime, name)

    if name in ("AssetRecord", "AssetStatus", "VerificationStatus", "OwnershipEntry"):
        from titlechain.registry import asset
        return getattr(asset, name)

    if name in ("TransferRequest", "TransferStatus", "TransferType", "ReviewDecision"):
        from titlechain.registry import transfer
        return getattr(transfer, name)

    if name in ("RegistryError", "NotFound", "InvalidState", "Unauthorized", "Conflict",
                "InvalidRequest", "Unconfirmed", "Rejected", "Unavailable", "StoreUnavailable"):
        from titlechain.registry import errors
        return getattr(errors, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
