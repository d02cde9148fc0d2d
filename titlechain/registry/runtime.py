"""
Registry Runtime

Wires the stores, collaborators and services of one registry instance from a
``RegistryConfig``:

    ┌────────────────────────────────────────────────────────────┐
    │  AssetRegistrar        TransferCoordinator     Reconciler  │
    ├────────────────────────────────────────────────────────────┤
    │  CertificateMinter     LedgerAnchor            AuditLogger │
    ├────────────────────────────────────────────────────────────┤
    │  DocumentStore         ContentStore            LedgerClient│
    └────────────────────────────────────────────────────────────┘

``RegistryRuntime.open`` uses file-backed stores and a file-persisted
simulated ledger under the data directory; ``RegistryRuntime.in_memory``
keeps everything in process.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from titlechain.artifacts import ContentStore, FileContentStore, InMemoryContentStore
from titlechain.proofs import (
    generate_ed25519_jwk,
    load_ed25519_private_key_from_jwk,
    load_or_create_signing_key,
)
from titlechain.registry.anchor import LedgerAnchor, LedgerClient, LedgerReverted, SimulatedLedger
from titlechain.registry.asset import utc_now
from titlechain.registry.certificate import CertificateMinter
from titlechain.registry.config import RegistryConfig, get_config
from titlechain.registry.coordinator import ChargeSchedule, TransferCoordinator
from titlechain.registry.errors import StoreUnavailable
from titlechain.registry.identity import IdentityService, StaticIdentityService, StoredIdentityService
from titlechain.registry.observability import AuditLogger
from titlechain.registry.reconciler import Reconciler
from titlechain.registry.registration import AssetRegistrar
from titlechain.registry.repositories import AssetRepository, TransferRepository
from titlechain.registry.resilience import CircuitBreaker, RetryPolicy
from titlechain.registry.store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore


@dataclass
class RegistryRuntime:
    config: RegistryConfig
    documents: DocumentStore
    content: ContentStore
    ledger: LedgerClient
    identity: IdentityService
    assets: AssetRepository
    transfers: TransferRepository
    minter: CertificateMinter
    anchor: LedgerAnchor
    audit: AuditLogger
    coordinator: TransferCoordinator
    registrar: AssetRegistrar

    @classmethod
    def build(
        cls,
        config: RegistryConfig,
        documents: DocumentStore,
        content: ContentStore,
        ledger: LedgerClient,
        identity: IdentityService,
        signing_key_path: Optional[Path] = None,
        clock: Callable[[], str] = utc_now,
    ) -> "RegistryRuntime":
        if signing_key_path is None:
            signing_key, verification_method = load_ed25519_private_key_from_jwk(generate_ed25519_jwk())
        else:
            signing_key, verification_method = load_or_create_signing_key(signing_key_path)

        minter = CertificateMinter(
            content,
            signing_key,
            verification_method,
            verify_base_url=config.certificate.verify_base_url.get(),
            qr_error_correction=config.certificate.qr_error_correction.get(),
            retry=RetryPolicy(
                max_attempts=config.certificate.store_retry_attempts.get(),
                retryable_exceptions=(StoreUnavailable,),
            ),
        )
        anchor = LedgerAnchor(
            ledger,
            contract_address=config.anchor.contract_address.get(),
            chain=config.anchor.chain.get(),
            gas_safety_margin=config.anchor.gas_safety_margin.get(),
            confirmation_timeout=config.anchor.confirmation_timeout_seconds.get(),
            breaker=CircuitBreaker(
                "ledger-submit",
                failure_threshold=config.anchor.breaker_failure_threshold.get(),
                timeout_seconds=config.anchor.breaker_reset_seconds.get(),
                excluded_exceptions=(LedgerReverted,),
            ),
        )
        assets = AssetRepository(documents)
        transfers = TransferRepository(documents)
        audit = AuditLogger()
        coordinator = TransferCoordinator(
            assets,
            transfers,
            identity,
            minter,
            anchor,
            audit=audit,
            charges=ChargeSchedule.from_config(config),
            clock=clock,
        )
        registrar = AssetRegistrar(assets, identity, minter, anchor, audit=audit, clock=clock)
        return cls(
            config=config,
            documents=documents,
            content=content,
            ledger=ledger,
            identity=identity,
            assets=assets,
            transfers=transfers,
            minter=minter,
            anchor=anchor,
            audit=audit,
            coordinator=coordinator,
            registrar=registrar,
        )

    @classmethod
    def open(
        cls,
        config: Optional[RegistryConfig] = None,
        data_dir: Optional[Union[str, Path]] = None,
    ) -> "RegistryRuntime":
        """File-backed runtime rooted at ``data_dir`` (default: ``storage.data_dir``)."""
        config = config or get_config()
        root = Path(data_dir or config.storage.data_dir.get())
        documents = JsonFileDocumentStore(root / "documents")
        key_path = Path(config.certificate.signing_key_path.get())
        return cls.build(
            config,
            documents=documents,
            content=FileContentStore(root / "artifacts", gateway=config.certificate.gateway_url.get()),
            ledger=SimulatedLedger(chain=config.anchor.chain.get(), path=root / "ledger.json"),
            identity=StoredIdentityService(documents),
            signing_key_path=key_path if key_path.is_absolute() else root / key_path,
        )

    @classmethod
    def in_memory(
        cls,
        config: Optional[RegistryConfig] = None,
        identity: Optional[IdentityService] = None,
        ledger: Optional[LedgerClient] = None,
        clock: Callable[[], str] = utc_now,
    ) -> "RegistryRuntime":
        config = config or RegistryConfig()
        return cls.build(
            config,
            documents=InMemoryDocumentStore(),
            content=InMemoryContentStore(gateway=config.certificate.gateway_url.get()),
            ledger=ledger or SimulatedLedger(chain=config.anchor.chain.get()),
            identity=identity or StaticIdentityService(),
            clock=clock,
        )

    def reconciler(self) -> Reconciler:
        return Reconciler.from_config(self.coordinator, self.config)
