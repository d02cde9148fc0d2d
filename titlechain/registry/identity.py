"""
Identity collaborator.

The transfer core never authenticates anyone. It asks an identity service two
questions: may this party hold or transfer title, and may this party review
transfers. ``StaticIdentityService`` answers them from an in-process table and
is what the tests use; ``StoredIdentityService`` keeps the table in a
document store for the CLI.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from titlechain.registry.errors import Conflict, NotFound
from titlechain.registry.store import DocumentStore


class Role(Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class IdentityService(Protocol):
    def is_eligible(self, party_id: str) -> bool:
        """True when the party is verified and may hold or transfer title."""
        ...

    def can_review(self, party_id: str) -> bool:
        """True when the party holds reviewing authority."""
        ...

    def display_name(self, party_id: str) -> str:
        ...


@dataclass
class Party:
    party_id: str
    name: str
    role: Role = Role.USER
    verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "party_id": self.party_id,
            "name": self.name,
            "role": self.role.value,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Party":
        return cls(
            party_id=str(d["party_id"]),
            name=str(d.get("name", d["party_id"])),
            role=Role(d.get("role", Role.USER.value)),
            verified=bool(d.get("verified", False)),
        )


class StaticIdentityService:
    """Thread-safe party table."""

    def __init__(self, parties: Optional[List[Party]] = None):
        self._parties: Dict[str, Party] = {}
        self._lock = threading.Lock()
        for p in parties or []:
            self.register(p)

    def register(self, party: Party) -> Party:
        with self._lock:
            self._parties[party.party_id] = party
        return party

    def get(self, party_id: str) -> Party:
        with self._lock:
            party = self._parties.get(party_id)
        if party is None:
            raise NotFound(f"party {party_id} not found")
        return party

    def set_verified(self, party_id: str, verified: bool) -> None:
        self.get(party_id).verified = verified

    def is_eligible(self, party_id: str) -> bool:
        with self._lock:
            party = self._parties.get(party_id)
        return bool(party and party.verified)

    def can_review(self, party_id: str) -> bool:
        with self._lock:
            party = self._parties.get(party_id)
        return bool(party and party.role == Role.ADMIN)

    def display_name(self, party_id: str) -> str:
        with self._lock:
            party = self._parties.get(party_id)
        return party.name if party else party_id

    def parties(self) -> List[Party]:
        with self._lock:
            return sorted(self._parties.values(), key=lambda p: p.party_id)


class StoredIdentityService:
    """Party table kept in a document store, so the CLI survives restarts."""

    COLLECTION = "parties"

    def __init__(self, store: DocumentStore):
        self.store = store

    def register(self, party: Party) -> Party:
        created, doc = self.store.insert(self.COLLECTION, party.party_id, party.to_dict())
        if not created:
            swapped, _ = self.store.compare_and_swap(self.COLLECTION, party.party_id, doc.version, party.to_dict())
            if not swapped:
                raise Conflict(f"party {party.party_id} was modified concurrently")
        return party

    def find(self, party_id: str) -> Optional[Party]:
        doc = self.store.get(self.COLLECTION, party_id)
        return Party.from_dict(doc.data) if doc else None

    def get(self, party_id: str) -> Party:
        party = self.find(party_id)
        if party is None:
            raise NotFound(f"party {party_id} not found")
        return party

    def set_verified(self, party_id: str, verified: bool) -> None:
        party = self.get(party_id)
        party.verified = verified
        self.register(party)

    def is_eligible(self, party_id: str) -> bool:
        party = self.find(party_id)
        return bool(party and party.verified)

    def can_review(self, party_id: str) -> bool:
        party = self.find(party_id)
        return bool(party and party.role == Role.ADMIN)

    def display_name(self, party_id: str) -> str:
        party = self.find(party_id)
        return party.name if party else party_id

    def parties(self) -> List[Party]:
        return sorted((Party.from_dict(d.data) for d in self.store.scan(self.COLLECTION)), key=lambda p: p.party_id)
