"""
Inbound Actions

Network-facing entry points for review and admission requests. Payloads are
validated against the JSON Schemas shipped in ``titlechain/schemas`` and
every outcome is rendered as a plain dict:

    success   {"status", "transferRequest", "deferred"}
    failure   {"kind", "message"}

Only registry errors become failure payloads; anything else propagates.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from titlechain.registry.coordinator import ReviewOutcome, TransferCoordinator
from titlechain.registry.errors import InvalidRequest, RegistryError
from titlechain.registry.observability import (
    RegistryLayer,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)


logger = get_logger("actions", RegistryLayer.ACTIONS)

SCHEMAS_DIR = pathlib.Path(__file__).resolve().parents[1] / "schemas"
REVIEW_ACTION_SCHEMA = "review-action.schema.json"
OPEN_TRANSFER_SCHEMA = "open-transfer.schema.json"

_SCHEMA_REGISTRY: Optional[Registry] = None
_VALIDATORS: Dict[str, Draft202012Validator] = {}


def _load_json(path: pathlib.Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _schema_registry() -> Registry:
    """In-memory registry of the shipped schemas keyed by ``$id``."""
    global _SCHEMA_REGISTRY
    if _SCHEMA_REGISTRY is not None:
        return _SCHEMA_REGISTRY

    reg = Registry()
    for sp in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        sj = _load_json(sp)
        sid = sj.get("$id")
        if isinstance(sid, str) and sid:
            reg = reg.with_resource(sid, Resource.from_contents(sj, default_specification=DRAFT202012))
    _SCHEMA_REGISTRY = reg
    return reg


def schema_validator(name: str) -> Draft202012Validator:
    validator = _VALIDATORS.get(name)
    if validator is None:
        validator = Draft202012Validator(_load_json(SCHEMAS_DIR / name), registry=_schema_registry())
        _VALIDATORS[name] = validator
    return validator


def validate_with_schema(obj: Any, validator: Draft202012Validator) -> List[str]:
    errors = []
    for e in sorted(validator.iter_errors(obj), key=str):
        errors.append(f"{list(e.absolute_path)}: {e.message}")
    return errors


def _require_valid(payload: Any, schema_name: str) -> None:
    errors = validate_with_schema(payload, schema_validator(schema_name))
    if errors:
        raise InvalidRequest("invalid payload: " + "; ".join(errors))


def failure(error: RegistryError) -> Dict[str, Any]:
    return error.to_dict()


def handle_review_action(coordinator: TransferCoordinator, payload: Any) -> Dict[str, Any]:
    """Apply ``{transferRequestId, decision, reviewerId, comments, rejectionReason?}``."""
    set_correlation_id(generate_correlation_id())
    try:
        _require_valid(payload, REVIEW_ACTION_SCHEMA)
        outcome: ReviewOutcome = coordinator.review_transfer(
            transfer_id=payload["transferRequestId"],
            decision=payload["decision"],
            reviewer_id=payload["reviewerId"],
            comments=payload.get("comments", ""),
            rejection_reason=payload.get("rejectionReason"),
        )
    except RegistryError as e:
        logger.warning(
            "Review action failed",
            operation="review_action",
            error_code=e.kind,
            reason=e.message,
        )
        return failure(e)
    return outcome.to_dict()


def handle_open_transfer(coordinator: TransferCoordinator, payload: Any) -> Dict[str, Any]:
    """Admit ``{assetId, sellerId, buyerId, amount, transferType?, chatId?}``."""
    set_correlation_id(generate_correlation_id())
    try:
        _require_valid(payload, OPEN_TRANSFER_SCHEMA)
        request = coordinator.open_transfer(
            asset_id=payload["assetId"],
            seller_id=payload["sellerId"],
            buyer_id=payload["buyerId"],
            amount=payload["amount"],
            transfer_type=payload.get("transferType", "SALE"),
            chat_id=payload.get("chatId"),
        )
    except RegistryError as e:
        logger.warning(
            "Open transfer action failed",
            operation="open_transfer_action",
            error_code=e.kind,
            reason=e.message,
        )
        return failure(e)
    return ReviewOutcome(request).to_dict()
