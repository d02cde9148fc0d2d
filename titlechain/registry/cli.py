#!/usr/bin/env python3
"""
Titlechain CLI

Command-line front-end over a file-backed registry.

Usage:
    titlechain [--data-dir DIR] [--config FILE] [--format json|yaml|table] <command> ...

Commands:
    party        Register and verify parties
    asset        Digitize, verify, certify, list and dispute assets
    transfer     Open, document, review and inspect transfers
    certificate  Verify stored certificates or render them to PDF
    reconcile    Re-drive parked transfer sagas once
    config       Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from titlechain import __version__
from titlechain.registry.errors import RegistryError


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False)
    return _format_table(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _asset_row(asset: Any) -> Dict[str, Any]:
    return {
        "asset_id": asset.asset_id,
        "holder_id": asset.holder_id,
        "status": asset.status.value,
        "verification": asset.verification_status.value,
        "digitized": asset.digitized,
        "asking_price": str(asset.asking_price) if asset.asking_price is not None else "",
    }


def _transfer_row(request: Any) -> Dict[str, Any]:
    return {
        "transfer_id": request.transfer_id,
        "asset_id": request.asset_id,
        "seller_id": request.seller_id,
        "buyer_id": request.buyer_id,
        "amount": str(request.amount),
        "status": request.status.value,
        "step": request.saga_step,
    }


def _load_mapping(value: str) -> Dict[str, Any]:
    """Inline JSON/YAML or ``@path`` to a file holding it."""
    text = Path(value[1:]).read_text(encoding="utf-8") if value.startswith("@") else value
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise CLIError("expected a mapping")
    return data


class TitlechainCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="titlechain",
            description="Land title registry and transfer coordinator",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"titlechain {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--data-dir", "-d", help="Registry data directory")
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self._runtime: Any = None

    def _register_commands(self) -> None:
        self._register_party_commands()
        self._register_asset_commands()
        self._register_transfer_commands()
        self._register_certificate_commands()
        self._register_config_commands()
        reconcile = self.subparsers.add_parser("reconcile", help="Re-drive parked transfer sagas once")
        reconcile.add_argument("--batch", type=int, help="Maximum sagas to re-drive")

    def _register_party_commands(self) -> None:
        party = self.subparsers.add_parser("party", help="Party management")
        party_sub = party.add_subparsers(dest="subcommand")

        add = party_sub.add_parser("add", help="Register a party")
        add.add_argument("party_id", help="Party ID")
        add.add_argument("--name", "-n", required=True, help="Display name")
        add.add_argument("--admin", action="store_true", help="Grant reviewing authority")
        add.add_argument("--verified", action="store_true", help="Mark identity verified")

        verify = party_sub.add_parser("verify", help="Mark a party verified")
        verify.add_argument("party_id", help="Party ID")

        party_sub.add_parser("list", help="List parties")

    def _register_asset_commands(self) -> None:
        asset = self.subparsers.add_parser("asset", help="Asset registration")
        asset_sub = asset.add_subparsers(dest="subcommand")

        digitize = asset_sub.add_parser("digitize", help="Create an asset record")
        digitize.add_argument("--holder", required=True, help="Holder party ID")
        digitize.add_argument("--descriptors", required=True, help="JSON/YAML mapping or @file")
        digitize.add_argument("--added-by", help="Submitting party ID")

        verify = asset_sub.add_parser("verify", help="Verify or reject an asset")
        verify.add_argument("asset_id", help="Asset ID")
        verify.add_argument("--reviewer", "-r", required=True, help="Reviewer party ID")
        verify.add_argument("--reject", action="store_true", help="Reject instead of verify")
        verify.add_argument("--notes", default="", help="Verification notes")

        certify = asset_sub.add_parser("certify", help="Issue the base certificate and register on the ledger")
        certify.add_argument("asset_id", help="Asset ID")
        certify.add_argument("--actor", default="system", help="Acting party ID")

        sell = asset_sub.add_parser("sell", help="List an asset for sale")
        sell.add_argument("asset_id", help="Asset ID")
        sell.add_argument("--owner", required=True, help="Owner party ID")
        sell.add_argument("--price", required=True, help="Asking price")

        withdraw = asset_sub.add_parser("withdraw", help="Withdraw a sale listing")
        withdraw.add_argument("asset_id", help="Asset ID")
        withdraw.add_argument("--owner", required=True, help="Owner party ID")

        dispute = asset_sub.add_parser("dispute", help="Mark an asset disputed")
        dispute.add_argument("asset_id", help="Asset ID")
        dispute.add_argument("--reviewer", "-r", required=True, help="Reviewer party ID")
        dispute.add_argument("--reason", default="", help="Dispute reason")

        resolve = asset_sub.add_parser("resolve", help="Resolve a dispute")
        resolve.add_argument("asset_id", help="Asset ID")
        resolve.add_argument("--reviewer", "-r", required=True, help="Reviewer party ID")
        resolve.add_argument("--resolution", default="", help="Resolution note")

        list_cmd = asset_sub.add_parser("list", help="List assets")
        list_cmd.add_argument("--holder", help="Filter by holder")
        list_cmd.add_argument("--for-sale", action="store_true", help="Only assets listed for sale")

        show = asset_sub.add_parser("show", help="Show an asset record")
        show.add_argument("asset_id", help="Asset ID")

    def _register_transfer_commands(self) -> None:
        transfer = self.subparsers.add_parser("transfer", help="Transfer requests")
        transfer_sub = transfer.add_subparsers(dest="subcommand")

        open_cmd = transfer_sub.add_parser("open", help="Open a transfer request")
        open_cmd.add_argument("--asset", "-a", required=True, help="Asset ID")
        open_cmd.add_argument("--seller", "-s", required=True, help="Seller party ID")
        open_cmd.add_argument("--buyer", "-b", required=True, help="Buyer party ID")
        open_cmd.add_argument("--amount", required=True, help="Agreed amount")
        open_cmd.add_argument("--type", default="SALE", help="SALE, TRANSFER, INHERITANCE or GIFT")
        open_cmd.add_argument("--chat", help="Negotiation chat ID")

        documents = transfer_sub.add_parser("documents", help="Attach supporting documents")
        documents.add_argument("transfer_id", help="Transfer ID")
        documents.add_argument("--actor", required=True, help="Uploading party ID")
        documents.add_argument(
            "--file", dest="files", action="append", required=True,
            help="PATH or PATH:TYPE (repeatable)",
        )

        begin = transfer_sub.add_parser("begin-review", help="Start review")
        begin.add_argument("transfer_id", help="Transfer ID")
        begin.add_argument("--reviewer", "-r", required=True, help="Reviewer party ID")

        review = transfer_sub.add_parser("review", help="Approve or reject")
        review.add_argument("transfer_id", help="Transfer ID")
        review.add_argument("--decision", required=True, choices=["APPROVE", "REJECT"])
        review.add_argument("--reviewer", "-r", required=True, help="Reviewer party ID")
        review.add_argument("--comments", default="", help="Review comments")
        review.add_argument("--reason", help="Rejection reason")

        resume = transfer_sub.add_parser("resume", help="Re-drive an approved transfer")
        resume.add_argument("transfer_id", help="Transfer ID")

        retry = transfer_sub.add_parser("retry", help="Retry a halted transfer")
        retry.add_argument("transfer_id", help="Transfer ID")
        retry.add_argument("--operator", required=True, help="Operator party ID")

        show = transfer_sub.add_parser("show", help="Show a transfer request")
        show.add_argument("transfer_id", help="Transfer ID")

        transfer_sub.add_parser("pending", help="List transfers awaiting review")

        verify = transfer_sub.add_parser("verify", help="Public ownership check")
        verify.add_argument("transfer_id", help="Transfer ID")

        stats = transfer_sub.add_parser("stats", help="Transfer statistics")
        stats.add_argument("--year", type=int, help="Calendar year for monthly counts")

    def _register_certificate_commands(self) -> None:
        certificate = self.subparsers.add_parser("certificate", help="Stored certificates")
        certificate_sub = certificate.add_subparsers(dest="subcommand")

        verify = certificate_sub.add_parser("verify", help="Check a certificate's hash and proof")
        verify.add_argument("content_hash", help="Certificate content hash")

        render = certificate_sub.add_parser("render", help="Render a certificate to PDF")
        render.add_argument("content_hash", help="Certificate content hash")
        render.add_argument("--out", "-o", required=True, help="Output PDF path")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., anchor.gas_safety_margin)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            self._configure(parsed)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except RegistryError as e:
            if not parsed.quiet:
                print(json.dumps(e.to_dict()), file=sys.stderr)
            return 2

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _configure(self, args: argparse.Namespace) -> None:
        from titlechain.registry.config import get_config_manager
        from titlechain.registry.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.data_dir:
            mgr.set("storage.data_dir", args.data_dir)
        configure_logging(
            mgr.get("observability.log_level"),
            mgr.get("observability.log_format"),
        )

    @property
    def runtime(self) -> Any:
        if self._runtime is None:
            from titlechain.registry.config import get_config
            from titlechain.registry.runtime import RegistryRuntime
            self._runtime = RegistryRuntime.open(get_config())
        return self._runtime

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd.replace('-', '_')}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # Party handlers
    def _handle_party_add(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.identity import Party, Role
        party = Party(
            party_id=args.party_id,
            name=args.name,
            role=Role.ADMIN if args.admin else Role.USER,
            verified=args.verified,
        )
        return self.runtime.identity.register(party).to_dict()

    def _handle_party_verify(self, args: argparse.Namespace) -> Any:
        self.runtime.identity.set_verified(args.party_id, True)
        return self.runtime.identity.get(args.party_id).to_dict()

    def _handle_party_list(self, args: argparse.Namespace) -> Any:
        return [p.to_dict() for p in self.runtime.identity.parties()]

    # Asset handlers
    def _handle_asset_digitize(self, args: argparse.Namespace) -> Any:
        asset = self.runtime.registrar.digitize(args.holder, _load_mapping(args.descriptors), args.added_by)
        return asset.to_dict()

    def _handle_asset_verify(self, args: argparse.Namespace) -> Any:
        asset = self.runtime.registrar.verify(args.asset_id, args.reviewer, not args.reject, args.notes)
        return asset.to_dict()

    def _handle_asset_certify(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.issue_base_certificate(args.asset_id, args.actor).to_dict()

    def _handle_asset_sell(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.list_for_sale(args.asset_id, args.owner, args.price).to_dict()

    def _handle_asset_withdraw(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.withdraw_listing(args.asset_id, args.owner).to_dict()

    def _handle_asset_dispute(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.mark_disputed(args.asset_id, args.reviewer, args.reason).to_dict()

    def _handle_asset_resolve(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.resolve_dispute(args.asset_id, args.reviewer, args.resolution).to_dict()

    def _handle_asset_list(self, args: argparse.Namespace) -> Any:
        registrar = self.runtime.registrar
        assets = registrar.marketplace() if args.for_sale else registrar.assets.all()
        if args.holder:
            assets = [a for a in assets if a.holder_id == args.holder]
        return [_asset_row(a) for a in assets]

    def _handle_asset_show(self, args: argparse.Namespace) -> Any:
        return self.runtime.registrar.get(args.asset_id).to_dict()

    # Transfer handlers
    def _handle_transfer_open(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.actions import handle_open_transfer
        result = handle_open_transfer(self.runtime.coordinator, {
            "assetId": args.asset,
            "sellerId": args.seller,
            "buyerId": args.buyer,
            "amount": args.amount,
            "transferType": args.type.upper(),
            "chatId": args.chat,
        })
        return self._action_result(result)

    def _handle_transfer_documents(self, args: argparse.Namespace) -> Any:
        documents = []
        for entry in args.files:
            path_str, _, doc_type = entry.partition(":")
            path = Path(path_str)
            if not path.is_file():
                raise CLIError(f"document not found: {path}")
            documents.append({
                "document_type": doc_type or "OTHER",
                "name": path.name,
                "content": path.read_bytes(),
            })
        return self.runtime.coordinator.submit_documents(args.transfer_id, args.actor, documents).to_dict()

    def _handle_transfer_begin_review(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.begin_review(args.transfer_id, args.reviewer).to_dict()

    def _handle_transfer_review(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.actions import handle_review_action
        payload: Dict[str, Any] = {
            "transferRequestId": args.transfer_id,
            "decision": args.decision,
            "reviewerId": args.reviewer,
            "comments": args.comments,
        }
        if args.reason:
            payload["rejectionReason"] = args.reason
        return self._action_result(handle_review_action(self.runtime.coordinator, payload))

    def _handle_transfer_resume(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.resume(args.transfer_id).to_dict()

    def _handle_transfer_retry(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.retry_transfer(args.transfer_id, args.operator).to_dict()

    def _handle_transfer_show(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.get_transfer(args.transfer_id).to_dict()

    def _handle_transfer_pending(self, args: argparse.Namespace) -> Any:
        return [_transfer_row(t) for t in self.runtime.coordinator.pending_review()]

    def _handle_transfer_verify(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.verify_ownership(args.transfer_id)

    def _handle_transfer_stats(self, args: argparse.Namespace) -> Any:
        return self.runtime.coordinator.statistics(args.year)

    @staticmethod
    def _action_result(result: Dict[str, Any]) -> Any:
        if "kind" in result and "status" not in result:
            raise CLIError(f"{result['kind']}: {result['message']}", exit_code=2)
        return result

    # Certificate handlers
    def _handle_certificate_verify(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.certificate import load_certificate
        content = self.runtime.content
        document = load_certificate(content, {
            "content_hash": args.content_hash,
            "url": content.resolve(args.content_hash),
        })
        return {"valid": True, "type": document.get("type"), "issuer": document.get("issuer")}

    def _handle_certificate_render(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.certificate import load_certificate
        from titlechain.registry.render import render_certificate_pdf
        content = self.runtime.content
        document = load_certificate(content, {
            "content_hash": args.content_hash,
            "url": content.resolve(args.content_hash),
        })
        data = render_certificate_pdf(document, args.out)
        return {"path": args.out, "bytes": len(data)}

    # Reconciliation
    def _handle_reconcile(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.reconciler import reconcile_once
        cfg = self.runtime.config.reconciliation
        report = reconcile_once(
            self.runtime.coordinator,
            batch_size=args.batch or cfg.batch_size.get(),
            claim_grace_seconds=cfg.claim_grace_seconds.get(),
        )
        return report.to_dict()

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.config import get_config_manager
        value = get_config_manager().get(args.path)
        return {"path": args.path, "value": str(value) if not isinstance(value, (str, int, float, bool)) else value}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from titlechain.registry.config import get_config_manager
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    return TitlechainCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
