"""Payment link ledger command line interface.

Provides operational tools for:
- Schema setup
- Creating, funding and claiming links
- Inspecting links and creator listings
- Resolving indeterminate claims and reopening failed ones
- Metrics emission

Usage:
    paylink init-db
    paylink create --amount 0.01 --asset SOL --creator wallet-a
    paylink fund LINK_ID --transfer-ref tx1
    paylink claim LINK_ID --claimant wallet-b
    paylink resolve LINK_ID
    paylink metrics --format prometheus
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from paylink.config import Settings, get_settings
from paylink.database import create_schema, get_sync_engine, sync_session_factory
from paylink.errors import LedgerConsistencyError, LinkValidationError
from paylink.lifecycle import LinkLifecycle
from paylink.metrics import MetricsCollector
from paylink.providers import (
    TerminalFailure,
    TransientFailure,
    ValueTransferEngine,
    build_transfer_engine,
)
from paylink.services.claim_coordinator import ClaimResult, ClaimStatus
from paylink.services.link_store import Link


def link_to_dict(link: Link, share_url: str) -> dict[str, Any]:
    """JSON-friendly view of a link."""
    return {
        "link_id": link.id,
        "share_url": share_url,
        "state": link.state.value,
        "amount": str(link.requested_amount),
        "fee_amount": str(link.fee_amount),
        "deliverable_amount": str(link.deliverable_amount),
        "asset": link.asset,
        "creator_ref": link.creator_ref,
        "funding_transfer_ref": link.funding_transfer_ref,
        "claimant_ref": link.claimant_ref,
        "claim_transfer_ref": link.claim_transfer_ref,
        "pending_claimant_ref": link.pending_claimant_ref,
        "claim_attempts": link.claim_attempts,
        "last_claim_error": link.last_claim_error,
        "created_at": link.created_at.isoformat(),
        "updated_at": link.updated_at.isoformat(),
    }


class PaylinkCli:
    """Payment link ledger command line interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        engine: ValueTransferEngine | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._engine = engine
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="paylink",
            description="Payment link ledger operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create ledger tables")

        create = subparsers.add_parser("create", help="Create a payment link")
        create.add_argument("--amount", required=True, help="Requested amount (decimal)")
        create.add_argument("--asset", required=True, help="Asset identifier")
        create.add_argument("--creator", help="Creator reference (wallet address)")
        create.add_argument(
            "--fee",
            help="Explicit fee amount (default: computed from PAYLINK_FEE_RATE)",
        )

        fund = subparsers.add_parser("fund", help="Report funding for a link")
        fund.add_argument("link_id", help="Link ID")
        fund.add_argument(
            "--transfer-ref",
            help="Funding transfer reference (default: fund through the engine)",
        )

        claim = subparsers.add_parser("claim", help="Claim a funded link")
        claim.add_argument("link_id", help="Link ID")
        claim.add_argument("--claimant", required=True, help="Claimant reference")

        show = subparsers.add_parser("show", help="Show a link and its transfers")
        show.add_argument("link_id", help="Link ID")

        list_cmd = subparsers.add_parser("list", help="List links by creator")
        list_cmd.add_argument("--creator", required=True, help="Creator reference")
        list_cmd.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum links to list (default: 100)",
        )

        resolve = subparsers.add_parser(
            "resolve",
            help="Resolve a claim left in progress by an unknown engine outcome",
        )
        resolve.add_argument("link_id", help="Link ID")

        reopen = subparsers.add_parser(
            "reopen",
            help="Reopen a terminally failed claim (operator only)",
        )
        reopen.add_argument("link_id", help="Link ID")
        reopen.add_argument("--reason", required=True, help="Why the claim is reopened")

        metrics = subparsers.add_parser("metrics", help="Emit ledger metrics")
        metrics.add_argument(
            "--format",
            choices=["json", "prometheus"],
            default="prometheus",
            help="Output format (default: prometheus)",
        )

        subparsers.add_parser("serve", help="Run the HTTP API")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "init-db": self._cmd_init_db,
            "create": self._cmd_create,
            "fund": self._cmd_fund,
            "claim": self._cmd_claim,
            "show": self._cmd_show,
            "list": self._cmd_list,
            "resolve": self._cmd_resolve,
            "reopen": self._cmd_reopen,
            "metrics": self._cmd_metrics,
            "serve": self._cmd_serve,
        }

        handler = handlers.get(parsed.command)
        if not handler:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except LinkValidationError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        except LedgerConsistencyError as e:
            print(f"CRITICAL: {e}", file=sys.stderr)
            return 1

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Sync session factory, created on first use."""
        if self._session_factory is None:
            self._session_factory = sync_session_factory(
                get_sync_engine(self.settings.database_url_sync)
            )
        return self._session_factory

    @property
    def engine(self) -> ValueTransferEngine:
        """Configured transfer engine, created on first use."""
        if self._engine is None:
            self._engine = build_transfer_engine(self.settings)
        return self._engine

    def _lifecycle(self, session: Session) -> LinkLifecycle:
        return LinkLifecycle(session, self.engine, config=self.settings.ledger)

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create ledger tables."""
        create_schema(self.session_factory.kw["bind"])
        print("Schema ready")
        return 0

    def _cmd_create(self, args: argparse.Namespace) -> int:
        """Create a link."""
        with self.session_factory() as session:
            lifecycle = self._lifecycle(session)
            link = lifecycle.create_link(
                amount=args.amount,
                asset=args.asset,
                creator_ref=args.creator,
                fee_amount=args.fee,
            )
            print(json.dumps(link_to_dict(link, lifecycle.share_url(link.id)), indent=2))
        return 0

    def _cmd_fund(self, args: argparse.Namespace) -> int:
        """Report funding, optionally funding through the engine first."""
        with self.session_factory() as session:
            lifecycle = self._lifecycle(session)
            transfer_ref = args.transfer_ref
            if not transfer_ref:
                link = lifecycle.get_link(args.link_id)
                if link is None:
                    print(f"Link not found: {args.link_id}", file=sys.stderr)
                    return 1
                try:
                    transfer_ref = self.engine.fund(link.requested_amount, link.asset)
                except TransientFailure as e:
                    print(f"Engine funding failed, retry later: {e}", file=sys.stderr)
                    return 1
                except TerminalFailure as e:
                    print(f"Engine refused funding: {e}", file=sys.stderr)
                    return 1
                print(f"Engine funding transfer: {transfer_ref}")

            result = lifecycle.report_funding(args.link_id, transfer_ref)
            print(f"Funding: {result.status.value}")
            if result.link is not None:
                print(f"  Recorded transfer: {result.link.funding_transfer_ref}")
        return 0 if result.ok else 1

    def _cmd_claim(self, args: argparse.Namespace) -> int:
        """Claim a link."""
        with self.session_factory() as session:
            result = self._lifecycle(session).claim_link(args.link_id, args.claimant)
        self._print_claim_result(result)
        return 0 if result.success else 1

    def _cmd_show(self, args: argparse.Namespace) -> int:
        """Show a link with its transfers."""
        with self.session_factory() as session:
            lifecycle = self._lifecycle(session)
            link = lifecycle.get_link(args.link_id)
            if link is None:
                print(f"Link not found: {args.link_id}", file=sys.stderr)
                return 1
            data = link_to_dict(link, lifecycle.share_url(link.id))
            data["transfers"] = [
                {
                    "kind": t.kind,
                    "transfer_ref": t.transfer_ref,
                    "amount": str(t.amount),
                    "counterparty_ref": t.counterparty_ref,
                }
                for t in lifecycle.list_transfers(link.id)
            ]
        print(json.dumps(data, indent=2))
        return 0

    def _cmd_list(self, args: argparse.Namespace) -> int:
        """List links by creator."""
        with self.session_factory() as session:
            links = self._lifecycle(session).list_links_by_creator(args.creator, limit=args.limit)

        print(f"Links created by {args.creator}: {len(links)}")
        print("-" * 72)
        for link in links:
            print(
                f"{link.id}  {link.state.value:<12} {link.requested_amount} {link.asset}"
                f"  {link.created_at.isoformat()}"
            )
        return 0

    def _cmd_resolve(self, args: argparse.Namespace) -> int:
        """Resolve an indeterminate claim from the engine's status."""
        with self.session_factory() as session:
            result = self._lifecycle(session).resolve_claim(args.link_id)
        self._print_claim_result(result)
        return 0 if result.status != ClaimStatus.NOT_FOUND else 1

    def _cmd_reopen(self, args: argparse.Namespace) -> int:
        """Reopen a failed claim."""
        with self.session_factory() as session:
            result = self._lifecycle(session).reopen_claim(args.link_id, args.reason)
        self._print_claim_result(result)
        return 0 if result.status == ClaimStatus.REOPENED else 1

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        with self.session_factory() as session:
            metrics = MetricsCollector(
                session, stuck_claim_minutes=self.settings.ledger.stuck_claim_minutes
            ).collect_all()

        if args.format == "json":
            print(metrics.to_json())
        else:
            print(metrics.to_prometheus())
        return 0

    def _cmd_serve(self, args: argparse.Namespace) -> int:
        """Run the HTTP API."""
        from paylink.__main__ import main as serve

        serve()
        return 0

    @staticmethod
    def _print_claim_result(result: ClaimResult) -> None:
        print(f"Claim: {result.status.value}")
        if result.deliverable_amount is not None:
            print(f"  Deliverable: {result.deliverable_amount}")
        if result.claim_transfer_ref:
            print(f"  Claim transfer: {result.claim_transfer_ref}")
        if result.reason:
            print(f"  Reason: {result.reason}")
        if result.retryable is not None:
            print(f"  Retryable: {'yes' if result.retryable else 'no'}")
        if result.link is not None:
            print(f"  Link state: {result.link.state.value}")


def main() -> int:
    """CLI entry point."""
    cli = PaylinkCli()
    logging.basicConfig(
        level=cli.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
