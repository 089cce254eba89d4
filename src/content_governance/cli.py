"""Operator command line for inspecting and unsticking convergence operations."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from content_governance.config import load_settings
from content_governance.errors import ContentGovernanceError
from content_governance.events import ServiceBusPublisher
from content_governance.logging import configure_logging
from content_governance.models.branch import Actor, Role
from content_governance.startup import build_services, init_database
from content_governance.vcs.git import GitVersionControl

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pydantic import BaseModel

    from content_governance.config import Settings
    from content_governance.startup import Services

logger = logging.getLogger(__name__)


def _emit(payload: BaseModel | list[BaseModel]) -> None:
    if isinstance(payload, list):
        data: Any = [item.model_dump(mode="json") for item in payload]
    else:
        data = payload.model_dump(mode="json")
    sys.stdout.write(json.dumps(data, indent=2) + "\n")


def _actor(args: argparse.Namespace) -> Actor:
    return Actor(id=args.actor, roles=[Role(role) for role in args.role])


async def _dispatch(args: argparse.Namespace, services: Services, settings: Settings) -> None:
    coordinator = services.coordinator
    match args.command:
        case "status":
            _emit(await coordinator.get_status(args.operation_id))
        case "history":
            _emit(await coordinator.list_for_branch(args.branch_id))
        case "validate":
            _emit(await coordinator.validate(args.branch_id))
        case "reconcile":
            _emit(await coordinator.reconcile(args.operation_id))
        case "cancel":
            _emit(await coordinator.cancel(args.operation_id, _actor(args)))
        case "force-release":
            _emit(await coordinator.force_release(args.operation_id, _actor(args)))
        case "locks":
            older_than = (
                settings.convergence.stale_lock_after if args.stale else timedelta(0)
            )
            _emit(await services.locking.list_stale_locks(older_than))
        case _:
            msg = f"Unknown command: {args.command}"
            raise ValueError(msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="content-governance",
        description="Inspect and manage convergence operations.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show a convergence operation")
    status.add_argument("operation_id")

    history = sub.add_parser("history", help="List convergence operations for a branch")
    history.add_argument("branch_id")

    validate = sub.add_parser("validate", help="Dry-run convergence checks for a branch")
    validate.add_argument("branch_id")

    reconcile = sub.add_parser(
        "reconcile", help="Compare a target head with an operation's recorded commits"
    )
    reconcile.add_argument("operation_id")

    locks = sub.add_parser("locks", help="List held target locks")
    locks.add_argument(
        "--stale",
        action="store_true",
        help="Only locks held longer than STALE_LOCK_MINUTES",
    )

    for name, help_text in (
        ("cancel", "Cancel a pending convergence"),
        ("force-release", "Force-release a stuck target lock (administrators)"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("operation_id")
        command.add_argument("--actor", required=True, help="Acting user id")
        command.add_argument(
            "--role",
            action="append",
            default=[],
            choices=[role.value for role in Role],
            help="Role held by the actor; repeat for several",
        )
    return parser


async def run(argv: Sequence[str] | None = None) -> int:
    """Parse ``argv``, run one command and return the process exit code."""
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.app.log_level)

    try:
        vcs = GitVersionControl(settings.git)
        cosmos = await init_database(settings)
    except (ContentGovernanceError, ConnectionError) as exc:
        logger.error(str(exc))  # noqa: TRY400
        return 2

    publisher = ServiceBusPublisher(settings.servicebus)
    try:
        services = build_services(cosmos.database, vcs, publisher, settings)
        await _dispatch(args, services, settings)
    except ContentGovernanceError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)  # noqa: TRY400
        return 1
    finally:
        await publisher.close()
        await cosmos.close()
    return 0


def main() -> None:
    """Entry point for the operator CLI."""
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
