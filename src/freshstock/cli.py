"""Command-line entry points for the FreshStock toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing report results. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import ITEM_CATEGORIES
from .models import TransferTransaction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="freshstock-cli",
        description="Command-line tools for the FreshStock multi-branch inventory ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as receipts and transfers."""
    specs = {
        "add-branch": register_add_branch_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "update-item": register_update_item_command(subparsers),
        "receive": register_movement_command(subparsers, "receive", "Record goods received at a branch.", run_receive),
        "use": register_movement_command(subparsers, "use", "Record goods used at a branch.", run_use),
        "wastage": register_movement_command(subparsers, "wastage", "Record goods wasted at a branch.", run_wastage),
        "transfer": register_transfer_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "daily": register_daily_command(subparsers),
        "usage": register_usage_command(subparsers),
        "reorder": register_reorder_command(subparsers),
        "report": register_report_command(subparsers),
        "transfers": register_transfers_command(subparsers),
        "log": register_log_command(subparsers),
        "items": register_items_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_timestamp_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--timestamp",
        type=datetime.fromisoformat,
        default=None,
        help="ISO 8601 timestamp for the transaction (defaults to now, UTC).",
    )


def register_add_branch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-branch``."""
    name = "add-branch"
    help_text = "Register a new branch in the Branches sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_branch)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new item in the Items sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", choices=ITEM_CATEGORIES, default="Other")
        parser.add_argument("--unit", default="kg")
        parser.add_argument("--min-stock", default="0")
        parser.add_argument("--preferred-order", default="0")
        parser.add_argument("--lead-time-days", default=None)
        parser.add_argument("--unit-cost", default="0")
        parser.add_argument("--storage-location", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_update_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-item``."""
    name = "update-item"
    help_text = "Change the attributes of an existing item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category", choices=ITEM_CATEGORIES, default=None)
        parser.add_argument("--unit", default=None)
        parser.add_argument("--min-stock", default=None)
        parser.add_argument("--preferred-order", default=None)
        parser.add_argument("--lead-time-days", default=None)
        parser.add_argument("--unit-cost", default=None)
        parser.add_argument("--storage-location", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_item)


def register_movement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a single-branch movement command (``receive``, ``use``, ``wastage``)."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--branch-id", default=None, help="Defaults to the configured branch.")
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        _add_timestamp_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move stock from one branch to another."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--branch-from", required=True)
        parser.add_argument("--branch-to", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        _add_timestamp_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and low-stock alerts for a branch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--low-only", action="store_true", help="Only list items below minimum stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_daily_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    name = "daily"
    help_text = "Display the daily movement record for an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--day", type=date.fromisoformat, default=None, help="YYYY-MM-DD (defaults to today).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_daily_report)


def register_usage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``usage``."""
    name = "usage"
    help_text = "Display daily usage and wastage history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--item-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_usage_report)


def register_reorder_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reorder``."""
    name = "reorder"
    help_text = "Display the suggested order quantity for an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--branch-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reorder_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display the monthly or yearly usage and cost report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.add_argument("--year", type=int, required=True)
        parser.add_argument("--month", type=int, default=None, help="Omit for a yearly report.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_period_report)


def register_transfers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfers``."""
    name = "transfers"
    help_text = "Display transfer history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfers_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_items_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``items``."""
    name = "items"
    help_text = "Display or export the item catalogue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", choices=ITEM_CATEGORIES, default=None)
        parser.add_argument("--json", action="store_true", help="Print the catalogue as a JSON array.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_items_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _optional_decimal(raw: Optional[str]) -> Optional[Decimal]:
    return Decimal(raw) if raw is not None else None


def _branch_or_default(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "branch_id", None) or context.settings.default_branch_id


def translate_add_branch(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-branch request."""
    return {"branch_id": args.branch_id, "name": args.name}


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "item_id": args.item_id,
        "name": args.name,
        "category": args.category,
        "unit": args.unit,
        "min_stock": Decimal(args.min_stock),
        "preferred_order": Decimal(args.preferred_order),
        "lead_time_days": _optional_decimal(args.lead_time_days),
        "unit_cost": Decimal(args.unit_cost),
        "storage_location": args.storage_location,
    }


def translate_update_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the attribute changes of an update-item request."""
    text_fields = ("name", "category", "unit", "storage_location")
    number_fields = ("min_stock", "preferred_order", "lead_time_days", "unit_cost")
    changes: Dict[str, Any] = {}
    for field_name in text_fields:
        value = getattr(args, field_name)
        if value is not None:
            changes[field_name] = value
    for field_name in number_fields:
        value = getattr(args, field_name)
        if value is not None:
            changes[field_name] = Decimal(value)
    return changes


def translate_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.ReceiveCommand:
    """Translate CLI args into a receive command object."""
    return core_logic.ReceiveCommand(
        item_id=args.item_id,
        branch_id=_branch_or_default(context, args),
        quantity=Decimal(args.quantity),
        timestamp=args.timestamp,
        notes=args.notes,
    )


def translate_use(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.UseCommand:
    """Translate CLI args into a use command object."""
    return core_logic.UseCommand(
        item_id=args.item_id,
        branch_id=_branch_or_default(context, args),
        quantity=Decimal(args.quantity),
        timestamp=args.timestamp,
        notes=args.notes,
    )


def translate_wastage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.WastageCommand:
    """Translate CLI args into a wastage command object."""
    return core_logic.WastageCommand(
        item_id=args.item_id,
        branch_id=_branch_or_default(context, args),
        quantity=Decimal(args.quantity),
        timestamp=args.timestamp,
        notes=args.notes,
    )


def translate_transfer(args: argparse.Namespace) -> core_logic.TransferCommand:
    """Translate CLI args into a transfer command object."""
    return core_logic.TransferCommand(
        item_id=args.item_id,
        branch_from=args.branch_from,
        branch_to=args.branch_to,
        quantity=Decimal(args.quantity),
        timestamp=args.timestamp,
        notes=args.notes,
    )


def run_add_branch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-branch workflow in the BLL."""
    branch = core_logic.add_branch(context, **translate_add_branch(args))
    print(f"Added branch {branch.branch_id}: {branch.name}")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(context, **translate_add_item(args))
    print(f"Added item {item.item_id}: {item.name}")
    return 0


def run_update_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-item workflow in the BLL."""
    core_logic.update_item(context, args.item_id, **translate_update_item(args))
    return 0


def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the receive workflow via the BLL."""
    core_logic.record_receive(context, translate_receive(context, args))
    return 0


def run_use(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the use workflow via the BLL."""
    core_logic.record_use(context, translate_use(context, args))
    return 0


def run_wastage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the wastage workflow via the BLL."""
    core_logic.record_wastage(context, translate_wastage(context, args))
    return 0


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transfer workflow via the BLL."""
    core_logic.record_transfer(context, translate_transfer(args))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock levels, low-stock flags, and suggestions for a branch."""
    branch_id = _branch_or_default(context, args)
    rows = core_logic.stock_overview(context, branch_id)
    for row in rows:
        if args.low_only and not row.is_low:
            continue
        status = "ORDER NOW" if row.is_low else "OK"
        print(
            f"{row.item.item_id}\t{row.item.name}\t{row.quantity} {row.item.unit}"
            f"\tmin={row.item.min_stock}\tsuggested={row.suggested_order}\t{status}"
        )
    return 0


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the daily movement record of an item at a branch."""
    day = args.day or datetime.now(UTC).date()
    record = core_logic.daily_record(context, _branch_or_default(context, args), args.item_id, day)
    print(
        f"{day.isoformat()}\tstart={record.start}\treceived={record.received}"
        f"\ttransfer_in={record.transfer_in}\ttransfer_out={record.transfer_out}"
        f"\tused={record.used}\twastage={record.wastage}\tend={record.end}"
    )
    return 0


def run_usage_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print daily usage history grouped by branch and item."""
    history = core_logic.usage_history(context, branch_id=args.branch_id, item_id=args.item_id)
    for branch_id, per_item in history.items():
        for item_id, points in per_item.items():
            for point in points:
                print(f"{branch_id}\t{item_id}\t{point.day.isoformat()}\t{point.quantity}")
    return 0


def run_reorder_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the suggested order quantity for an item."""
    suggestion = core_logic.suggest_order(context, _branch_or_default(context, args), args.item_id)
    print(f"{args.item_id}\tsuggested={suggestion}")
    return 0


def run_period_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the usage and cost report for a month or a year."""
    report = core_logic.period_report(context, _branch_or_default(context, args), args.year, args.month)
    for line in report.lines:
        print(f"{line.item.item_id}\t{line.item.name}\t{line.used_quantity} {line.item.unit}\t{line.cost}")
    for category, cost in report.category_costs.items():
        print(f"[{category}]\t{cost}")
    print(f"TOTAL\t{report.total_cost}")
    return 0


def run_transfers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print transfers, newest first."""
    for transfer in core_logic.transfer_history(context, args.branch_id):
        print(
            f"{transfer.timestamp.isoformat()}\t{transfer.item_id}\t{transfer.branch_from}"
            f" -> {transfer.branch_to}\t{transfer.quantity}\t{transfer.notes}"
        )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction log in chronological order."""
    for transaction in core_logic.list_transactions(context):
        if isinstance(transaction, TransferTransaction):
            where = f"{transaction.branch_from} -> {transaction.branch_to}"
        else:
            where = transaction.branch_id
        print(
            f"{transaction.transaction_id}\t{transaction.timestamp.isoformat()}"
            f"\t{transaction.transaction_type.value}\t{transaction.item_id}\t{where}\t{transaction.quantity}"
        )
    return 0


def run_items_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the item catalogue, optionally as JSON for export."""
    items = core_logic.list_items(context, category=args.category)
    if args.json:
        print(json.dumps([asdict(item) for item in items], default=str, indent=2))
        return 0
    for item in items:
        print(
            f"{item.item_id}\t{item.name}\t{item.category}\t{item.unit}"
            f"\tmin={item.min_stock}\tcost={item.unit_cost}\t{item.storage_location}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
