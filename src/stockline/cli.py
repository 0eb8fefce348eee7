"""Command-line entry points for stockline.

The CLI is limited to argparse wiring and translating arguments into calls on
the business layer. Invoices are built through the same editor a graphical
front end would use, so every line edit goes through the stock and price
rules before submission.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import InvoiceType, PriceType
from .data_manager import ProductRow
from .draft import InvoiceEditor
from .errors import BusinessRuleViolation, MissingReferenceError, SubmissionRejected


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    Only commands with ``writes`` set persist the workbook after a
    successful run.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockline-cli",
        description="Build invoices and run stock and profit reports over a stockline workbook.",
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
    """Declare mutating CLI commands such as invoices and payments."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "set-price": register_set_price_command(subparsers),
        "sell": register_sell_command(subparsers),
        "buy": register_buy_command(subparsers),
        "pay": register_pay_command(subparsers),
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
        "cost-at": register_cost_at_command(subparsers),
        "profit": register_profit_command(subparsers),
        "invoices": register_invoices_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}") from exc


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--shelf-location", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, writes=True)


def register_set_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-price``."""
    name = "set-price"
    help_text = "Record new wholesale and retail prices for a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--wholesale", default=None)
        parser.add_argument("--retail", default=None)
        parser.add_argument("--effective-date", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_price, writes=True)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Build and submit a sell invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument("--item", action="append", nargs=2, metavar=("PRODUCT", "QTY"), default=[])
        parser.add_argument("--scan", action="append", metavar="CODE", default=[])
        parser.add_argument("--price-type", choices=[member.value for member in PriceType], default=None)
        parser.add_argument("--private", action="append", nargs=2, metavar=("PRODUCT", "AMOUNT"), default=[])
        parser.add_argument("--due-date", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell, writes=True)


def register_buy_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``buy``."""
    name = "buy"
    help_text = "Build and submit a buy invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier", required=True)
        parser.add_argument("--item", action="append", nargs=2, metavar=("PRODUCT", "QTY"), default=[])
        parser.add_argument("--cost", action="append", nargs=2, metavar=("PRODUCT", "AMOUNT"), default=[])
        parser.add_argument("--due-date", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_buy, writes=True)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay, writes=True)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display available stock per product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_cost_at_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cost-at``."""
    name = "cost-at"
    help_text = "Display the average cost a product had on a given day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--date", type=_iso_date, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cost_at)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display item-level profit next to the naive sales minus purchases figure."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=_iso_date, default=None)
        parser.add_argument("--end", type=_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List persisted invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _pairs(raw: Sequence[Sequence[str]], convert: Callable[[str], Any]) -> List[Tuple[str, Any]]:
    return [(product_id, convert(value)) for product_id, value in raw]


def translate_add_product(args: argparse.Namespace) -> ProductRow:
    """Translate CLI args into a product record."""
    return ProductRow(
        product_id=args.product_id,
        product_name=args.product_name,
        barcode=args.barcode,
        sku=args.sku,
        category=args.category,
        shelf_location=args.shelf_location,
    )


def translate_set_price(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a set-price request."""
    return {
        "product_id": args.product_id,
        "wholesale_price": _optional_decimal(args.wholesale),
        "retail_price": _optional_decimal(args.retail),
        "effective_date": args.effective_date,
    }


def translate_items(args: argparse.Namespace) -> List[Tuple[str, int]]:
    """Translate repeated ``--item PRODUCT QTY`` pairs."""
    return _pairs(getattr(args, "item", None) or [], int)


def translate_amounts(raw: Optional[Sequence[Sequence[str]]]) -> List[Tuple[str, Decimal]]:
    """Translate repeated ``PRODUCT AMOUNT`` pairs."""
    return _pairs(raw or [], Decimal)


def _line_for(editor: InvoiceEditor, product_id: str) -> int:
    index = editor.is_duplicate(product_id)
    if index is None:
        raise MissingReferenceError(f"Product {product_id} is not on the invoice")
    return index


def build_sell_editor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> InvoiceEditor:
    """Apply the ``sell`` arguments to a fresh sell draft."""
    editor = core_logic.open_draft(context, InvoiceType.SELL)
    editor.set_counterparty(args.customer)
    editor.set_due_date(args.due_date)
    for product_id, quantity in translate_items(args):
        editor.add_line(product_id, quantity)
    for code in args.scan or []:
        editor.scan(code)
    if args.price_type is not None:
        price_type = PriceType(args.price_type)
        for index, _ in editor.draft.selected_lines():
            editor.set_price_type(index, price_type)
    for product_id, amount in translate_amounts(args.private):
        index = _line_for(editor, product_id)
        editor.set_private_price(index, True)
        editor.set_private_amount(index, amount)
    return editor


def build_buy_editor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> InvoiceEditor:
    """Apply the ``buy`` arguments to a fresh buy draft."""
    editor = core_logic.open_draft(context, InvoiceType.BUY)
    editor.set_counterparty(args.supplier)
    editor.set_due_date(args.due_date)
    for product_id, quantity in translate_items(args):
        editor.add_line(product_id, quantity)
    for product_id, amount in translate_amounts(args.cost):
        editor.set_unit_price(_line_for(editor, product_id), amount)
    return editor


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Added product {product.product_id}")
    return 0


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the set-price workflow in the BLL."""
    record = core_logic.set_price(context, **translate_set_price(args))
    print(f"Prices for {record.product_id} effective {record.effective_date.isoformat()}")
    return 0


def _submit(context: core_logic.RuntimeContext, editor: InvoiceEditor) -> int:
    for warning in editor.warnings:
        print(f"warning: no {warning.price_type.value} price set for {warning.product_id}")
    invoice = core_logic.submit_invoice(context, editor)
    print(f"Submitted {invoice.invoice_type} invoice {invoice.invoice_id} total {invoice.total_amount}")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sell workflow via the editor and the BLL."""
    return _submit(context, build_sell_editor(context, args))


def run_buy(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the buy workflow via the editor and the BLL."""
    return _submit(context, build_buy_editor(context, args))


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    invoice = core_logic.record_payment(context, args.invoice_id, Decimal(args.amount))
    print(
        f"Invoice {invoice.invoice_id} paid {invoice.amount_paid} of {invoice.total_amount} "
        f"({invoice.payment_status.value})"
    )
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print available quantity for every catalog product."""
    snapshot = core_logic.stock_snapshot(context, today=args.date)
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.product_name}\t{snapshot.get(product.product_id, 0)}")
    return 0


def run_cost_at(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the historical average cost of one product."""
    lookup = core_logic.cost_at(context, args.product_id, args.date)
    source = "current-cost fallback" if lookup.is_fallback else f"snapshot {lookup.snapshot_date.isoformat()}"
    print(f"{lookup.product_id}\t{lookup.on_date.isoformat()}\t{lookup.cost}\t({source})")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print item-level profit and, separately labelled, the naive figure."""
    report = core_logic.profit_report(context, start=args.start, end=args.end)
    naive = core_logic.naive_profit_summary(context, start=args.start, end=args.end)
    print(f"{report.label}: {report.total}")
    print(f"  revenue {report.total_revenue}, cost {report.total_cost}")
    for product_id, amount in report.by_product().items():
        print(f"  {product_id}\t{amount}")
    if report.approximated_lines:
        print(f"  {len(report.approximated_lines)} line(s) costed with the current-cost fallback")
    print(f"{naive.label}: {naive.naive_profit}")
    print(f"  sales {naive.total_sales}, purchases {naive.total_purchases}")
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every invoice header."""
    for invoice in core_logic.list_invoices(context):
        counterparty = invoice.customer_id or invoice.supplier_id or ""
        print(
            f"{invoice.invoice_id}\t{invoice.invoice_date.isoformat()}\t{invoice.invoice_type}\t"
            f"{counterparty}\t{invoice.total_amount}\t{invoice.amount_paid}\t{invoice.payment_status.value}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, SubmissionRejected):
        log.error("Submission rejected: %s", error)
        return 4
    if isinstance(error, BusinessRuleViolation):
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
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
