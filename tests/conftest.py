"""Shared pytest fixtures and utilities for stockline tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from stockline import cli, constants, core_logic, data_manager  # noqa: E402
from stockline.constants import InvoiceType  # noqa: E402
from stockline.draft import CatalogIndex, EditorPolicy, InvoiceDraft, InvoiceEditor  # noqa: E402
from stockline.stock_ledger import StockLedgerView  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Editor]\n"
    "EnforceStockCeiling = {enforce_stock_ceiling}\n"
    "MergeDuplicateScans = {merge_duplicate_scans}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "store.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def store_workbook(store_workbook_path: Path):
    """Return the fresh store workbook opened through the data layer."""

    return data_manager.open_workbook(store_workbook_path)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        enforce_stock_ceiling: bool = True,
        merge_duplicate_scans: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                enforce_stock_ceiling="yes" if enforce_stock_ceiling else "no",
                merge_duplicate_scans="yes" if merge_duplicate_scans else "no",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def products() -> list[data_manager.ProductRow]:
    """A small catalog with barcodes and SKUs."""

    return [
        data_manager.ProductRow("P1", "Pencil", barcode="111 222", sku="pen-1"),
        data_manager.ProductRow("P2", "Notebook", barcode="333444", sku="NB-2"),
        data_manager.ProductRow("P3", "Eraser", sku="ER-3"),
    ]


@pytest.fixture
def prices() -> dict[str, data_manager.PriceRecordRow]:
    """Latest price records keyed by product; P3 has no retail price."""

    effective = date(2024, 1, 1)
    return {
        "P1": data_manager.PriceRecordRow("P1", Decimal("15.00"), Decimal("20.00"), effective),
        "P2": data_manager.PriceRecordRow("P2", Decimal("3.00"), Decimal("4.50"), effective),
        "P3": data_manager.PriceRecordRow("P3", Decimal("0.50"), None, effective),
    }


@pytest.fixture
def make_editor(
    products: list[data_manager.ProductRow],
    prices: dict[str, data_manager.PriceRecordRow],
) -> Callable[..., InvoiceEditor]:
    """Factory building an editor over the sample catalog and prices."""

    def _make(
        invoice_type: InvoiceType = InvoiceType.SELL,
        *,
        stock: Optional[Mapping[str, int]] = None,
        released: Optional[Mapping[str, int]] = None,
        policy: EditorPolicy = EditorPolicy(),
        counterparty_id: Optional[str] = "C1",
        has_payments: bool = False,
    ) -> InvoiceEditor:
        draft = InvoiceDraft(invoice_type=invoice_type, counterparty_id=counterparty_id, has_payments=has_payments)
        ledger = StockLedgerView(invoice_type, stock if stock is not None else {"P1": 5, "P2": 10}, released=released)
        return InvoiceEditor(draft, CatalogIndex(products), prices, ledger, policy)

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stockline-cli", description="stockline CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "store.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
