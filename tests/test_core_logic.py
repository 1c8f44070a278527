"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from freshstock import constants, core_logic, data_manager
from freshstock.exceptions import BusinessRuleViolation, InvalidTransactionError, MissingReferenceError
from freshstock.ledger import WorkbookLedgerStore
from freshstock.models import (
    Branch,
    Item,
    ReceiveTransaction,
    TransferTransaction,
    UseTransaction,
    WastageTransaction,
)


NOW = datetime(2024, 5, 31, 12, 0, tzinfo=UTC)

BRANCHES = [Branch("b_hq", "Head Office"), Branch("b_1", "Branch 1")]
ITEMS = [
    Item("i_tom", "Tomato", "Vegetable", "kg", Decimal("10"), Decimal("20"), None, Decimal("30"), "Cold Room"),
    Item("i_shrimp", "Shrimp", "Seafood", "kg", Decimal("2"), Decimal("8"), Decimal("3"), Decimal("200"), "Freezer"),
]


@pytest.fixture
def catalog(monkeypatch):
    """Serve branch and item master data from in-memory lists."""

    branches = list(BRANCHES)
    items = list(ITEMS)
    monkeypatch.setattr(data_manager, "iter_branches", Mock(side_effect=lambda workbook: iter(branches)))
    monkeypatch.setattr(data_manager, "iter_items", Mock(side_effect=lambda workbook: iter(items)))
    return branches, items


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 5, day, hour, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings, workbook, and ledger."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        chain_name="Chain",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_branch_id="b_hq",
    )
    workbook = Mock(name="workbook")

    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=config_path))
    monkeypatch.setattr(data_manager, "read_config", Mock(return_value=parser))
    parse_settings = Mock(return_value=parsed_settings)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", Mock(return_value=workbook))

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    assert isinstance(context.ledger, WorkbookLedgerStore)
    assert context.ledger.workbook is workbook
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)


def test_ensure_schema_version_accepts_expected_version(context):
    """Matching schema versions pass silently."""

    core_logic.ensure_schema_version(context)


def test_ensure_schema_version_rejects_mismatch(settings, workbook, ledger):
    """A different schema version raises RuntimeError."""

    settings = data_manager.ConfigSettings(
        data_file=settings.data_file,
        chain_name=settings.chain_name,
        schema_version="0.9.0",
        default_branch_id=settings.default_branch_id,
    )
    context = core_logic.RuntimeContext(settings=settings, workbook=workbook, ledger=ledger)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(context)


def test_persist_context_saves_to_configured_file(context, monkeypatch):
    """persist_context writes the workbook to the settings data file."""

    save = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)

    core_logic.persist_context(context)

    save.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_refresh_context_reloads_workbook_and_ledger(context, monkeypatch):
    """refresh_context returns a new context over the reloaded workbook."""

    fresh = Mock(name="fresh")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh))

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is fresh
    assert refreshed.ledger.workbook is fresh
    assert refreshed.settings is context.settings


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------


def test_list_items_filters_by_category(context, catalog):
    """list_items optionally restricts to a single category."""

    assert [item.item_id for item in core_logic.list_items(context)] == ["i_tom", "i_shrimp"]
    assert [item.item_id for item in core_logic.list_items(context, category="Seafood")] == ["i_shrimp"]


def test_master_data_is_cached(context, catalog):
    """Repeated lookups read the workbook once."""

    core_logic.get_item(context, "i_tom")
    core_logic.get_item(context, "i_shrimp")
    core_logic.list_items(context)

    assert data_manager.iter_items.call_count == 1


def test_get_branch_unknown_raises(context, catalog):
    """Unknown branches are a MissingReferenceError."""

    with pytest.raises(MissingReferenceError):
        core_logic.get_branch(context, "b_missing")


def test_find_item_returns_none_for_unknown(context, catalog):
    """find_item is the soft variant of get_item."""

    assert core_logic.find_item(context, "nope") is None
    assert core_logic.find_item(context, "i_tom").name == "Tomato"


def test_add_branch_appends_and_invalidates_cache(context, catalog, monkeypatch):
    """add_branch writes the row and clears the branch cache."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_branch", append)
    core_logic.list_branches(context)

    branch = core_logic.add_branch(context, name="  Airport  ", branch_id="b_air")

    assert branch == Branch("b_air", "Airport")
    append.assert_called_once_with(context.workbook, branch)
    assert "branches" not in context._cache


def test_add_branch_generates_identifier(context, catalog, monkeypatch):
    """A missing id is generated with the b_ prefix."""

    monkeypatch.setattr(data_manager, "append_branch", Mock())
    branch = core_logic.add_branch(context, name="Airport")
    assert branch.branch_id.startswith("b_")
    assert len(branch.branch_id) == 9


def test_add_branch_rejects_duplicates_and_blank_names(context, catalog, monkeypatch):
    """Branch ids are unique and names are required."""

    monkeypatch.setattr(data_manager, "append_branch", Mock())
    with pytest.raises(BusinessRuleViolation):
        core_logic.add_branch(context, name="Again", branch_id="b_hq")
    with pytest.raises(BusinessRuleViolation):
        core_logic.add_branch(context, name="   ")


def test_add_item_appends_item(context, catalog, monkeypatch):
    """add_item writes the item row with the given attributes."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_item", append)

    item = core_logic.add_item(
        context,
        name="Basil",
        category="Vegetable",
        unit="bunch",
        min_stock=Decimal("4"),
        unit_cost=Decimal("1.25"),
    )

    assert item.item_id.startswith("i_")
    assert item.lead_time_days is None
    append.assert_called_once_with(context.workbook, item)


def test_add_item_rejects_negative_numbers(context, catalog, monkeypatch):
    """Thresholds and costs must not be negative."""

    monkeypatch.setattr(data_manager, "append_item", Mock())
    with pytest.raises(ValueError):
        core_logic.add_item(context, name="Basil", unit_cost=Decimal("-1"))


def test_add_item_rejects_duplicate_id(context, catalog, monkeypatch):
    """Item ids are unique."""

    monkeypatch.setattr(data_manager, "append_item", Mock())
    with pytest.raises(BusinessRuleViolation):
        core_logic.add_item(context, name="Tomato again", item_id="i_tom")


def test_update_item_maps_fields_to_columns(context, catalog, monkeypatch):
    """update_item translates attribute names to sheet columns."""

    update = Mock()
    monkeypatch.setattr(data_manager, "update_item", update)

    updated = core_logic.update_item(context, "i_tom", name="Roma Tomato", min_stock=Decimal("12"))

    assert updated.name == "Roma Tomato"
    assert updated.min_stock == Decimal("12")
    update.assert_called_once_with(
        context.workbook,
        "i_tom",
        field_values={"ItemName": "Roma Tomato", "MinStock": Decimal("12")},
    )


def test_update_item_rejects_unknown_fields(context, catalog, monkeypatch):
    """Only Item attributes may be patched."""

    monkeypatch.setattr(data_manager, "update_item", Mock())
    with pytest.raises(BusinessRuleViolation):
        core_logic.update_item(context, "i_tom", colour="red")
    with pytest.raises(BusinessRuleViolation):
        core_logic.update_item(context, "i_tom", item_id="i_new")


def test_update_item_does_not_touch_ledger(context, catalog, monkeypatch):
    """Renaming an item leaves recorded transactions untouched."""

    monkeypatch.setattr(data_manager, "update_item", Mock())
    stored = core_logic.record_receive(context, core_logic.ReceiveCommand("i_tom", "b_hq", Decimal("5"), _at(1)))

    core_logic.update_item(context, "i_tom", name="Renamed")

    assert context.ledger.read_all() == (stored,)


def test_remove_item_rejected_while_referenced(context, catalog, monkeypatch):
    """Items with transactions cannot be deleted."""

    delete = Mock()
    monkeypatch.setattr(data_manager, "delete_row", delete)
    core_logic.record_use(context, core_logic.UseCommand("i_tom", "b_hq", Decimal("1"), _at(1)))

    with pytest.raises(BusinessRuleViolation):
        core_logic.remove_item(context, "i_tom")
    delete.assert_not_called()


def test_remove_item_deletes_unreferenced_item(context, catalog, monkeypatch):
    """Unreferenced items are removed from the Items sheet."""

    delete = Mock()
    monkeypatch.setattr(data_manager, "delete_row", delete)

    core_logic.remove_item(context, "i_shrimp")

    delete.assert_called_once_with(context.workbook, constants.SheetName.ITEMS.value, "ItemID", "i_shrimp")


def test_remove_branch_rejected_while_referenced_by_transfer(context, catalog, monkeypatch):
    """A transfer destination counts as a reference."""

    monkeypatch.setattr(data_manager, "delete_row", Mock())
    core_logic.record_transfer(context, core_logic.TransferCommand("i_tom", "b_hq", "b_1", Decimal("1"), _at(1)))

    with pytest.raises(BusinessRuleViolation):
        core_logic.remove_branch(context, "b_1")


# ---------------------------------------------------------------------------
# Recording transactions
# ---------------------------------------------------------------------------


def test_build_transaction_maps_each_command():
    """Each command type produces its transaction variant."""

    cases = [
        (core_logic.ReceiveCommand("i", "b", Decimal("1")), ReceiveTransaction),
        (core_logic.UseCommand("i", "b", Decimal("1")), UseTransaction),
        (core_logic.WastageCommand("i", "b", Decimal("1")), WastageTransaction),
        (core_logic.TransferCommand("i", "a", "b", Decimal("1")), TransferTransaction),
    ]
    for command, expected in cases:
        transaction = core_logic.build_transaction(command, timestamp=NOW)
        assert isinstance(transaction, expected)
        assert transaction.timestamp == NOW
        assert transaction.notes == ""


def test_build_transaction_rejects_unknown_commands():
    """Unknown command objects are a business rule violation."""

    with pytest.raises(BusinessRuleViolation):
        core_logic.build_transaction(object(), timestamp=NOW)


def test_record_receive_appends_to_ledger(context, catalog):
    """A valid receipt is stored with an id."""

    stored = core_logic.record_receive(
        context,
        core_logic.ReceiveCommand("i_tom", "b_hq", Decimal("20"), _at(1), "Morning delivery"),
    )

    assert stored.transaction_id
    assert stored.notes == "Morning delivery"
    assert context.ledger.read_all() == (stored,)


def test_record_transaction_defaults_timestamp_to_now(context, catalog, set_fixed_datetime):
    """Commands without a timestamp are stamped with the current UTC time."""

    moment = set_fixed_datetime(NOW)
    stored = core_logic.record_use(context, core_logic.UseCommand("i_tom", "b_hq", Decimal("1")))
    assert stored.timestamp == moment


def test_record_transaction_rejects_unknown_item(context, catalog):
    """Unknown items are rejected before anything is appended."""

    with pytest.raises(MissingReferenceError):
        core_logic.record_receive(context, core_logic.ReceiveCommand("nope", "b_hq", Decimal("1"), _at(1)))
    assert len(context.ledger) == 0


def test_record_transaction_rejects_unknown_branch(context, catalog):
    """Both transfer branches must exist."""

    with pytest.raises(MissingReferenceError):
        core_logic.record_transfer(
            context,
            core_logic.TransferCommand("i_tom", "b_hq", "b_missing", Decimal("1"), _at(1)),
        )


def test_record_transaction_rejects_non_positive_quantity(context, catalog):
    """The ledger refuses zero quantities."""

    with pytest.raises(InvalidTransactionError) as excinfo:
        core_logic.record_wastage(context, core_logic.WastageCommand("i_tom", "b_hq", Decimal("0"), _at(1)))
    assert excinfo.value.constraint == "quantity"


def test_record_transfer_rejects_same_branch(context, catalog):
    """Transfers need two distinct branches."""

    with pytest.raises(InvalidTransactionError) as excinfo:
        core_logic.record_transfer(context, core_logic.TransferCommand("i_tom", "b_hq", "b_hq", Decimal("1"), _at(1)))
    assert excinfo.value.constraint == "distinct_branches"


def test_record_daily_entries_skips_zero_quantities(context, catalog):
    """Only non-zero columns of the intake sheet become transactions."""

    recorded = core_logic.record_daily_entries(
        context,
        "b_hq",
        [
            core_logic.DailyEntry("i_tom", received=Decimal("10"), used=Decimal("4")),
            core_logic.DailyEntry("i_shrimp", wastage=Decimal("1")),
            core_logic.DailyEntry("i_tom"),
        ],
        timestamp=_at(3),
    )

    assert [type(transaction) for transaction in recorded] == [
        ReceiveTransaction,
        UseTransaction,
        WastageTransaction,
    ]
    assert [transaction.notes for transaction in recorded] == ["Daily receive", "Daily use", "Wastage"]
    assert all(transaction.timestamp == _at(3) for transaction in recorded)


def test_record_daily_entries_unknown_branch(context, catalog):
    """The branch is validated before any entry is recorded."""

    with pytest.raises(MissingReferenceError):
        core_logic.record_daily_entries(context, "b_missing", [core_logic.DailyEntry("i_tom", used=Decimal("1"))])


def test_record_daily_entries_unknown_item_records_nothing(context, catalog):
    """One unknown item rejects the whole sheet and leaves the ledger untouched."""

    entries = [
        core_logic.DailyEntry("i_tom", received=Decimal("5")),
        core_logic.DailyEntry("ghost", used=Decimal("1")),
    ]

    with pytest.raises(MissingReferenceError):
        core_logic.record_daily_entries(context, "b_hq", entries, timestamp=_at(3))

    assert len(context.ledger) == 0


def test_record_daily_entries_invalid_quantity_records_nothing(context, catalog):
    """A negative quantity late in the sheet keeps earlier entries out of the ledger."""

    entries = [
        core_logic.DailyEntry("i_tom", received=Decimal("5"), used=Decimal("2")),
        core_logic.DailyEntry("i_shrimp", wastage=Decimal("-1")),
    ]

    with pytest.raises(InvalidTransactionError) as error:
        core_logic.record_daily_entries(context, "b_hq", entries, timestamp=_at(3))

    assert error.value.constraint == "quantity"
    assert context.ledger.read_all() == ()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@pytest.fixture
def busy_context(context, catalog):
    """Context whose ledger holds a small, out-of-order history."""

    commands = [
        core_logic.UseCommand("i_tom", "b_hq", Decimal("5"), _at(20)),
        core_logic.ReceiveCommand("i_tom", "b_hq", Decimal("25"), _at(19)),
        core_logic.TransferCommand("i_tom", "b_hq", "b_1", Decimal("3"), _at(21)),
        core_logic.UseCommand("i_tom", "b_hq", Decimal("5"), _at(25)),
        core_logic.TransferCommand("i_shrimp", "b_1", "b_hq", Decimal("2"), _at(22)),
        core_logic.ReceiveCommand("i_shrimp", "b_1", Decimal("6"), _at(18)),
    ]
    for command in commands:
        core_logic.record_transaction(context, command)
    return context


def test_list_transactions_sorted_by_timestamp(busy_context):
    """The log is returned chronologically regardless of insertion order."""

    timestamps = [transaction.timestamp for transaction in core_logic.list_transactions(busy_context)]
    assert timestamps == sorted(timestamps)
    assert len(timestamps) == 6


def test_transfer_history_newest_first(busy_context):
    """Transfers are listed newest first and can be limited to a branch."""

    history = core_logic.transfer_history(busy_context)
    assert [transfer.timestamp for transfer in history] == [_at(22), _at(21)]

    tomato_side = core_logic.transfer_history(busy_context, "b_1")
    assert len(tomato_side) == 2


def test_current_stock_through_context(busy_context):
    """current_stock folds the ledger snapshot for the item."""

    assert core_logic.current_stock(busy_context, "b_hq", "i_tom") == Decimal("12")
    assert core_logic.current_stock(busy_context, "b_1", "i_tom") == Decimal("3")
    assert core_logic.current_stock(busy_context, "b_1", "i_shrimp") == Decimal("4")
    assert core_logic.current_stock(busy_context, "b_hq", "unknown") == Decimal("0")


def test_stock_overview_and_low_stock_alerts(busy_context):
    """Items below their minimum are flagged."""

    rows = core_logic.stock_overview(busy_context, "b_hq", now=NOW)
    by_id = {row.item.item_id: row for row in rows}

    assert by_id["i_tom"].quantity == Decimal("12")
    assert by_id["i_tom"].is_low is False
    assert by_id["i_shrimp"].quantity == Decimal("2")
    assert by_id["i_shrimp"].is_low is False

    alerts = core_logic.low_stock_alerts(busy_context, "b_1", now=NOW)
    assert [row.item.item_id for row in alerts] == ["i_tom"]


def test_daily_record_through_context(busy_context):
    """daily_record defaults to a zero opening balance."""

    record = core_logic.daily_record(busy_context, "b_hq", "i_tom", date(2024, 5, 21))
    assert record.transfer_out == Decimal("3")
    assert record.start == Decimal("0")
    assert record.end == Decimal("-3")


def test_daily_record_with_custom_opening_balance(busy_context):
    """A pluggable lookup supplies the opening balance."""

    record = core_logic.daily_record(
        busy_context,
        "b_hq",
        "i_tom",
        date(2024, 5, 21),
        opening_balance_lookup=lambda branch, item, day: Decimal("20"),
    )
    assert record.end == Decimal("17")


def test_usage_history_through_context(busy_context):
    """usage_history groups use per day."""

    history = core_logic.usage_history(busy_context, branch_id="b_hq")
    assert [point.quantity for point in history["b_hq"]["i_tom"]] == [Decimal("5"), Decimal("5")]


def test_suggest_order_through_context(busy_context):
    """Two active days of 5 units and 12 on hand need no order."""

    # ceil(5 * 2 * 1.2 - 12) = 0
    assert core_logic.suggest_order(busy_context, "b_hq", "i_tom", now=NOW) == 0


def test_suggest_order_unknown_item_is_zero(context, catalog):
    """Suggestions for unknown items fall back to zero."""

    assert core_logic.suggest_order(context, "b_hq", "nope", now=NOW) == 0


def test_period_report_through_context(busy_context):
    """The monthly report prices use with each item's unit cost."""

    report = core_logic.period_report(busy_context, "b_hq", 2024, 5)

    assert report.lines[0].item.item_id == "i_tom"
    assert report.lines[0].used_quantity == Decimal("10")
    assert report.total_cost == Decimal("300")
    assert report.category_costs["Vegetable"] == Decimal("300")
