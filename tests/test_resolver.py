"""Test dependency resolution."""

from sheetplan.engine.resolver import (
    resolve_precise_dependencies,
    resolve_table_dependencies,
    split_dependency,
)

FIELD_MAP = {
    "Orders": {"Quantity": "step-2", "UnitPrice": "step-2", "Amount": "step-3"},
    "Products": {"SKU": "step-5", "Price": "step-6"},
}


def test_split_dependency():
    assert split_dependency("Orders!Quantity") == ("Orders", "Quantity")
    assert split_dependency("Orders") is None
    assert split_dependency("a!b!c") is None


def test_precise_dependencies_resolve_in_order():
    ids = resolve_precise_dependencies(["Orders!Amount", "Products!Price"], FIELD_MAP)
    assert ids == ["step-3", "step-6"]


def test_precise_dependencies_deduplicated():
    ids = resolve_precise_dependencies(
        ["Orders!Quantity", "Orders!Quantity", "Orders!UnitPrice", "Orders!Amount"], FIELD_MAP
    )
    assert ids == ["step-2", "step-3"]
    assert len(ids) == len(set(ids))


def test_malformed_tokens_skipped():
    assert resolve_precise_dependencies(["Orders", "a!b!c", ""], FIELD_MAP) == []


def test_unresolved_dependency_logged(caplog):
    with caplog.at_level("WARNING"):
        ids = resolve_precise_dependencies(["Orders!Missing"], FIELD_MAP)
    assert ids == []
    assert "Orders!Missing" in caplog.text


def test_table_dependencies_use_any_field_step():
    assert resolve_table_dependencies(["Products"], FIELD_MAP) == ["step-5"]
    assert resolve_table_dependencies(["Orders", "Products", "Orders"], FIELD_MAP) == ["step-2", "step-5"]


def test_unknown_table_skipped():
    assert resolve_table_dependencies(["Customers"], FIELD_MAP) == []
