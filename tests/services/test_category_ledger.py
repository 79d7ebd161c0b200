"""Tests for the category ledger and its cascade helpers."""
from dataclasses import dataclass

import pytest

from tabshelf.schemas.storage import UNCATEGORIZED_KEY
from tabshelf.services.category_ledger import (
    CategoryLedger,
    cascade_remove,
    cascade_rename,
    order_with_uncategorized,
    remove_from_combined,
    rename_in_combined,
)
from tabshelf.services.exceptions import DuplicateNameError


@dataclass
class Item:
    url: str
    category: str | None = None


# =============================================================================
# CategoryLedger Tests
# =============================================================================


def test__of__missing_order_defaults_to_categories() -> None:
    ledger = CategoryLedger.of(["a", "b"], None)
    assert ledger.order == ["a", "b"]


def test__of__copies_lists() -> None:
    categories = ["a"]
    ledger = CategoryLedger.of(categories, None)
    ledger.add("b")
    assert categories == ["a"]


def test__add__appends_to_both_lists() -> None:
    ledger = CategoryLedger.of(["a"], ["a"])

    assert ledger.add("b") is True
    assert ledger.categories == ["a", "b"]
    assert ledger.order == ["a", "b"]


def test__add__existing_name_is_noop() -> None:
    ledger = CategoryLedger.of(["a"], ["a"])

    assert ledger.add("a") is False
    assert ledger.categories == ["a"]
    assert ledger.order == ["a"]


def test__remove__removes_from_both_lists() -> None:
    ledger = CategoryLedger.of(["a", "b"], ["b", "a"])

    assert ledger.remove("a") is True
    assert ledger.categories == ["b"]
    assert ledger.order == ["b"]


def test__remove__prunes_stale_order_entries() -> None:
    ledger = CategoryLedger.of(["a"], ["ghost", "a"])

    assert ledger.remove("ghost") is False
    assert ledger.order == ["a"]


def test__rename__substitutes_in_both_lists() -> None:
    ledger = CategoryLedger.of(["a", "b"], ["b", "a"])

    assert ledger.rename("a", "c") is True
    assert ledger.categories == ["c", "b"]
    assert ledger.order == ["b", "c"]


def test__rename__collision_raises_and_changes_nothing() -> None:
    ledger = CategoryLedger.of(["a", "b"], ["a", "b"])

    with pytest.raises(DuplicateNameError) as exc_info:
        ledger.rename("a", "b")

    assert exc_info.value.name == "b"
    assert "'b' already exists" in str(exc_info.value)
    assert ledger.categories == ["a", "b"]
    assert ledger.order == ["a", "b"]


def test__rename__missing_old_name_returns_false() -> None:
    ledger = CategoryLedger.of(["a"], ["a"])
    assert ledger.rename("x", "y") is False
    assert ledger.categories == ["a"]


def test__reorder__replaces_order_verbatim() -> None:
    ledger = CategoryLedger.of(["a", "b"], ["a", "b"])
    ledger.reorder(["b", "a", "zzz"])
    assert ledger.order == ["b", "a", "zzz"]
    assert not ledger.is_consistent()


def test__is_consistent__permutation() -> None:
    assert CategoryLedger.of(["a", "b"], ["b", "a"]).is_consistent()
    assert not CategoryLedger.of(["a", "b"], ["a", "a", "b"]).is_consistent()


# =============================================================================
# Cascade Tests
# =============================================================================


def test__cascade_remove__moves_entries_to_uncategorized() -> None:
    items = [Item("u1", "a"), Item("u2", "b"), Item("u3", "a")]

    assert cascade_remove(items, "a", "category") == 2
    assert [i.category for i in items] == [None, "b", None]


def test__cascade_rename__repoints_entries() -> None:
    items = [Item("u1", "a"), Item("u2", "b")]

    assert cascade_rename(items, "a", "c", "category") == 1
    assert [i.category for i in items] == ["c", "b"]


# =============================================================================
# Combined order Tests
# =============================================================================


def test__order_with_uncategorized__keeps_stored_position() -> None:
    result = order_with_uncategorized(["a", "b"], ["b", UNCATEGORIZED_KEY, "a"], True)
    assert result == ["b", UNCATEGORIZED_KEY, "a"]


def test__order_with_uncategorized__appends_missing_categories() -> None:
    result = order_with_uncategorized(["a", "b", "c"], ["b", "a"], False)
    assert result == ["b", "a", "c"]


def test__order_with_uncategorized__drops_unknown_and_empty_bucket() -> None:
    result = order_with_uncategorized(["a"], ["gone", UNCATEGORIZED_KEY, "a"], False)
    assert result == ["a"]


def test__order_with_uncategorized__appends_bucket_last_when_unpositioned() -> None:
    assert order_with_uncategorized(["a"], None, True) == ["a", UNCATEGORIZED_KEY]


def test__rename_in_combined__and_remove_from_combined() -> None:
    combined = ["a", UNCATEGORIZED_KEY, "b"]

    assert rename_in_combined(combined, "a", "c") == ["c", UNCATEGORIZED_KEY, "b"]
    assert remove_from_combined(combined, "b") == ["a", UNCATEGORIZED_KEY]
    assert rename_in_combined(None, "a", "c") is None
    assert remove_from_combined(None, "a") is None
