"""
Category ledger: the categories of one owner (a domain group or a project)
and their display order.

The ledger only manages the two name lists. Entries that reference a
category by name are rewritten by the owner using the cascade helpers, driven
by the ledger's return values.
"""
from collections.abc import Iterable
from dataclasses import dataclass, field

from tabshelf.schemas.storage import UNCATEGORIZED_KEY
from tabshelf.services.exceptions import DuplicateNameError


@dataclass
class CategoryLedger:
    """Mutable view over an owner's ``(categories, order)`` pair."""

    categories: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    @classmethod
    def of(cls, categories: list[str] | None, order: list[str] | None) -> "CategoryLedger":
        """Build a ledger from stored lists; a missing order defaults to category order."""
        categories = list(categories or [])
        return cls(categories=categories, order=list(order) if order is not None else list(categories))

    def add(self, name: str) -> bool:
        """
        Append a category to both lists.

        Returns:
            False (and changes nothing) if the name is already present.
        """
        if name in self.categories:
            return False
        self.categories.append(name)
        if name not in self.order:
            self.order.append(name)
        return True

    def remove(self, name: str) -> bool:
        """
        Remove a category from both lists, pruning stale order entries too.

        Returns:
            True when the category existed. The caller must then move every
            entry referencing ``name`` to uncategorized.
        """
        existed = name in self.categories
        self.categories = [c for c in self.categories if c != name]
        self.order = [c for c in self.order if c != name]
        return existed

    def rename(self, old: str, new: str, kind: str = "Category") -> bool:
        """
        Substitute ``old`` with ``new`` in both lists.

        Returns:
            True when ``old`` existed and was renamed.

        Raises:
            DuplicateNameError: If ``new`` already exists. Nothing is changed.
        """
        if old == new or old not in self.categories:
            return False
        if new in self.categories:
            raise DuplicateNameError(kind, new)
        self.categories = [new if c == old else c for c in self.categories]
        self.order = [new if c == old else c for c in self.order]
        return True

    def reorder(self, new_order: list[str]) -> None:
        """Replace the display order verbatim. Callers own the permutation invariant."""
        self.order = list(new_order)

    def is_consistent(self) -> bool:
        """Whether the order is exactly a permutation of the categories."""
        return sorted(self.order) == sorted(self.categories) and len(set(self.order)) == len(self.order)


def cascade_remove(entries: Iterable[object], name: str, attr: str) -> int:
    """
    Move every entry whose ``attr`` equals ``name`` to uncategorized.

    Returns:
        Number of entries rewritten.
    """
    count = 0
    for entry in entries:
        if getattr(entry, attr) == name:
            setattr(entry, attr, None)
            count += 1
    return count


def cascade_rename(entries: Iterable[object], old: str, new: str, attr: str) -> int:
    """
    Point every entry whose ``attr`` equals ``old`` at ``new``.

    Returns:
        Number of entries rewritten.
    """
    count = 0
    for entry in entries:
        if getattr(entry, attr) == old:
            setattr(entry, attr, new)
            count += 1
    return count


def order_with_uncategorized(
    order: list[str],
    combined: list[str] | None,
    has_uncategorized: bool,
) -> list[str]:
    """
    Build the display order including the virtual uncategorized bucket.

    The stored combined order wins where it exists; categories missing from
    it are appended, names no longer in ``order`` are dropped, and the
    uncategorized bucket is present only when it has entries (appended last
    if it was never positioned).
    """
    known = set(order)
    result: list[str] = []
    for name in combined or []:
        if name == UNCATEGORIZED_KEY:
            if has_uncategorized and name not in result:
                result.append(name)
        elif name in known and name not in result:
            result.append(name)
    for name in order:
        if name not in result:
            result.append(name)
    if has_uncategorized and UNCATEGORIZED_KEY not in result:
        result.append(UNCATEGORIZED_KEY)
    return result


def rename_in_combined(combined: list[str] | None, old: str, new: str) -> list[str] | None:
    if combined is None:
        return None
    return [new if name == old else name for name in combined]


def remove_from_combined(combined: list[str] | None, name: str) -> list[str] | None:
    if combined is None:
        return None
    return [n for n in combined if n != name]
