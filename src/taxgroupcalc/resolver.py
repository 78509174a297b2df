# resolver.py
"""
Turns a tax group id into the ordered list of rules the engine consumes.

Contract (every implementation):
- rules come back in the group's order
- ids whose tax no longer exists (or is soft-deleted) are skipped, not an error
- inactive taxes are skipped
- a missing, deleted or inactive GROUP raises NotFoundError

`resolve_tax_ids` serves ad-hoc calculations from an explicit id list. There
the caller named each tax on purpose, so an unknown or inactive id raises
NotFoundError instead of being skipped.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Protocol

from sqlalchemy.orm import Session

from .errors import NotFoundError
from .logging_config import setup_logger
from .queries import find_tax_group_by_id, find_taxes_by_ids
from .rules.base import TaxGroup, TaxRule

logger = setup_logger(__name__)


class TaxGroupResolver(Protocol):
    def resolve_group(self, group_id: str) -> tuple[TaxGroup, list[TaxRule]]: ...
    def resolve(self, group_id: str) -> list[TaxRule]: ...
    def resolve_tax_ids(self, tax_ids: Iterable[str]) -> list[TaxRule]: ...


def _active_in_order(group: TaxGroup, by_id: Mapping[str, TaxRule]) -> list[TaxRule]:
    rules: list[TaxRule] = []
    for tax_id in group.tax_ids:
        rule = by_id.get(tax_id)
        if rule is None:
            logger.warning(f"tax group {group.id}: tax {tax_id} no longer exists, skipped")
            continue
        if not rule.is_active:
            logger.debug(f"tax group {group.id}: tax {tax_id} inactive, skipped")
            continue
        rules.append(rule)
    return rules


def _explicit(tax_ids: Iterable[str], by_id: Mapping[str, TaxRule]) -> list[TaxRule]:
    rules: list[TaxRule] = []
    bad: list[str] = []
    for tax_id in tax_ids:
        rule = by_id.get(tax_id)
        if rule is None or not rule.is_active:
            bad.append(tax_id)
        else:
            rules.append(rule)
    if bad:
        raise NotFoundError(
            "One or more tax IDs are invalid or inactive", errors=[{"tax_id": t} for t in bad]
        )
    return rules


class SqlTaxGroupResolver:
    """Resolver over the SQLAlchemy store (see queries.py)."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve_group(self, group_id: str) -> tuple[TaxGroup, list[TaxRule]]:
        row = find_tax_group_by_id(self.session, group_id)
        if not row.is_active:
            raise NotFoundError(f"Tax group is inactive: {group_id}")
        group = row.to_value()
        taxes = find_taxes_by_ids(self.session, group.tax_ids)
        return group, _active_in_order(group, {i: t.to_rule() for i, t in taxes.items()})

    def resolve(self, group_id: str) -> list[TaxRule]:
        return self.resolve_group(group_id)[1]

    def resolve_tax_ids(self, tax_ids: Iterable[str]) -> list[TaxRule]:
        ids = list(tax_ids)
        taxes = find_taxes_by_ids(self.session, ids)
        return _explicit(ids, {i: t.to_rule() for i, t in taxes.items()})


class InMemoryTaxGroupResolver:
    """Resolver over plain dicts; handy for embedding the engine and for tests."""

    def __init__(self, rules: Iterable[TaxRule] = (), groups: Iterable[TaxGroup] = ()) -> None:
        self.rules: dict[str, TaxRule] = {r.id: r for r in rules}
        self.groups: dict[str, TaxGroup] = {g.id: g for g in groups}

    def resolve_group(self, group_id: str) -> tuple[TaxGroup, list[TaxRule]]:
        group = self.groups.get(group_id)
        if group is None:
            raise NotFoundError(f"Tax group not found: {group_id}")
        if not group.is_active:
            raise NotFoundError(f"Tax group is inactive: {group_id}")
        return group, _active_in_order(group, self.rules)

    def resolve(self, group_id: str) -> list[TaxRule]:
        return self.resolve_group(group_id)[1]

    def resolve_tax_ids(self, tax_ids: Iterable[str]) -> list[TaxRule]:
        return _explicit(list(tax_ids), self.rules)
