"""
CRUD queries for taxes, tax groups and tax exemptions.

Every write validates through rules.base first (same checks the engine relies
on), then persists and commits. Deletes are soft: `deleted_at` is set and the
row drops out of every lookup except restore.
"""

from __future__ import annotations

import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from .errors import NotFoundError, ValidationError
from .logging_config import setup_logger
from .models import Tax, TaxExemption, TaxGroup, TaxGroupTax, utcnow
from .rules.base import TaxGroup as TaxGroupValue
from .rules.base import TaxRule, TaxType
from .schemas import (
    ListQuery,
    TaxCreate,
    TaxExemptionCreate,
    TaxExemptionListQuery,
    TaxExemptionUpdate,
    TaxGroupCreate,
    TaxGroupListQuery,
    TaxGroupUpdate,
    TaxListQuery,
    TaxUpdate,
)

logger = setup_logger(__name__)


def _page(session: Session, stmt, filters: ListQuery | TaxExemptionListQuery, order_by) -> tuple[list, int]:
    """Run `stmt` with count + offset/limit. Returns (items, total)."""
    total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = session.scalars(
        stmt.order_by(*order_by).offset((filters.page - 1) * filters.limit).limit(filters.limit)
    ).all()
    return list(rows), total


def _apply_common_filters(stmt, model, filters: ListQuery):
    if filters.is_active is not None:
        stmt = stmt.where(model.is_active.is_(filters.is_active))
    if filters.search:
        # % and _ in the search text match literally
        term = filters.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        stmt = stmt.where(model.name.ilike(f"%{term}%", escape="\\"))
    return stmt


# -----------------------------------------------------------------------------
# Taxes
# -----------------------------------------------------------------------------
def find_taxes(session: Session, filters: TaxListQuery) -> tuple[list[Tax], int]:
    stmt = select(Tax).where(Tax.deleted_at.is_(None))
    stmt = _apply_common_filters(stmt, Tax, filters)
    if filters.type is not None:
        stmt = stmt.where(Tax.type == filters.type.value)
    direction = asc if filters.order == "asc" else desc
    return _page(session, stmt, filters, [direction(getattr(Tax, filters.sort)), Tax.id.asc()])


def find_active_taxes(session: Session) -> list[Tax]:
    stmt = (
        select(Tax)
        .where(Tax.deleted_at.is_(None), Tax.is_active.is_(True))
        .order_by(Tax.name.asc(), Tax.id.asc())
    )
    return list(session.scalars(stmt).all())


def find_taxes_by_ids(session: Session, tax_ids: Iterable[str]) -> dict[str, Tax]:
    """Existing (not deleted) taxes keyed by id. Missing ids are simply absent."""
    ids = list(tax_ids)
    if not ids:
        return {}
    stmt = select(Tax).where(Tax.id.in_(ids), Tax.deleted_at.is_(None))
    return {t.id: t for t in session.scalars(stmt).all()}


def find_tax_by_id(session: Session, tax_id: str, include_deleted: bool = False) -> Tax:
    tax = session.get(Tax, tax_id)
    if tax is None or (tax.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"Tax not found: {tax_id}")
    return tax


def create_tax(session: Session, data: TaxCreate) -> Tax:
    # validates name/type/rate; id is assigned by the ORM
    rule = TaxRule.create(id="new", name=data.name, type=data.type, rate=data.rate, is_active=data.is_active)
    tax = Tax(name=rule.name, type=rule.type.value, rate=rule.rate, is_active=rule.is_active)
    session.add(tax)
    session.commit()
    session.refresh(tax)
    logger.info(f"created tax {tax.id} ({tax.name}, {tax.type} {tax.rate})")
    return tax


def update_tax(session: Session, tax_id: str, data: TaxUpdate) -> Tax:
    tax = find_tax_by_id(session, tax_id)
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    rule = tax.to_rule().updated(**changes)
    tax.name = rule.name
    tax.type = rule.type.value
    tax.rate = rule.rate
    tax.is_active = rule.is_active
    session.commit()
    session.refresh(tax)
    logger.info(f"updated tax {tax.id}: {sorted(changes)}")
    return tax


def delete_tax(session: Session, tax_id: str) -> Tax:
    """Soft delete. Groups keep the id; resolution skips it from now on."""
    tax = find_tax_by_id(session, tax_id)
    tax.deleted_at = utcnow()
    session.commit()
    logger.info(f"deleted tax {tax.id}")
    return tax


def restore_tax(session: Session, tax_id: str) -> Tax:
    tax = find_tax_by_id(session, tax_id, include_deleted=True)
    if tax.deleted_at is None:
        raise ValidationError(f"Tax is not deleted: {tax_id}")
    tax.deleted_at = None
    session.commit()
    session.refresh(tax)
    logger.info(f"restored tax {tax.id}")
    return tax


def set_tax_active(session: Session, tax_id: str, active: bool) -> Tax:
    tax = find_tax_by_id(session, tax_id)
    tax.is_active = active
    session.commit()
    session.refresh(tax)
    logger.info(f"{'enabled' if active else 'disabled'} tax {tax.id}")
    return tax


def get_tax_statistics(session: Session, recent: int = 5) -> dict:
    """
    Counts over non-deleted taxes: total, active/inactive, per type, the
    average rate per type and the `recent` newest taxes.
    """
    live = Tax.deleted_at.is_(None)
    total = session.scalar(select(func.count()).select_from(Tax).where(live)) or 0
    active = session.scalar(select(func.count()).select_from(Tax).where(live, Tax.is_active.is_(True))) or 0

    by_type = {t.value: 0 for t in TaxType}
    average_rate = {t.value: Decimal("0") for t in TaxType}
    rows = session.execute(select(Tax.type, func.count(), func.avg(Tax.rate)).where(live).group_by(Tax.type))
    for tax_type, count, avg in rows:
        by_type[tax_type] = count
        if avg is not None:
            average_rate[tax_type] = Decimal(str(avg)).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)

    newest = session.scalars(
        select(Tax).where(live).order_by(Tax.created_at.desc(), Tax.id.asc()).limit(recent)
    ).all()
    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_type": by_type,
        "average_rate": average_rate,
        "recent_taxes": list(newest),
    }


# -----------------------------------------------------------------------------
# Tax groups
# -----------------------------------------------------------------------------
def _ensure_taxes_exist(session: Session, tax_ids: tuple[str, ...]) -> None:
    found = find_taxes_by_ids(session, tax_ids)
    missing = [t for t in tax_ids if t not in found]
    if missing:
        raise ValidationError(
            "One or more tax IDs are invalid", errors=[{"tax_id": t} for t in missing]
        )


def _set_members(session: Session, group: TaxGroup, tax_ids: tuple[str, ...]) -> None:
    if group.members:
        group.members.clear()
        # old rows must be gone before re-inserting the same (group, tax) pairs
        session.flush()
    for index, tax_id in enumerate(tax_ids):
        group.members.append(TaxGroupTax(tax_id=tax_id, order_index=index))


def find_tax_groups(session: Session, filters: TaxGroupListQuery) -> tuple[list[TaxGroup], int]:
    stmt = select(TaxGroup).where(TaxGroup.deleted_at.is_(None))
    stmt = _apply_common_filters(stmt, TaxGroup, filters)
    direction = asc if filters.order == "asc" else desc
    return _page(session, stmt, filters, [direction(getattr(TaxGroup, filters.sort)), TaxGroup.id.asc()])


def find_active_tax_groups(session: Session) -> list[TaxGroup]:
    stmt = (
        select(TaxGroup)
        .where(TaxGroup.deleted_at.is_(None), TaxGroup.is_active.is_(True))
        .order_by(TaxGroup.name.asc(), TaxGroup.id.asc())
    )
    return list(session.scalars(stmt).all())


def find_tax_group_by_id(session: Session, group_id: str, include_deleted: bool = False) -> TaxGroup:
    group = session.get(TaxGroup, group_id)
    if group is None or (group.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"Tax group not found: {group_id}")
    return group


def create_tax_group(session: Session, data: TaxGroupCreate) -> TaxGroup:
    value = TaxGroupValue.create(
        id="new",
        name=data.name,
        tax_ids=data.tax_ids,
        description=data.description,
        is_active=data.is_active,
    )
    _ensure_taxes_exist(session, value.tax_ids)

    group = TaxGroup(name=value.name, description=value.description, is_active=value.is_active)
    _set_members(session, group, value.tax_ids)
    session.add(group)
    session.commit()
    session.refresh(group)
    logger.info(f"created tax group {group.id} ({group.name}) with {len(value.tax_ids)} taxes")
    return group


def update_tax_group(session: Session, group_id: str, data: TaxGroupUpdate) -> TaxGroup:
    group = find_tax_group_by_id(session, group_id)
    changes = data.model_dump(exclude_unset=True)
    # name/is_active cannot be nulled; description can
    changes = {k: v for k, v in changes.items() if v is not None or k == "description"}

    value = group.to_value().updated(**changes)
    if "tax_ids" in changes:
        _ensure_taxes_exist(session, value.tax_ids)
        _set_members(session, group, value.tax_ids)

    group.name = value.name
    group.description = value.description
    group.is_active = value.is_active
    group.updated_at = utcnow()
    session.commit()
    session.refresh(group)
    logger.info(f"updated tax group {group.id}: {sorted(changes)}")
    return group


def delete_tax_group(session: Session, group_id: str) -> TaxGroup:
    group = find_tax_group_by_id(session, group_id)
    group.deleted_at = utcnow()
    session.commit()
    logger.info(f"deleted tax group {group.id}")
    return group


def restore_tax_group(session: Session, group_id: str) -> TaxGroup:
    group = find_tax_group_by_id(session, group_id, include_deleted=True)
    if group.deleted_at is None:
        raise ValidationError(f"Tax group is not deleted: {group_id}")
    group.deleted_at = None
    session.commit()
    session.refresh(group)
    logger.info(f"restored tax group {group.id}")
    return group


def set_tax_group_active(session: Session, group_id: str, active: bool) -> TaxGroup:
    group = find_tax_group_by_id(session, group_id)
    group.is_active = active
    session.commit()
    session.refresh(group)
    logger.info(f"{'enabled' if active else 'disabled'} tax group {group.id}")
    return group


# -----------------------------------------------------------------------------
# Tax exemptions
# -----------------------------------------------------------------------------
def create_tax_exemption(session: Session, data: TaxExemptionCreate) -> TaxExemption:
    if data.tax_id is not None:
        find_tax_by_id(session, data.tax_id)
    exemption = TaxExemption(**data.model_dump())
    session.add(exemption)
    session.commit()
    session.refresh(exemption)
    logger.info(
        f"created tax exemption {exemption.id} for contact {exemption.contact_id} "
        f"(tax={exemption.tax_id or 'ALL'})"
    )
    return exemption


def find_tax_exemptions(session: Session, filters: TaxExemptionListQuery) -> tuple[list[TaxExemption], int]:
    stmt = select(TaxExemption).where(TaxExemption.deleted_at.is_(None))
    if filters.contact_id:
        stmt = stmt.where(TaxExemption.contact_id == filters.contact_id)
    if filters.tax_id:
        stmt = stmt.where(TaxExemption.tax_id == filters.tax_id)
    return _page(session, stmt, filters, [TaxExemption.created_at.desc(), TaxExemption.id.asc()])


def find_tax_exemption_by_id(session: Session, exemption_id: str, include_deleted: bool = False) -> TaxExemption:
    exemption = session.get(TaxExemption, exemption_id)
    if exemption is None or (exemption.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"Tax exemption not found: {exemption_id}")
    return exemption


def update_tax_exemption(session: Session, exemption_id: str, data: TaxExemptionUpdate) -> TaxExemption:
    exemption = find_tax_exemption_by_id(session, exemption_id)
    changes = data.model_dump(exclude_unset=True)
    # tax_id, certificate fields and reason can be nulled; the rest cannot
    nullable = {"tax_id", "certificate_number", "certificate_expiry", "reason"}
    changes = {k: v for k, v in changes.items() if v is not None or k in nullable}
    if changes.get("tax_id") is not None:
        find_tax_by_id(session, changes["tax_id"])
    for key, value in changes.items():
        setattr(exemption, key, value)
    session.commit()
    session.refresh(exemption)
    logger.info(f"updated tax exemption {exemption.id}: {sorted(changes)}")
    return exemption


def restore_tax_exemption(session: Session, exemption_id: str) -> TaxExemption:
    exemption = find_tax_exemption_by_id(session, exemption_id, include_deleted=True)
    if exemption.deleted_at is None:
        raise ValidationError(f"Tax exemption is not deleted: {exemption_id}")
    exemption.deleted_at = None
    session.commit()
    session.refresh(exemption)
    logger.info(f"restored tax exemption {exemption.id}")
    return exemption


def set_tax_exemption_active(session: Session, exemption_id: str, active: bool) -> TaxExemption:
    exemption = find_tax_exemption_by_id(session, exemption_id)
    exemption.is_active = active
    session.commit()
    session.refresh(exemption)
    logger.info(f"{'enabled' if active else 'disabled'} tax exemption {exemption.id}")
    return exemption


def delete_tax_exemption(session: Session, exemption_id: str) -> TaxExemption:
    exemption = find_tax_exemption_by_id(session, exemption_id)
    exemption.deleted_at = utcnow()
    session.commit()
    logger.info(f"deleted tax exemption {exemption.id}")
    return exemption


def exempt_tax_ids_for(
    session: Session,
    contact_id: Optional[str],
    tax_ids: Iterable[str],
    today: Optional[datetime.date] = None,
) -> set[str]:
    """
    Subset of `tax_ids` the contact is exempt from: active, not deleted, not
    expired exemptions whose tax_id is NULL (all taxes) or matches.
    """
    ids = list(tax_ids)
    if not contact_id or not ids:
        return set()
    today = today or datetime.date.today()
    stmt = select(TaxExemption).where(
        TaxExemption.contact_id == contact_id,
        TaxExemption.deleted_at.is_(None),
        TaxExemption.is_active.is_(True),
    )
    exemptions = [e for e in session.scalars(stmt).all() if not e.is_expired(today)]
    return {t for t in ids if any(e.applies_to(t) for e in exemptions)}
