from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Optional

from taxgroupcalc import config
from taxgroupcalc.errors import ValidationError

_UNSET: Any = object()


class TaxType(str, Enum):
    PERCENTAGE = "PERCENTAGE"  # rate is a fraction: 0.15 == 15%
    FIXED = "FIXED"  # rate is a flat currency amount


def to_decimal(value: Any) -> Decimal:
    """
    Decimal from Decimal/int/str/float. Floats go through str() so 0.1 stays 0.1.
    Raises ValueError for anything that is not a number.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e


def decimal_places(value: Decimal) -> int:
    """Digits after the point, ignoring trailing zeros: 1.50 -> 1, 100 -> 0."""
    _, digits, exponent = value.as_tuple()
    if not isinstance(exponent, int) or exponent >= 0:
        return 0
    significant = "".join(map(str, digits)).rstrip("0")
    if not significant:
        return 0
    return max(0, -(exponent + len(digits) - len(significant)))


def _clean_name(name: Any, label: str) -> str:
    s = "" if name is None else str(name).strip()
    if not s:
        raise ValidationError(f"{label} name is required")
    if len(s) > config.NAME_MAX_LENGTH:
        raise ValidationError(f"{label} name must not exceed {config.NAME_MAX_LENGTH} characters")
    return s


def _parse_type(value: Any) -> TaxType:
    if isinstance(value, TaxType):
        return value
    try:
        return TaxType(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(t.value for t in TaxType)
        raise ValidationError(f"invalid tax type: {value!r} (expected one of {allowed})") from None


def _parse_rate(value: Any, tax_type: TaxType) -> Decimal:
    try:
        rate = to_decimal(value)
    except ValueError:
        raise ValidationError(f"tax rate must be a number, got {value!r}") from None
    if not rate.is_finite():
        raise ValidationError("tax rate must be finite")
    if rate < 0:
        raise ValidationError("tax rate must be 0 or greater")
    if tax_type is TaxType.PERCENTAGE and rate > 1:
        raise ValidationError("percentage rate is a fraction and must not exceed 1 (100%)")
    if rate > config.AMOUNT_MAX:
        raise ValidationError(f"tax rate must not exceed {config.AMOUNT_MAX}")
    if decimal_places(rate) > config.DECIMAL_PLACES_MAX:
        raise ValidationError(f"tax rate must have at most {config.DECIMAL_PLACES_MAX} decimal places")
    return rate


@dataclass(frozen=True)
class TaxRule:
    """
    One tax definition. Build it with `TaxRule.create(...)` so the invariants hold:
      - name: non-empty, at most NAME_MAX_LENGTH characters
      - rate >= 0 (and <= 1 for PERCENTAGE), at most DECIMAL_PLACES_MAX decimals
    """

    id: str
    name: str
    type: TaxType
    rate: Decimal
    is_active: bool = True

    @classmethod
    def create(
        cls,
        id: str,
        name: Any,
        type: Any,
        rate: Any,
        is_active: bool = True,
    ) -> "TaxRule":
        tax_type = _parse_type(type)
        return cls(
            id=str(id),
            name=_clean_name(name, "Tax"),
            type=tax_type,
            rate=_parse_rate(rate, tax_type),
            is_active=bool(is_active),
        )

    def updated(
        self,
        name: Any = _UNSET,
        type: Any = _UNSET,
        rate: Any = _UNSET,
        is_active: Any = _UNSET,
    ) -> "TaxRule":
        """Return a re-validated copy with the given fields changed."""
        return TaxRule.create(
            id=self.id,
            name=self.name if name is _UNSET else name,
            type=self.type if type is _UNSET else type,
            rate=self.rate if rate is _UNSET else rate,
            is_active=self.is_active if is_active is _UNSET else is_active,
        )


def _check_tax_ids(tax_ids: Iterable[Any], allow_empty: bool) -> tuple[str, ...]:
    ids = tuple(str(t) for t in tax_ids)
    if not ids and not allow_empty:
        raise ValidationError("At least one tax is required")
    if len(ids) > config.MAX_TAXES_PER_GROUP:
        raise ValidationError(f"Maximum {config.MAX_TAXES_PER_GROUP} taxes per group")
    seen: set[str] = set()
    dupes = []
    for t in ids:
        if t in seen and t not in dupes:
            dupes.append(t)
        seen.add(t)
    if dupes:
        raise ValidationError("Duplicate tax ids in group", errors=[{"tax_id": d} for d in dupes])
    return ids


def _clean_description(description: Any) -> Optional[str]:
    if description is None:
        return None
    s = str(description)
    if len(s) > config.DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Description must not exceed {config.DESCRIPTION_MAX_LENGTH} characters"
        )
    return s


@dataclass(frozen=True)
class TaxGroup:
    """
    Named, ordered set of tax ids. The group only references rules by id;
    it never owns them.

    Creation needs at least one tax id. An update may empty the list.
    """

    id: str
    name: str
    tax_ids: tuple[str, ...] = field(default_factory=tuple)
    description: Optional[str] = None
    is_active: bool = True

    @classmethod
    def create(
        cls,
        id: str,
        name: Any,
        tax_ids: Iterable[Any],
        description: Any = None,
        is_active: bool = True,
    ) -> "TaxGroup":
        return cls(
            id=str(id),
            name=_clean_name(name, "Tax group"),
            tax_ids=_check_tax_ids(tax_ids, allow_empty=False),
            description=_clean_description(description),
            is_active=bool(is_active),
        )

    def updated(
        self,
        name: Any = _UNSET,
        tax_ids: Any = _UNSET,
        description: Any = _UNSET,
        is_active: Any = _UNSET,
    ) -> "TaxGroup":
        changes: dict[str, Any] = {}
        if name is not _UNSET:
            changes["name"] = _clean_name(name, "Tax group")
        if tax_ids is not _UNSET:
            changes["tax_ids"] = _check_tax_ids(tax_ids, allow_empty=True)
        if description is not _UNSET:
            changes["description"] = _clean_description(description)
        if is_active is not _UNSET:
            changes["is_active"] = bool(is_active)
        return replace(self, **changes)
