"""
Pydantic schemas (data models) used by the API.
- These define the structure and types of the data we accept/return.
- Business invariants (name length, rate bounds, duplicate tax ids) are checked
  by rules.base so the same checks apply outside HTTP; these schemas only parse.

Decimals are serialized as plain strings ("17.00", "0.15") to avoid float drift
on the wire.
"""

from __future__ import annotations

import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_serializer,
    field_validator,
)

from . import config
from .rules.base import TaxType
from .tax_engine import TaxCalculationResult


def dec_to_str(x: Decimal | None) -> str | None:
    if x is None:
        return None
    s = format(x, "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def money_to_str(x: Decimal) -> str:
    """Currency amounts keep their minor-unit digits: 117 -> "117.00"."""
    q = Decimal(1).scaleb(-config.CURRENCY_DP)
    return format(x.quantize(q, rounding=ROUND_HALF_UP), "f")


def _normalize_type(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().upper()
    return v


# -----------------------------------------------------------------------------
# Listing / pagination
# -----------------------------------------------------------------------------
class ListQuery(BaseModel):
    page: int = Field(config.PAGE_DEFAULT, ge=1)
    limit: int = Field(config.LIMIT_DEFAULT, ge=1, le=config.LIMIT_MAX)
    order: Literal["asc", "desc"] = "asc"
    search: Optional[str] = None
    is_active: Optional[bool] = None


class TaxListQuery(ListQuery):
    sort: Literal["name", "type", "rate", "is_active", "created_at", "updated_at"] = "name"
    type: Optional[TaxType] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v: Any) -> Any:
        return _normalize_type(v)


class TaxGroupListQuery(ListQuery):
    sort: Literal["name", "is_active", "created_at", "updated_at"] = "name"


class TaxExemptionListQuery(BaseModel):
    page: int = Field(config.PAGE_DEFAULT, ge=1)
    limit: int = Field(config.LIMIT_DEFAULT, ge=1, le=config.LIMIT_MAX)
    contact_id: Optional[str] = None
    tax_id: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit)


class PageOut(BaseModel):
    items: List[Any]
    pagination: Pagination


# -----------------------------------------------------------------------------
# Taxes
# -----------------------------------------------------------------------------
class TaxCreate(BaseModel):
    name: str
    type: TaxType = TaxType.PERCENTAGE
    rate: Decimal = Field(..., description="Fraction for PERCENTAGE (0.15 = 15%), flat amount for FIXED")
    is_active: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v: Any) -> Any:
        return _normalize_type(v)


class TaxUpdate(BaseModel):
    """
    Partial update – all fields optional.
    """

    name: Optional[str] = None
    type: Optional[TaxType] = None
    rate: Optional[Decimal] = None
    is_active: Optional[bool] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v: Any) -> Any:
        return _normalize_type(v)


class TaxRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: TaxType
    rate: Decimal
    is_active: bool
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    @field_serializer("rate")
    def _rate_to_str(self, v: Decimal) -> str | None:
        return dec_to_str(v)


class TaxStatistics(BaseModel):
    total: int
    active: int
    inactive: int
    by_type: Dict[str, int]
    # per type: fractions and flat amounts do not average together
    average_rate: Dict[str, Decimal]
    recent_taxes: List[TaxRead]

    @field_serializer("average_rate")
    def _rates_to_str(self, v: Dict[str, Decimal]) -> Dict[str, str | None]:
        return {k: dec_to_str(r) for k, r in v.items()}


class TaxSummary(BaseModel):
    """Tax as embedded in a group payload."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: TaxType
    rate: Decimal
    is_active: bool

    @field_serializer("rate")
    def _rate_to_str(self, v: Decimal) -> str | None:
        return dec_to_str(v)


# -----------------------------------------------------------------------------
# Tax groups
# -----------------------------------------------------------------------------
class TaxGroupCreate(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    tax_ids: List[str] = Field(default_factory=list, description="Ordered; order drives the breakdown")


class TaxGroupUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    tax_ids: Optional[List[str]] = None


class TaxGroupRead(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    tax_ids: List[str]
    # only the member taxes that still exist (deleted ones drop out)
    taxes: List[TaxSummary]
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None


# -----------------------------------------------------------------------------
# Calculation
# -----------------------------------------------------------------------------
class CalculateRequest(BaseModel):
    amount: Decimal
    contact_id: Optional[str] = Field(None, description="Apply this contact's tax exemptions")
    compound: bool = Field(False, description="Percentage taxes apply on top of earlier taxes")


class CalculateWithTaxesRequest(CalculateRequest):
    tax_ids: List[str] = Field(..., min_length=1, max_length=config.MAX_TAXES_PER_GROUP)


class ExtractRequest(BaseModel):
    gross_amount: Decimal
    compound: bool = False


class TaxBreakdownOut(BaseModel):
    tax_id: str
    tax_name: str
    tax_type: TaxType
    tax_rate: Decimal
    tax_amount: Decimal
    is_exempt: bool = False

    @field_serializer("tax_rate")
    def _rate_to_str(self, v: Decimal) -> str | None:
        return dec_to_str(v)

    @field_serializer("tax_amount")
    def _amount_to_str(self, v: Decimal) -> str:
        return money_to_str(v)


class TaxCalculationOut(BaseModel):
    base_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    effective_rate: Decimal
    effective_rate_percent: Decimal
    tax_breakdown: List[TaxBreakdownOut]

    @field_serializer("base_amount", "tax_amount", "total_amount")
    def _money_to_str(self, v: Decimal) -> str:
        return money_to_str(v)

    @field_serializer("effective_rate", "effective_rate_percent")
    def _rate_to_str(self, v: Decimal) -> str | None:
        return dec_to_str(v)

    @classmethod
    def from_result(cls, result: TaxCalculationResult) -> "TaxCalculationOut":
        return cls(
            base_amount=result.base_amount,
            tax_amount=result.tax_amount,
            total_amount=result.total_amount,
            effective_rate=result.effective_rate,
            effective_rate_percent=result.effective_rate_display,
            tax_breakdown=[
                TaxBreakdownOut(
                    tax_id=e.tax_id,
                    tax_name=e.tax_name,
                    tax_type=e.tax_type,
                    tax_rate=e.tax_rate,
                    tax_amount=e.tax_amount,
                    is_exempt=e.is_exempt,
                )
                for e in result.tax_breakdown
            ],
        )


class ExtractOut(BaseModel):
    gross_amount: Decimal
    base_amount: Decimal
    tax_amount: Decimal

    @field_serializer("gross_amount", "base_amount", "tax_amount")
    def _money_to_str(self, v: Decimal) -> str:
        return money_to_str(v)


# -----------------------------------------------------------------------------
# Tax exemptions
# -----------------------------------------------------------------------------
ExemptionType = Literal["resale", "non_profit", "government", "other"]


class TaxExemptionCreate(BaseModel):
    contact_id: str = Field(..., min_length=1, max_length=64)
    tax_id: Optional[str] = Field(None, description="None = exempt from every tax")
    exemption_type: ExemptionType = "resale"
    certificate_number: Optional[str] = Field(None, max_length=255)
    certificate_expiry: Optional[datetime.date] = None
    reason: Optional[str] = None
    is_active: bool = True


class TaxExemptionUpdate(BaseModel):
    """
    Partial update. An explicit `tax_id: null` widens the exemption to every tax.
    """

    contact_id: Optional[str] = Field(None, min_length=1, max_length=64)
    tax_id: Optional[str] = None
    exemption_type: Optional[ExemptionType] = None
    certificate_number: Optional[str] = Field(None, max_length=255)
    certificate_expiry: Optional[datetime.date] = None
    reason: Optional[str] = None
    is_active: Optional[bool] = None


class TaxExemptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contact_id: str
    tax_id: Optional[str] = None
    exemption_type: str
    certificate_number: Optional[str] = None
    certificate_expiry: Optional[datetime.date] = None
    reason: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None


# -----------------------------------------------------------------------------
# Response envelopes: tagged by the `success` literal
# -----------------------------------------------------------------------------
class Success(BaseModel):
    success: Literal[True] = True
    status_code: int = 200
    message: str
    data: Any = None


class Failure(BaseModel):
    success: Literal[False] = False
    status_code: int
    message: str
    errors: Optional[List[Any]] = None


def _envelope_tag(v: Any) -> str:
    ok = v.get("success") if isinstance(v, dict) else getattr(v, "success", None)
    return "success" if ok is True else "failure"


ApiEnvelope = Annotated[
    Union[Annotated[Success, Tag("success")], Annotated[Failure, Tag("failure")]],
    Discriminator(_envelope_tag),
]
envelope_adapter = TypeAdapter(ApiEnvelope)
