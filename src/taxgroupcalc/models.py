from __future__ import annotations
import datetime
import uuid
from decimal import Decimal
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import Numeric, TypeDecorator

from .rules.base import TaxGroup as TaxGroupValue
from .rules.base import TaxRule


# ---------- Base ----------
class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ---------- Decimal helper (fixed 6 dp) ----------
class FixedDecimal(TypeDecorator):
    impl = Numeric(38, 6, asdecimal=True)
    cache_ok = True
    SCALE = Decimal("0.000001")
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)


# ---------- ORM models ----------
class Tax(Base):
    __tablename__ = "taxes"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # PERCENTAGE | FIXED (kept as text, validated by rules.base)
    type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    rate: Mapped[Decimal] = mapped_column(FixedDecimal, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_rule(self) -> TaxRule:
        return TaxRule.create(id=self.id, name=self.name, type=self.type, rate=self.rate, is_active=self.is_active)


class TaxGroup(Base):
    __tablename__ = "tax_groups"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Membership rows in group order; the taxes themselves are looked up by id
    members: Mapped[list["TaxGroupTax"]] = relationship(
        back_populates="group",
        order_by="TaxGroupTax.order_index",
        cascade="all, delete-orphan",
    )

    @property
    def tax_ids(self) -> list[str]:
        return [m.tax_id for m in self.members]

    def to_value(self) -> TaxGroupValue:
        return TaxGroupValue(
            id=self.id,
            name=self.name,
            tax_ids=tuple(self.tax_ids),
            description=self.description,
            is_active=self.is_active,
        )


# Junction table: no FK to taxes so a deleted tax never breaks its groups
class TaxGroupTax(Base):
    __tablename__ = "tax_group_taxes"
    __table_args__ = (UniqueConstraint("tax_group_id", "tax_id", name="uq_tax_group_taxes_group_tax"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tax_group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tax_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tax_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)

    group: Mapped[TaxGroup] = relationship(back_populates="members")


class TaxExemption(Base):
    __tablename__ = "tax_exemptions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # NULL = exempt from every tax
    tax_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    exemption_type: Mapped[str] = mapped_column(String(32), nullable=False)
    certificate_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    certificate_expiry: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def is_expired(self, today: datetime.date) -> bool:
        return self.certificate_expiry is not None and self.certificate_expiry < today

    def applies_to(self, tax_id: str) -> bool:
        return self.tax_id is None or self.tax_id == tax_id
