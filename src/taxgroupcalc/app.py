# app.py
"""
Main FastAPI application.

This file wires together:
- the web server (FastAPI + Uvicorn)
- the tax/tax-group store (queries.py)
- the resolver + tax engine for calculations
- the success/failure response envelopes

Endpoints:
  GET  /health, /version                     → liveness + version metadata
  /taxes            CRUD, enable/disable, restore, status, statistics,
                    POST /taxes/calculate
  /tax-groups       CRUD, enable/disable, restore,
                    POST /tax-groups/{id}/calculate, POST /tax-groups/{id}/extract,
                    GET  /tax-groups/{id}/calculate.pdf
  /tax-exemptions   CRUD, enable/disable, restore

  Command to start the server: uvicorn taxgroupcalc.app:app --reload
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Dict

from fastapi import Depends, FastAPI, Query, Response
from sqlalchemy.orm import Session

from .__about__ import __title__, __version__
from .db import get_session, init_db
from .logging_config import setup_logger
from .models import TaxGroup
from .queries import (
    create_tax,
    create_tax_exemption,
    create_tax_group,
    delete_tax,
    delete_tax_exemption,
    delete_tax_group,
    exempt_tax_ids_for,
    find_active_tax_groups,
    find_active_taxes,
    find_tax_by_id,
    find_tax_exemption_by_id,
    find_tax_exemptions,
    find_tax_group_by_id,
    find_tax_groups,
    find_taxes,
    find_taxes_by_ids,
    get_tax_statistics,
    restore_tax,
    restore_tax_exemption,
    restore_tax_group,
    set_tax_active,
    set_tax_exemption_active,
    set_tax_group_active,
    update_tax,
    update_tax_exemption,
    update_tax_group,
)
from .report_pdf import build_calculation_pdf
from .resolver import SqlTaxGroupResolver
from .responses import register_exception_handlers, success
from .schemas import (
    CalculateRequest,
    CalculateWithTaxesRequest,
    ExtractOut,
    ExtractRequest,
    PageOut,
    Pagination,
    TaxCalculationOut,
    TaxCreate,
    TaxExemptionCreate,
    TaxExemptionListQuery,
    TaxExemptionRead,
    TaxExemptionUpdate,
    TaxGroupCreate,
    TaxGroupListQuery,
    TaxGroupRead,
    TaxGroupUpdate,
    TaxListQuery,
    TaxRead,
    TaxStatistics,
    TaxSummary,
    TaxUpdate,
)
from .tax_engine import calculate, extract_base_amount

logger = setup_logger(__name__)

init_db()

app = FastAPI(title=__title__, version=__version__)
register_exception_handlers(app)

SessionDep = Annotated[Session, Depends(get_session)]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _group_out(session: Session, group: TaxGroup) -> TaxGroupRead:
    """Group payload with its member taxes in group order (deleted taxes drop out)."""
    tax_ids = group.tax_ids
    taxes = find_taxes_by_ids(session, tax_ids)
    return TaxGroupRead(
        id=group.id,
        name=group.name,
        description=group.description,
        is_active=group.is_active,
        tax_ids=tax_ids,
        taxes=[TaxSummary.model_validate(taxes[t]) for t in tax_ids if t in taxes],
        created_at=group.created_at,
        updated_at=group.updated_at,
    )


def _page_out(items: list, page: int, limit: int, total: int) -> PageOut:
    return PageOut(
        items=[i.model_dump(mode="json") for i in items],
        pagination=Pagination.build(page, limit, total),
    )


# -----------------------------------------------------------------------------
# Health + version endpoints (simple sanity checks)
# -----------------------------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    """Quick liveness check for monitoring or manual testing."""
    return {"status": "ok"}


@app.get("/version")
def version() -> Dict[str, str]:
    """Show the backend name and version (useful to confirm deployments)."""
    return {"name": __title__, "version": __version__}


# -----------------------------------------------------------------------------
# Taxes
# -----------------------------------------------------------------------------
@app.get("/taxes")
def list_taxes(session: SessionDep, filters: Annotated[TaxListQuery, Query()]) -> Any:
    """Paginated, filterable list of taxes."""
    taxes, total = find_taxes(session, filters)
    items = [TaxRead.model_validate(t) for t in taxes]
    return success(_page_out(items, filters.page, filters.limit, total), "Taxes fetched successfully")


@app.get("/taxes/active")
def list_active_taxes(session: SessionDep) -> Any:
    taxes = find_active_taxes(session)
    return success([TaxRead.model_validate(t) for t in taxes], "Taxes fetched successfully")


@app.get("/taxes/statistics")
def tax_statistics(session: SessionDep) -> Any:
    """Counts per status and type, average rates and the newest taxes."""
    stats = get_tax_statistics(session)
    stats["recent_taxes"] = [TaxRead.model_validate(t) for t in stats["recent_taxes"]]
    return success(TaxStatistics(**stats), "Tax statistics fetched successfully")


@app.post("/taxes/calculate")
def calculate_with_taxes(body: CalculateWithTaxesRequest, session: SessionDep) -> Any:
    """
    Ad-hoc calculation over an explicit, ordered list of tax ids.
    Every id must name an existing, active tax.
    """
    rules = SqlTaxGroupResolver(session).resolve_tax_ids(body.tax_ids)
    exempt = exempt_tax_ids_for(session, body.contact_id, [r.id for r in rules])
    result = calculate(body.amount, rules, compound=body.compound, exempt_tax_ids=exempt)
    logger.info(f"calculated {len(rules)} taxes on {result.base_amount}: tax={result.tax_amount}")
    return success(TaxCalculationOut.from_result(result), "Tax calculated successfully")


@app.get("/taxes/{tax_id}")
def get_tax(tax_id: str, session: SessionDep) -> Any:
    return success(TaxRead.model_validate(find_tax_by_id(session, tax_id)), "Tax fetched successfully")


@app.get("/taxes/{tax_id}/status")
def get_tax_status(tax_id: str, session: SessionDep) -> Any:
    return success(TaxRead.model_validate(find_tax_by_id(session, tax_id)), "Tax status fetched successfully")


@app.post("/taxes", status_code=201)
def create_tax_endpoint(body: TaxCreate, session: SessionDep) -> Any:
    tax = create_tax(session, body)
    return success(TaxRead.model_validate(tax), "Tax created successfully", status_code=201)


@app.patch("/taxes/{tax_id}")
def update_tax_endpoint(tax_id: str, body: TaxUpdate, session: SessionDep) -> Any:
    tax = update_tax(session, tax_id, body)
    return success(TaxRead.model_validate(tax), "Tax updated successfully")


@app.delete("/taxes/{tax_id}")
def delete_tax_endpoint(tax_id: str, session: SessionDep) -> Any:
    tax = delete_tax(session, tax_id)
    return success({"id": tax.id, "name": tax.name, "deleted_at": tax.deleted_at}, "Tax deleted successfully")


@app.post("/taxes/{tax_id}/restore")
def restore_tax_endpoint(tax_id: str, session: SessionDep) -> Any:
    return success(TaxRead.model_validate(restore_tax(session, tax_id)), "Tax restored successfully")


@app.post("/taxes/{tax_id}/enable")
def enable_tax(tax_id: str, session: SessionDep) -> Any:
    return success(TaxRead.model_validate(set_tax_active(session, tax_id, True)), "Tax enabled successfully")


@app.post("/taxes/{tax_id}/disable")
def disable_tax(tax_id: str, session: SessionDep) -> Any:
    return success(TaxRead.model_validate(set_tax_active(session, tax_id, False)), "Tax disabled successfully")


# -----------------------------------------------------------------------------
# Tax groups
# -----------------------------------------------------------------------------
@app.get("/tax-groups")
def list_tax_groups(session: SessionDep, filters: Annotated[TaxGroupListQuery, Query()]) -> Any:
    groups, total = find_tax_groups(session, filters)
    items = [_group_out(session, g) for g in groups]
    return success(_page_out(items, filters.page, filters.limit, total), "Tax groups fetched successfully")


@app.get("/tax-groups/active")
def list_active_tax_groups(session: SessionDep) -> Any:
    groups = find_active_tax_groups(session)
    return success([_group_out(session, g) for g in groups], "Tax groups fetched successfully")


@app.get("/tax-groups/{group_id}")
def get_tax_group(group_id: str, session: SessionDep) -> Any:
    group = find_tax_group_by_id(session, group_id)
    return success(_group_out(session, group), "Tax group fetched successfully")


@app.post("/tax-groups", status_code=201)
def create_tax_group_endpoint(body: TaxGroupCreate, session: SessionDep) -> Any:
    group = create_tax_group(session, body)
    return success(_group_out(session, group), "Tax group created successfully", status_code=201)


@app.patch("/tax-groups/{group_id}")
def update_tax_group_endpoint(group_id: str, body: TaxGroupUpdate, session: SessionDep) -> Any:
    group = update_tax_group(session, group_id, body)
    return success(_group_out(session, group), "Tax group updated successfully")


@app.delete("/tax-groups/{group_id}")
def delete_tax_group_endpoint(group_id: str, session: SessionDep) -> Any:
    group = delete_tax_group(session, group_id)
    return success(
        {"id": group.id, "name": group.name, "deleted_at": group.deleted_at},
        "Tax group deleted successfully",
    )


@app.post("/tax-groups/{group_id}/restore")
def restore_tax_group_endpoint(group_id: str, session: SessionDep) -> Any:
    group = restore_tax_group(session, group_id)
    return success(_group_out(session, group), "Tax group restored successfully")


@app.post("/tax-groups/{group_id}/enable")
def enable_tax_group(group_id: str, session: SessionDep) -> Any:
    group = set_tax_group_active(session, group_id, True)
    return success(_group_out(session, group), "Tax group enabled successfully")


@app.post("/tax-groups/{group_id}/disable")
def disable_tax_group(group_id: str, session: SessionDep) -> Any:
    group = set_tax_group_active(session, group_id, False)
    return success(_group_out(session, group), "Tax group disabled successfully")


@app.post("/tax-groups/{group_id}/calculate")
def calculate_tax_group(group_id: str, body: CalculateRequest, session: SessionDep) -> Any:
    """
    Calculate tax for `amount` with the group's active taxes, in group order.
    Taxes deleted since the group was saved are skipped.
    """
    group, rules = SqlTaxGroupResolver(session).resolve_group(group_id)
    exempt = exempt_tax_ids_for(session, body.contact_id, [r.id for r in rules])
    result = calculate(body.amount, rules, compound=body.compound, exempt_tax_ids=exempt)
    logger.info(
        f"tax group {group.id} ({group.name}): base={result.base_amount} "
        f"tax={result.tax_amount} rules={len(rules)} exempt={len(exempt)}"
    )
    return success(TaxCalculationOut.from_result(result), "Tax calculated successfully")


@app.post("/tax-groups/{group_id}/extract")
def extract_tax_group(group_id: str, body: ExtractRequest, session: SessionDep) -> Any:
    """Split a tax-inclusive amount into base + tax for this group."""
    rules = SqlTaxGroupResolver(session).resolve(group_id)
    base = extract_base_amount(body.gross_amount, rules, compound=body.compound)
    out = ExtractOut(gross_amount=body.gross_amount, base_amount=base, tax_amount=body.gross_amount - base)
    return success(out, "Tax extracted successfully")


@app.get("/tax-groups/{group_id}/calculate.pdf", summary="Download a PDF receipt of a tax group calculation")
def calculate_tax_group_pdf(
    group_id: str,
    session: SessionDep,
    amount: Decimal = Query(...),
    compound: bool = Query(False),
    contact_id: str | None = Query(None),
) -> Response:
    group, rules = SqlTaxGroupResolver(session).resolve_group(group_id)
    exempt = exempt_tax_ids_for(session, contact_id, [r.id for r in rules])
    result = calculate(amount, rules, compound=compound, exempt_tax_ids=exempt)
    mode = "compound" if compound else "parallel"
    pdf_bytes = build_calculation_pdf(result, title=group.name, subtitle=f"Mode: {mode}")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="tax_group_{group.id}.pdf"'},
    )


# -----------------------------------------------------------------------------
# Tax exemptions
# -----------------------------------------------------------------------------
@app.post("/tax-exemptions", status_code=201)
def create_tax_exemption_endpoint(body: TaxExemptionCreate, session: SessionDep) -> Any:
    exemption = create_tax_exemption(session, body)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption created successfully", status_code=201)


@app.get("/tax-exemptions")
def list_tax_exemptions(session: SessionDep, filters: Annotated[TaxExemptionListQuery, Query()]) -> Any:
    exemptions, total = find_tax_exemptions(session, filters)
    items = [TaxExemptionRead.model_validate(e) for e in exemptions]
    return success(_page_out(items, filters.page, filters.limit, total), "Tax exemptions fetched successfully")


@app.get("/tax-exemptions/{exemption_id}")
def get_tax_exemption(exemption_id: str, session: SessionDep) -> Any:
    exemption = find_tax_exemption_by_id(session, exemption_id)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption fetched successfully")


@app.patch("/tax-exemptions/{exemption_id}")
def update_tax_exemption_endpoint(exemption_id: str, body: TaxExemptionUpdate, session: SessionDep) -> Any:
    exemption = update_tax_exemption(session, exemption_id, body)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption updated successfully")


@app.delete("/tax-exemptions/{exemption_id}")
def delete_tax_exemption_endpoint(exemption_id: str, session: SessionDep) -> Any:
    exemption = delete_tax_exemption(session, exemption_id)
    return success({"id": exemption.id, "deleted_at": exemption.deleted_at}, "Tax exemption deleted successfully")


@app.post("/tax-exemptions/{exemption_id}/restore")
def restore_tax_exemption_endpoint(exemption_id: str, session: SessionDep) -> Any:
    exemption = restore_tax_exemption(session, exemption_id)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption restored successfully")


@app.post("/tax-exemptions/{exemption_id}/enable")
def enable_tax_exemption(exemption_id: str, session: SessionDep) -> Any:
    exemption = set_tax_exemption_active(session, exemption_id, True)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption enabled successfully")


@app.post("/tax-exemptions/{exemption_id}/disable")
def disable_tax_exemption(exemption_id: str, session: SessionDep) -> Any:
    exemption = set_tax_exemption_active(session, exemption_id, False)
    return success(TaxExemptionRead.model_validate(exemption), "Tax exemption disabled successfully")
