# tests/test_api.py
# Run with:
#   pytest -q -m smoke --maxfail=1 --disable-warnings -rA

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from taxgroupcalc.app import app
from taxgroupcalc.schemas import Failure, Success, envelope_adapter

client = TestClient(app)
pytestmark = pytest.mark.smoke


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------
def _name(prefix: str) -> str:
    # unique per call; the DB is shared by the whole session
    return f"{prefix} {uuid.uuid4().hex[:8]}"


def _create_tax(type_: str, rate: str, name: str | None = None) -> dict:
    r = client.post("/taxes", json={"name": name or _name("Tax"), "type": type_, "rate": rate})
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _create_group(tax_ids: list[str], **extra) -> dict:
    r = client.post("/tax-groups", json={"name": _name("Group"), "tax_ids": tax_ids, **extra})
    assert r.status_code == 201, r.text
    return r.json()["data"]


@pytest.fixture
def invoice_group() -> dict:
    gst = _create_tax("PERCENTAGE", "0.10", "GST")
    pst = _create_tax("PERCENTAGE", "0.05", "PST")
    eco = _create_tax("FIXED", "2", "Eco fee")
    return _create_group([gst["id"], pst["id"], eco["id"]])


# --------------------------------------------------------------------------------------
# Tests
# --------------------------------------------------------------------------------------
def test_health_and_version():
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/version").json()["name"] == "TaxGroupCalc"


def test_create_and_fetch_tax():
    tax = _create_tax("percentage", "0.15")
    assert tax["type"] == "PERCENTAGE"
    assert tax["rate"] == "0.15"
    assert tax["is_active"] is True

    r = client.get(f"/taxes/{tax['id']}")
    body = r.json()
    assert r.status_code == 200
    assert body["success"] is True
    assert body["data"]["id"] == tax["id"]


def test_invalid_tax_returns_failure_envelope():
    r = client.post("/taxes", json={"name": "Neg", "type": "FIXED", "rate": "-1"})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["status_code"] == 400
    assert "rate" in body["message"]

    r = client.post("/taxes", json={"name": "x" * 51, "type": "FIXED", "rate": "1"})
    assert r.status_code == 400

    r = client.post("/taxes", json={"name": "Bad type", "type": "withholding", "rate": "1"})
    assert r.status_code == 422
    assert r.json()["success"] is False
    assert r.json()["errors"]


def test_unknown_tax_is_404():
    r = client.get("/taxes/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {
        "success": False,
        "status_code": 404,
        "message": "Tax not found: does-not-exist",
        "errors": None,
    }


def test_update_tax():
    tax = _create_tax("PERCENTAGE", "0.10")
    r = client.patch(f"/taxes/{tax['id']}", json={"rate": "0.12", "name": "Renamed"})
    assert r.status_code == 200, r.text
    assert r.json()["data"]["rate"] == "0.12"
    assert r.json()["data"]["name"] == "Renamed"

    r = client.patch(f"/taxes/{tax['id']}", json={"rate": "2"})  # 200% is not a valid fraction
    assert r.status_code == 400


def test_list_taxes_paginates_and_filters():
    marker = uuid.uuid4().hex[:8]
    for i in range(3):
        _create_tax("FIXED", str(i + 1), f"List {marker} {i}")

    r = client.get("/taxes", params={"search": marker, "limit": 2, "sort": "rate", "order": "desc"})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert [t["rate"] for t in data["items"]] == ["3", "2"]

    r = client.get("/taxes", params={"search": marker, "page": 2, "limit": 2, "sort": "rate", "order": "desc"})
    assert [t["rate"] for t in r.json()["data"]["items"]] == ["1"]

    r = client.get("/taxes", params={"search": marker, "type": "PERCENTAGE"})
    assert r.json()["data"]["pagination"]["total"] == 0

    r = client.get("/taxes", params={"limit": 1000})
    assert r.status_code == 422


def test_group_calculation(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["base_amount"] == "100.00"
    assert data["tax_amount"] == "17.00"
    assert data["total_amount"] == "117.00"
    assert data["effective_rate"] == "0.17"
    assert data["effective_rate_percent"] == "17"
    assert [e["tax_amount"] for e in data["tax_breakdown"]] == ["10.00", "5.00", "2.00"]
    assert [e["tax_name"] for e in data["tax_breakdown"]] == ["GST", "PST", "Eco fee"]
    assert [e["tax_id"] for e in data["tax_breakdown"]] == invoice_group["tax_ids"]


def test_group_calculation_compound(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": "100", "compound": True})
    # 10 + 5% of 110 + 2
    assert r.json()["data"]["tax_amount"] == "17.50"


def test_negative_amount_is_rejected(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": "-1"})
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_zero_amount(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 0})
    data = r.json()["data"]
    assert data["tax_amount"] == "2.00"  # only the flat fee
    assert data["effective_rate"] == "0"


def test_group_duplicate_ids_rejected():
    tax = _create_tax("FIXED", "1")
    r = client.post("/tax-groups", json={"name": _name("Dup"), "tax_ids": [tax["id"], tax["id"]]})
    assert r.status_code == 400
    assert r.json()["errors"] == [{"tax_id": tax["id"]}]

    group = _create_group([tax["id"]])
    r = client.patch(f"/tax-groups/{group['id']}", json={"tax_ids": [tax["id"], tax["id"]]})
    assert r.status_code == 400


def test_group_requires_taxes_on_create_but_update_may_empty():
    r = client.post("/tax-groups", json={"name": _name("Empty"), "tax_ids": []})
    assert r.status_code == 400

    tax = _create_tax("PERCENTAGE", "0.2")
    group = _create_group([tax["id"]])
    r = client.patch(f"/tax-groups/{group['id']}", json={"tax_ids": []})
    assert r.status_code == 200, r.text
    assert r.json()["data"]["tax_ids"] == []

    r = client.post(f"/tax-groups/{group['id']}/calculate", json={"amount": 50})
    assert r.json()["data"]["tax_amount"] == "0.00"
    assert r.json()["data"]["tax_breakdown"] == []


def test_group_with_unknown_tax_rejected():
    r = client.post("/tax-groups", json={"name": _name("Ghost"), "tax_ids": ["missing-id"]})
    assert r.status_code == 400
    assert r.json()["errors"] == [{"tax_id": "missing-id"}]


def test_group_update_reorders_breakdown():
    a = _create_tax("PERCENTAGE", "0.10", "A")
    b = _create_tax("FIXED", "3", "B")
    group = _create_group([a["id"], b["id"]])
    r = client.patch(f"/tax-groups/{group['id']}", json={"tax_ids": [b["id"], a["id"]]})
    assert r.status_code == 200, r.text
    assert [t["name"] for t in r.json()["data"]["taxes"]] == ["B", "A"]

    r = client.post(f"/tax-groups/{group['id']}/calculate", json={"amount": 10})
    assert [e["tax_name"] for e in r.json()["data"]["tax_breakdown"]] == ["B", "A"]


def test_deleted_tax_is_skipped_not_fatal(invoice_group):
    pst_id = invoice_group["tax_ids"][1]
    assert client.delete(f"/taxes/{pst_id}").status_code == 200

    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["tax_amount"] == "12.00"
    assert len(data["tax_breakdown"]) == 2

    # group still remembers the id
    r = client.get(f"/tax-groups/{invoice_group['id']}")
    assert r.json()["data"]["tax_ids"] == invoice_group["tax_ids"]
    assert len(r.json()["data"]["taxes"]) == 2

    assert client.post(f"/taxes/{pst_id}/restore").status_code == 200
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100})
    assert r.json()["data"]["tax_amount"] == "17.00"


def test_disabled_tax_is_skipped(invoice_group):
    gst_id = invoice_group["tax_ids"][0]
    assert client.post(f"/taxes/{gst_id}/disable").json()["data"]["is_active"] is False
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100})
    assert r.json()["data"]["tax_amount"] == "7.00"
    client.post(f"/taxes/{gst_id}/enable")


def test_inactive_or_deleted_group_is_404(invoice_group):
    gid = invoice_group["id"]
    assert client.post(f"/tax-groups/{gid}/disable").status_code == 200
    r = client.post(f"/tax-groups/{gid}/calculate", json={"amount": 100})
    assert r.status_code == 404

    client.post(f"/tax-groups/{gid}/enable")
    assert client.delete(f"/tax-groups/{gid}").status_code == 200
    assert client.post(f"/tax-groups/{gid}/calculate", json={"amount": 100}).status_code == 404
    assert client.get(f"/tax-groups/{gid}").status_code == 404

    assert client.post(f"/tax-groups/{gid}/restore").status_code == 200
    assert client.post(f"/tax-groups/{gid}/calculate", json={"amount": 100}).status_code == 200


def test_calculate_with_tax_ids():
    a = _create_tax("PERCENTAGE", "0.20")
    b = _create_tax("FIXED", "1.5")
    r = client.post("/taxes/calculate", json={"amount": "10", "tax_ids": [b["id"], a["id"]]})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["tax_amount"] == "3.50"
    assert [e["tax_id"] for e in data["tax_breakdown"]] == [b["id"], a["id"]]

    r = client.post("/taxes/calculate", json={"amount": "10", "tax_ids": [a["id"], "nope"]})
    assert r.status_code == 404


def test_exemptions_apply_per_contact(invoice_group):
    contact = f"contact-{uuid.uuid4().hex[:8]}"
    gst_id = invoice_group["tax_ids"][0]
    r = client.post(
        "/tax-exemptions",
        json={"contact_id": contact, "tax_id": gst_id, "exemption_type": "non_profit"},
    )
    assert r.status_code == 201, r.text
    exemption_id = r.json()["data"]["id"]

    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100, "contact_id": contact})
    data = r.json()["data"]
    assert data["tax_amount"] == "7.00"
    assert data["tax_breakdown"][0]["is_exempt"] is True
    assert data["tax_breakdown"][0]["tax_amount"] == "0.00"

    # other contacts pay in full
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100, "contact_id": "someone-else"})
    assert r.json()["data"]["tax_amount"] == "17.00"

    r = client.get("/tax-exemptions", params={"contact_id": contact})
    assert r.json()["data"]["pagination"]["total"] == 1

    assert client.delete(f"/tax-exemptions/{exemption_id}").status_code == 200
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100, "contact_id": contact})
    assert r.json()["data"]["tax_amount"] == "17.00"


def test_expired_exemption_is_ignored(invoice_group):
    contact = f"contact-{uuid.uuid4().hex[:8]}"
    r = client.post(
        "/tax-exemptions",
        json={"contact_id": contact, "tax_id": None, "certificate_expiry": "2000-01-01"},
    )
    assert r.status_code == 201, r.text
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": 100, "contact_id": contact})
    assert r.json()["data"]["tax_amount"] == "17.00"


def test_extract(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/extract", json={"gross_amount": "117"})
    assert r.status_code == 200, r.text
    assert r.json()["data"] == {"gross_amount": "117.00", "base_amount": "100.00", "tax_amount": "17.00"}


def test_calculation_pdf(invoice_group):
    r = client.get(f"/tax-groups/{invoice_group['id']}/calculate.pdf", params={"amount": "100"})
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/pdf"
    assert r.content.startswith(b"%PDF")


def test_active_lists():
    tax = _create_tax("FIXED", "1")
    group = _create_group([tax["id"]])
    client.post(f"/tax-groups/{group['id']}/disable")

    active_groups = client.get("/tax-groups/active").json()["data"]
    assert group["id"] not in [g["id"] for g in active_groups]
    active_taxes = client.get("/taxes/active").json()["data"]
    assert tax["id"] in [t["id"] for t in active_taxes]


def test_oversized_amount_is_rejected(invoice_group):
    r = client.post(f"/tax-groups/{invoice_group['id']}/calculate", json={"amount": "1e30"})
    assert r.status_code == 400
    assert r.json()["success"] is False

    r = client.post(f"/tax-groups/{invoice_group['id']}/extract", json={"gross_amount": "1e30"})
    assert r.status_code == 400

    r = client.get(f"/tax-groups/{invoice_group['id']}/calculate.pdf", params={"amount": "1e30"})
    assert r.status_code == 400


def test_rate_bounds_and_precision_survive_storage():
    r = client.post("/taxes", json={"name": _name("Huge"), "type": "FIXED", "rate": "1e40"})
    assert r.status_code == 400

    r = client.post("/taxes", json={"name": _name("Fine"), "type": "PERCENTAGE", "rate": "0.1234567"})
    assert r.status_code == 400

    tax = _create_tax("PERCENTAGE", "0.123456")
    assert tax["rate"] == "0.123456"
    assert client.get(f"/taxes/{tax['id']}").json()["data"]["rate"] == "0.123456"

    r = client.patch(f"/taxes/{tax['id']}", json={"rate": "0.1111111"})
    assert r.status_code == 400


def test_pdf_with_markup_in_names():
    tax = _create_tax("FIXED", "1", "R&D <levy")
    group = _create_group([tax["id"]], name="A <b> & C")
    r = client.get(f"/tax-groups/{group['id']}/calculate.pdf", params={"amount": "10"})
    assert r.status_code == 200, r.text
    assert r.content.startswith(b"%PDF")


def test_responses_parse_as_tagged_envelopes():
    tax = _create_tax("FIXED", "1")
    ok = envelope_adapter.validate_python(client.get(f"/taxes/{tax['id']}").json())
    assert isinstance(ok, Success)
    assert ok.data["id"] == tax["id"]

    bad = envelope_adapter.validate_python(client.get("/taxes/does-not-exist").json())
    assert isinstance(bad, Failure)
    assert bad.status_code == 404


def test_tax_status_and_statistics():
    before = client.get("/taxes/statistics").json()["data"]
    tax = _create_tax("PERCENTAGE", "0.07")
    client.post(f"/taxes/{tax['id']}/disable")

    r = client.get("/taxes/statistics")
    assert r.status_code == 200
    after = r.json()["data"]
    assert after["total"] == before["total"] + 1
    assert after["inactive"] == before["inactive"] + 1
    assert after["by_type"]["PERCENTAGE"] == before["by_type"]["PERCENTAGE"] + 1
    assert set(after["average_rate"]) == {"PERCENTAGE", "FIXED"}
    assert len(after["recent_taxes"]) <= 5

    status = client.get(f"/taxes/{tax['id']}/status").json()["data"]
    assert status["id"] == tax["id"]
    assert status["is_active"] is False
    assert client.get("/taxes/does-not-exist/status").status_code == 404


def test_exemption_management(invoice_group):
    contact = f"contact-{uuid.uuid4().hex[:8]}"
    gst_id = invoice_group["tax_ids"][0]
    calc_url = f"/tax-groups/{invoice_group['id']}/calculate"

    def tax_for_contact() -> str:
        return client.post(calc_url, json={"amount": 100, "contact_id": contact}).json()["data"]["tax_amount"]

    r = client.post("/tax-exemptions", json={"contact_id": contact, "tax_id": gst_id})
    exemption_id = r.json()["data"]["id"]
    r = client.get(f"/tax-exemptions/{exemption_id}")
    assert r.status_code == 200
    assert r.json()["data"]["tax_id"] == gst_id

    # null tax_id widens the exemption to the whole group
    r = client.patch(f"/tax-exemptions/{exemption_id}", json={"tax_id": None, "reason": "charity"})
    assert r.status_code == 200, r.text
    assert r.json()["data"]["tax_id"] is None
    assert tax_for_contact() == "0.00"

    assert client.post(f"/tax-exemptions/{exemption_id}/disable").json()["data"]["is_active"] is False
    assert tax_for_contact() == "17.00"
    assert client.post(f"/tax-exemptions/{exemption_id}/enable").json()["data"]["is_active"] is True
    assert tax_for_contact() == "0.00"

    assert client.post(f"/tax-exemptions/{exemption_id}/restore").status_code == 400
    client.delete(f"/tax-exemptions/{exemption_id}")
    assert client.get(f"/tax-exemptions/{exemption_id}").status_code == 404
    assert client.post(f"/tax-exemptions/{exemption_id}/restore").status_code == 200
    assert tax_for_contact() == "0.00"


def test_money_display_rounds_half_up():
    tax = _create_tax("FIXED", "0")
    group = _create_group([tax["id"]])
    r = client.post(f"/tax-groups/{group['id']}/calculate", json={"amount": "2.125"})
    assert r.json()["data"]["base_amount"] == "2.13"
