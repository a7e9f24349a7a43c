"""Billing API tests: record lifecycle, payment outcomes, refunds and queries."""

from datetime import UTC, datetime, timedelta

import pytest

pytestmark = pytest.mark.integration


def _create(client, owner_id="owner-1", amount="49.99", **extra):
    response = client.post("/api/billing/records", json={"owner_id": owner_id, "amount": amount, **extra})
    assert response.status_code == 201, response.text
    return response.json()


# ============================================================================
# Records
# ============================================================================


def test_create_and_get_record(api_client):
    created = _create(api_client)

    assert created["status"] == "Pending"
    assert created["display_status"] == "Pending"
    assert created["type"] == "Subscription"

    response = api_client.get(f"/api/billing/records/{created['id']}")
    assert response.status_code == 200
    assert response.json()["owner_id"] == "owner-1"


def test_create_rejects_negative_amount(api_client):
    response = api_client.post("/api/billing/records", json={"owner_id": "owner-1", "amount": "-5"})
    assert response.status_code == 422


def test_create_rejects_refund_type(api_client):
    response = api_client.post(
        "/api/billing/records", json={"owner_id": "owner-1", "amount": "5", "type": "Refund"}
    )
    assert response.status_code == 422
    assert response.json()["error_type"] == "ValidationError"


def test_unknown_record_is_404_with_debug_id(api_client):
    response = api_client.get("/api/billing/records/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404
    body = response.json()
    assert body["error_type"] == "NotFoundError"
    assert body["debug_id"]


# ============================================================================
# Payments
# ============================================================================


def _stored(client, record_id):
    return client.get(f"/api/billing/records/{record_id}").json()


def test_pay_record_runs_after_accepting(api_client, api_gateway):
    record = _create(api_client)

    response = api_client.post(f"/api/billing/records/{record['id']}/pay", json={"origin_ip": "198.51.100.4"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "accepted"
    assert body["record_id"] == record["id"]
    assert body["billing_status"] == "Pending"

    # TestClient returns once background tasks have finished
    stored = _stored(api_client, record["id"])
    assert stored["status"] == "Paid"
    assert stored["paid_at"] is not None
    assert api_gateway.charge_count == 1
    assert api_gateway.charges[0]["metadata"] == {
        "billing_record_id": record["id"],
        "billing_record_version": "1",
    }


def test_pay_twice_is_idempotent(api_client, api_gateway):
    record = _create(api_client)
    api_client.post(f"/api/billing/records/{record['id']}/pay")

    response = api_client.post(f"/api/billing/records/{record['id']}/pay")

    assert response.status_code == 202
    assert response.json()["status"] == "already_paid"
    assert api_gateway.charge_count == 1


def test_pay_record_settled_by_partial_payment_reports_already_paid(api_client, api_gateway):
    record = _create(api_client)
    api_client.post(f"/api/billing/records/{record['id']}/partial-payment", json={"amount": "49.99"})

    response = api_client.post(f"/api/billing/records/{record['id']}/pay")

    assert response.status_code == 202
    assert response.json()["status"] == "already_paid"
    assert api_gateway.charge_count == 0


def test_pay_failed_record_is_409(api_client, api_gateway):
    api_gateway.scenario = "no_payment_method"
    record = _create(api_client, owner_id="owner-no-method")
    api_client.post(f"/api/billing/records/{record['id']}/pay")

    response = api_client.post(f"/api/billing/records/{record['id']}/pay")

    assert response.status_code == 409
    assert response.json()["error_type"] == "PreconditionFailedError"


def test_declined_payment_ends_failed(api_client, api_gateway):
    api_gateway.scenario = "card_declined"
    record = _create(api_client, owner_id="owner-declined")

    response = api_client.post(f"/api/billing/records/{record['id']}/pay")

    assert response.status_code == 202
    stored = _stored(api_client, record["id"])
    assert stored["status"] == "Failed"
    assert stored["failure_reason"] == "Your card was declined."
    assert api_gateway.charge_count == 4


def test_gate_rejection_leaves_record_pending(api_client, api_gateway):
    record = _create(api_client, owner_id="owner-big", amount="20000")

    response = api_client.post(f"/api/billing/records/{record['id']}/pay")

    assert response.status_code == 202
    assert _stored(api_client, record["id"])["status"] == "Pending"
    assert api_gateway.charge_count == 0


def test_retry_requires_failed_record(api_client):
    record = _create(api_client)

    response = api_client.post(f"/api/billing/records/{record['id']}/retry")

    assert response.status_code == 409
    assert response.json()["error_type"] == "PreconditionFailedError"


def test_retry_failed_record(api_client, api_gateway):
    api_gateway.scenario = "no_payment_method"
    record = _create(api_client, owner_id="owner-retry")
    api_client.post(f"/api/billing/records/{record['id']}/pay")
    assert _stored(api_client, record["id"])["status"] == "Failed"

    api_gateway.scenario = "happy_path"
    response = api_client.post(f"/api/billing/records/{record['id']}/retry")

    assert response.status_code == 202
    assert response.json()["status"] == "accepted"
    assert _stored(api_client, record["id"])["status"] == "Paid"


# ============================================================================
# Refunds and partial payments
# ============================================================================


def test_refund_paid_record(api_client):
    record = _create(api_client, amount="80.00")
    api_client.post(f"/api/billing/records/{record['id']}/pay")

    response = api_client.post(
        f"/api/billing/records/{record['id']}/refund", json={"amount": "30.00", "reason": "goodwill"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "refunded"

    refund = api_client.get(f"/api/billing/records/{body['refund_record_id']}").json()
    assert refund["type"] == "Refund"
    assert refund["parent_record_id"] == record["id"]
    assert float(refund["amount"]) == -30.0


def test_refund_over_original_is_422(api_client):
    record = _create(api_client, amount="10.00")
    api_client.post(f"/api/billing/records/{record['id']}/pay")

    response = api_client.post(f"/api/billing/records/{record['id']}/refund", json={"amount": "10.01"})

    assert response.status_code == 422


def test_failed_gateway_refund_leaves_record_paid(api_client, api_gateway):
    record = _create(api_client)
    api_client.post(f"/api/billing/records/{record['id']}/pay")
    api_gateway.scenario = "refund_rejected"

    response = api_client.post(f"/api/billing/records/{record['id']}/refund", json={"amount": "10"})

    assert response.json()["status"] == "failed"
    assert api_client.get(f"/api/billing/records/{record['id']}").json()["status"] == "Paid"


def test_partial_payment(api_client):
    record = _create(api_client, amount="100.00")

    response = api_client.post(f"/api/billing/records/{record['id']}/partial-payment", json={"amount": "40"})

    assert response.status_code == 200
    body = response.json()
    assert float(body["amount"]) == 100.0
    assert float(body["amount_paid"]) == 40.0
    assert float(body["outstanding"]) == 60.0
    assert body["status"] == "Pending"


# ============================================================================
# Queries
# ============================================================================


def test_overdue_listing(api_client):
    past = (datetime.now(UTC) - timedelta(days=2)).isoformat()
    future = (datetime.now(UTC) + timedelta(days=2)).isoformat()
    late = _create(api_client, due_date=past)
    _create(api_client, due_date=future)

    overdue = api_client.get("/api/billing/overdue").json()
    assert [r["id"] for r in overdue] == [late["id"]]
    assert overdue[0]["display_status"] == "Overdue"
    assert overdue[0]["status"] == "Pending"

    assert api_client.get(f"/api/billing/records/{late['id']}/overdue").json()["is_overdue"] is True


def test_pending_listing(api_client):
    a = _create(api_client, owner_id="owner-a")
    b = _create(api_client, owner_id="owner-b")
    api_client.post(f"/api/billing/records/{b['id']}/pay")

    pending = api_client.get("/api/billing/pending").json()
    assert [r["id"] for r in pending] == [a["id"]]


def test_owner_history(api_client):
    first = _create(api_client, amount="100.00")
    _create(api_client, amount="50.00")
    api_client.post(f"/api/billing/records/{first['id']}/pay")

    body = api_client.get("/api/billing/users/owner-1/history").json()

    assert body["payment_count"] == 1
    assert float(body["average_amount"]) == 100.0
    assert len(body["records"]) == 2


def test_security_report(api_client):
    record = _create(api_client, owner_id="owner-report")
    api_client.post(f"/api/billing/records/{record['id']}/pay", json={"origin_ip": "198.51.100.4"})

    report = api_client.get("/api/security/users/owner-report/report").json()

    assert report["total_attempts"] == 1
    assert report["successful_attempts"] == 1
    assert report["origins"] == ["198.51.100.4"]
