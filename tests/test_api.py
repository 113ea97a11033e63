from datetime import date


def _invoice_body(client_id, **overrides):
    body = {
        "client_id": client_id,
        "title": "Consulting",
        "issue_date": "2024-06-01",
        "due_date": "2099-06-30",
        "items": [{"description": "Services", "quantity": "2", "unit_price": "250.00"}],
    }
    body.update(overrides)
    return body


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_invoice_payment_flow(api, client_id):
    created = api.post("/invoices", json=_invoice_body(client_id))
    assert created.status_code == 201
    invoice = created.json()
    assert invoice["status"] == "draft"
    assert invoice["total_amount"] == "500.00"

    sent = api.post(f"/invoices/{invoice['id']}/send")
    assert sent.status_code == 200
    assert sent.json()["email_sent"] is True
    assert sent.json()["invoice"]["status"] == "sent"

    paid = api.post(f"/invoices/{invoice['id']}/payments", json={"amount": "200.00", "payment_method": "Check"})
    assert paid.status_code == 201
    assert paid.json()["invoice_status"] == "partial"
    payment_id = paid.json()["payment"]["id"]

    listed = api.get("/payments", params={"invoice_id": invoice["id"]})
    assert listed.json()["total"] == 1

    voided = api.delete(f"/payments/{payment_id}")
    assert voided.status_code == 200
    assert voided.json()["invoice_status"] == "sent"

    settled = api.post(f"/invoices/{invoice['id']}/mark-paid")
    assert settled.status_code == 200
    assert settled.json()["invoice_status"] == "paid"


def test_error_status_codes(api, client_id):
    assert api.get("/invoices/999").status_code == 404

    invalid = api.post("/invoices", json=_invoice_body(client_id, items=[]))
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["error"] == "validation_error"

    invoice = api.post("/invoices", json=_invoice_body(client_id)).json()
    api.post(f"/invoices/{invoice['id']}/send")

    over = api.post(f"/invoices/{invoice['id']}/payments", json={"amount": "500.01"})
    assert over.status_code == 409
    assert over.json()["detail"]["error"] == "overpayment"

    deleted = api.delete(f"/invoices/{invoice['id']}")
    assert deleted.status_code == 409
    assert deleted.json()["detail"]["error"] == "invalid_state"


def test_delete_draft(api, client_id):
    invoice = api.post("/invoices", json=_invoice_body(client_id)).json()
    response = api.delete(f"/invoices/{invoice['id']}")
    assert response.status_code == 200
    assert response.json() == {"deleted": invoice["id"]}


def test_past_due_listing(api, make_invoice):
    make_invoice(due_date=date(2024, 5, 20))
    response = api.get("/invoices/past-due", params={"as_of": "2024-06-03"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["items"][0]["days_past_due"] == 14
    assert body["items"][0]["aging_bucket"] == "0-30"


def test_recurring_endpoints(api, client_id):
    created = api.post(
        "/recurring-invoices",
        json={
            "client_id": client_id,
            "title": "Hosting",
            "frequency": "monthly",
            "start_date": "2024-05-03",
            "items": [{"description": "Hosting", "unit_price": "49.00"}],
        },
    )
    assert created.status_code == 201
    template = created.json()
    assert template["next_date"] == "2024-06-03"

    generated = api.post(f"/recurring-invoices/{template['id']}/generate")
    assert generated.status_code == 200
    assert generated.json()["next_date"] == "2024-07-03"

    assert api.post(f"/recurring-invoices/{template['id']}/cancel").json()["status"] == "canceled"
    assert [item["id"] for item in api.get("/recurring-invoices", params={"status": "canceled"}).json()] == [template["id"]]
    assert api.post(f"/recurring-invoices/{template['id']}/cancel").status_code == 409


def test_analytics_endpoints(api, make_invoice):
    make_invoice()
    summary = api.get("/analytics/summary")
    assert summary.status_code == 200
    assert summary.json()["total_invoices"] == 1

    assert api.get("/analytics/trends", params={"period": "hour"}).status_code == 400
    assert api.get("/analytics/forecast", params={"months": 2}).json()["months"] == 2
    assert api.get("/analytics/overdue").status_code == 200
    assert api.get("/analytics/clients").json()[0]["client_name"] == "Acme Corp"
