from conftest import login, register


def _setup_share(client):
    """jane creates a sale and shares it with bob. Leaves the client logged in as bob."""
    register(client, "bob", email="bob@dealer.test")
    register(client, "jane", email="jane@dealer.test")
    sale = client.post("/api/sales", json={
        "date": "2024-03-15", "stock_number": "S1", "customer_name": "Lee",
        "sale_type": "Used", "sale_price": 18_000,
    }).json()
    resp = client.post(f"/api/sales/{sale['id']}/share", json={"email": "Bob@Dealer.test"})
    assert resp.status_code == 200, resp.text
    login(client, "bob")
    return sale, resp.json()["sale"]


def test_share_marks_sale_pending(client):
    _, shared = _setup_share(client)
    assert shared["shared_status"] == "pending"
    assert shared["shared_with_email"] == "bob@dealer.test"


def test_recipient_sees_notification(client):
    sale, _ = _setup_share(client)

    notes = client.get("/api/notifications").json()["notifications"]
    assert len(notes) == 1
    note = notes[0]
    assert note["type"] == "shared_sale_pending"
    assert note["status"] == "pending"
    assert note["sale"]["id"] == sale["id"]
    assert note["sale"]["stock_number"] == "S1"
    assert note["sale"]["date"] == "2024-03-15"


def test_pending_share_not_on_recipient_dashboard(client):
    _setup_share(client)
    dash = client.get("/api/dashboard", params={"month": "2024-03"}).json()
    assert dash["sales"] == []


def test_accept_share(client):
    sale, _ = _setup_share(client)

    resp = client.post(f"/api/sales/{sale['id']}/respond", json={"response": "accepted"})
    assert resp.status_code == 200
    assert resp.json()["sale"]["shared_status"] == "accepted"

    assert client.get("/api/notifications").json()["notifications"] == []

    dash = client.get("/api/dashboard", params={"month": "2024-03"}).json()
    assert [s["id"] for s in dash["sales"]] == [sale["id"]]
    assert dash["rows"][0]["shared"] is True


def test_reject_share(client):
    sale, _ = _setup_share(client)
    resp = client.post(f"/api/sales/{sale['id']}/respond", json={"response": "rejected"})
    assert resp.json()["sale"]["shared_status"] == "rejected"

    dash = client.get("/api/dashboard", params={"month": "2024-03"}).json()
    assert dash["sales"] == []

    login(client, "jane")
    dash = client.get("/api/dashboard", params={"month": "2024-03"}).json()
    assert dash["rows"][0]["shared_status"] == "rejected"


def test_invalid_response(client):
    sale, _ = _setup_share(client)
    resp = client.post(f"/api/sales/{sale['id']}/respond", json={"response": "maybe"})
    assert resp.status_code == 422


def test_only_recipient_can_respond(client):
    sale, _ = _setup_share(client)
    login(client, "jane")
    resp = client.post(f"/api/sales/{sale['id']}/respond", json={"response": "accepted"})
    assert resp.status_code == 404


def test_share_with_unknown_email(client):
    register(client, "jane")
    sale = client.post("/api/sales", json={"date": "2024-03-15", "sale_price": 18_000}).json()
    resp = client.post(f"/api/sales/{sale['id']}/share", json={"email": "ghost@dealer.test"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Recipient not found"


def test_share_with_self(client):
    register(client, "jane", email="jane@dealer.test")
    sale = client.post("/api/sales", json={"date": "2024-03-15", "sale_price": 18_000}).json()
    resp = client.post(f"/api/sales/{sale['id']}/share", json={"email": "jane@dealer.test"})
    assert resp.status_code == 400


def test_share_requires_valid_email(client):
    register(client, "jane")
    sale = client.post("/api/sales", json={"date": "2024-03-15", "sale_price": 18_000}).json()
    resp = client.post(f"/api/sales/{sale['id']}/share", json={"email": "not-an-email"})
    assert resp.status_code == 422


def test_mark_notification_read(client):
    _setup_share(client)
    note = client.get("/api/notifications").json()["notifications"][0]

    assert client.post(f"/api/notifications/{note['id']}/read").json() == {"ok": True}
    assert client.get("/api/notifications").json()["notifications"] == []


def test_cannot_mark_someone_elses_notification(client):
    _setup_share(client)
    note = client.get("/api/notifications").json()["notifications"][0]
    login(client, "jane")
    assert client.post(f"/api/notifications/{note['id']}/read").status_code == 404


def test_reshare_supersedes_previous_invitation(client):
    register(client, "bob", email="bob@dealer.test")
    register(client, "carl", email="carl@dealer.test")
    register(client, "jane", email="jane@dealer.test")
    sale = client.post("/api/sales", json={"date": "2024-03-15", "sale_price": 18_000}).json()
    assert client.post(f"/api/sales/{sale['id']}/share", json={"email": "bob@dealer.test"}).status_code == 200
    assert client.post(f"/api/sales/{sale['id']}/share", json={"email": "carl@dealer.test"}).status_code == 200

    login(client, "bob")
    assert client.get("/api/notifications").json()["notifications"] == []
    assert client.post(f"/api/sales/{sale['id']}/respond", json={"response": "accepted"}).status_code == 404

    login(client, "carl")
    notes = client.get("/api/notifications").json()["notifications"]
    assert [n["sale_id"] for n in notes] == [sale["id"]]
