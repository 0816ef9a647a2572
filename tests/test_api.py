API = "/api/v1"


def _create(client, auth_headers, seed, order_index=0):
    response = client.post(
        f"{API}/deliveries", json={"order_id": seed.orders[order_index].id}, headers=auth_headers(seed.staff)
    )
    assert response.status_code == 200, response.text
    return response.json()["delivery"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_login_json_returns_token_and_profile(client, seed):
    response = client.post(f"{API}/auth/login-json", json={"email": "rider@test.com", "password": "secret123"})
    assert response.status_code == 200

    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "courier"
    assert body["user"]["courier_id"] == seed.courier.id

    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "rider@test.com"


def test_login_with_wrong_password(client, seed):
    response = client.post(f"{API}/auth/login-json", json={"email": "rider@test.com", "password": "nope-nope"})
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_deliveries_require_authentication(client, seed):
    response = client.get(f"{API}/deliveries")
    assert response.status_code in (401, 403)


def test_courier_cannot_create_delivery(client, seed, auth_headers):
    response = client.post(
        f"{API}/deliveries", json={"order_id": seed.orders[0].id}, headers=auth_headers(seed.rider_user)
    )
    assert response.status_code == 403
    assert response.json()["error_code"] == "AuthorizationError"


def test_invalid_status_payload_is_422(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)
    response = client.put(
        f"{API}/deliveries/{delivery['id']}/status", json={"status": "teleported"}, headers=auth_headers(seed.staff)
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "REQUEST_VALIDATION_ERROR"


def test_illegal_transition_is_400(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)
    response = client.put(
        f"{API}/deliveries/{delivery['id']}/status", json={"status": "delivered"}, headers=auth_headers(seed.staff)
    )
    assert response.status_code == 400
    assert response.json()["details"]["current_status"] == "pending"


def test_full_flow_over_http(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)
    delivery_id = delivery["id"]

    assigned = client.post(
        f"{API}/deliveries/{delivery_id}/assign",
        json={"courier_id": seed.courier.id},
        headers=auth_headers(seed.staff)
    )
    assert assigned.status_code == 200, assigned.text

    rider = auth_headers(seed.rider_user)
    accepted = client.post(f"{API}/deliveries/{delivery_id}/accept", headers=rider)
    assert accepted.json()["delivery"]["status"] == "accepted"

    for status in ["arriving_restaurant", "at_restaurant", "picked_up", "in_transit"]:
        response = client.put(f"{API}/deliveries/{delivery_id}/status", json={"status": status}, headers=rider)
        assert response.status_code == 200, response.text

    location = client.put(
        f"{API}/deliveries/{delivery_id}/location",
        json={"latitude": 40.4250, "longitude": -3.7010, "sequence": 1},
        headers=rider
    )
    assert location.status_code == 200
    assert location.json()["accepted"] is True

    for status in ["arrived", "delivered"]:
        response = client.put(f"{API}/deliveries/{delivery_id}/status", json={"status": status}, headers=rider)
        assert response.status_code == 200, response.text
    assert response.json()["delivery"]["status"] == "delivered"

    mine = client.get(f"{API}/couriers/me/deliveries", headers=rider)
    assert mine.json()["count"] == 1

    customer_view = client.get(f"{API}/deliveries/{delivery_id}", headers=auth_headers(seed.customer))
    assert customer_view.status_code == 200


def test_public_tracking_hides_notes(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)

    response = client.get(f"{API}/deliveries/track/{delivery['delivery_number']}")
    assert response.status_code == 200

    tracking = response.json()["tracking"]
    assert tracking["status"] == "pending"
    assert tracking["current_location"] is None
    assert tracking["history"] == [{"event": "created", "timestamp": tracking["history"][0]["timestamp"]}]


def test_public_tracking_unknown_code(client, seed):
    response = client.get(f"{API}/deliveries/track/DLV-20000101-00000")
    assert response.status_code == 404


def test_payout_webhook_requires_secret(client, seed):
    event = {"transaction_id": "tr_missing", "status": "paid"}

    forbidden = client.post(f"{API}/payouts/webhook", json=event, headers={"X-Webhook-Secret": "wrong"})
    assert forbidden.status_code == 403

    unknown = client.post(f"{API}/payouts/webhook", json=event, headers={"X-Webhook-Secret": "whsec-test"})
    assert unknown.status_code == 404


def test_courier_cannot_run_weekly_payouts(client, seed, auth_headers):
    response = client.post(f"{API}/payouts/weekly", json={}, headers=auth_headers(seed.rider_user))
    assert response.status_code == 403


def test_chat_between_participants(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)
    client.post(
        f"{API}/deliveries/{delivery['id']}/assign",
        json={"courier_id": seed.courier.id},
        headers=auth_headers(seed.staff)
    )

    sent = client.post(
        f"{API}/deliveries/{delivery['id']}/chat", json={"message": "Estoy en el portal"},
        headers=auth_headers(seed.customer)
    )
    assert sent.status_code == 200
    assert sent.json()["chat_message"]["sender_type"] == "customer"

    thread = client.get(f"{API}/deliveries/{delivery['id']}/chat", headers=auth_headers(seed.rider_user))
    assert [m["message"] for m in thread.json()["messages"]] == ["Estoy en el portal"]

    outsider = client.get(f"{API}/deliveries/{delivery['id']}/chat", headers=auth_headers(seed.far_rider_user))
    assert outsider.status_code == 403


def test_damaged_order_issue_is_urgent(client, seed, auth_headers):
    delivery = _create(client, auth_headers, seed)
    client.post(
        f"{API}/deliveries/{delivery['id']}/assign",
        json={"courier_id": seed.courier.id},
        headers=auth_headers(seed.staff)
    )

    response = client.post(
        f"{API}/deliveries/{delivery['id']}/issues",
        json={"issue_type": "order_damaged", "description": "La caja llegó aplastada"},
        headers=auth_headers(seed.rider_user)
    )
    assert response.status_code == 200
    assert response.json()["issue"]["urgent"] is True

    detail = client.get(f"{API}/deliveries/{delivery['id']}", headers=auth_headers(seed.staff)).json()["delivery"]
    assert detail["issues"][0]["type"] == "order_damaged"
    assert detail["status_history"][-1]["event"] == "issue_reported"

    unknown = client.post(
        f"{API}/deliveries/{delivery['id']}/issues",
        json={"issue_type": "alien_abduction", "description": "Desapareció"},
        headers=auth_headers(seed.rider_user)
    )
    assert unknown.status_code == 422
