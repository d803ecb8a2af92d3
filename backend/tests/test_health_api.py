def test_health_ok(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["db"] is True
    assert body["payment_adapter"] is True
    assert body["notification_adapter"] is True


def test_unknown_route_uses_error_body(client):
    res = client.get("/api/nowhere")
    assert res.status_code == 404
    assert "error" in res.json()
