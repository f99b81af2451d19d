from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_health_endpoint_returns_expected_shape() -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "Meeting Agent API"
    assert data["environment"] == "test"
    assert data["store"] == "memory"
    assert "timestamp" in data
