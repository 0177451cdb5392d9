from fastapi.testclient import TestClient

from creditmeter.main import app


def test_health():
    with TestClient(app) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}
        assert "X-Request-ID" in r.headers
