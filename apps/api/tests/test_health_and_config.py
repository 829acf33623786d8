import pytest

from config import settings, validate_security_settings


@pytest.mark.asyncio
async def test_readiness_requires_webhook_secret_and_mux_credentials(client, monkeypatch):
    monkeypatch.setattr(settings, "MUX_TOKEN_ID", "")
    monkeypatch.setattr(settings, "MUX_TOKEN_SECRET", "")
    monkeypatch.setattr(settings, "MUX_WEBHOOK_SECRET", "")

    response = await client.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["missing"] == ["MUX_WEBHOOK_SECRET", "MUX_TOKEN_ID/MUX_TOKEN_SECRET"]

    monkeypatch.setattr(settings, "MUX_TOKEN_ID", "token-id")
    monkeypatch.setattr(settings, "MUX_TOKEN_SECRET", "token-secret")
    monkeypatch.setattr(settings, "MUX_WEBHOOK_SECRET", "whsec")
    assert (await client.get("/health/ready")).json() == {"ready": True}


@pytest.mark.asyncio
async def test_liveness_probe(client):
    assert (await client.get("/health/live")).json() == {"alive": True}


def test_security_settings_refuse_unsigned_webhooks_in_production(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "a-sufficiently-long-test-secret-value")
    validate_security_settings()

    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    monkeypatch.setattr(settings, "MUX_WEBHOOK_VERIFY_SIGNATURE", False)
    with pytest.raises(ValueError):
        validate_security_settings()

    monkeypatch.setattr(settings, "ENVIRONMENT", "development")
    monkeypatch.setattr(settings, "MUX_WEBHOOK_VERIFY_SIGNATURE", True)
    monkeypatch.setattr(settings, "MUX_WEBHOOK_SECRET", "")
    with pytest.raises(ValueError):
        validate_security_settings()


def test_security_settings_reject_default_jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "change_me_in_production")
    with pytest.raises(ValueError):
        validate_security_settings()
