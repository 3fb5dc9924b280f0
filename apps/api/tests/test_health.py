from unittest.mock import patch

import pytest


@pytest.mark.asyncio
async def test_readiness_lists_missing_configuration(client):
    with (
        patch("config.settings.STRIPE_SECRET_KEY", "sk_test_123"),
        patch("config.settings.STRIPE_WEBHOOK_SECRET", ""),
    ):
        response = await client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["missing"] == ["OPENAI_API_KEY", "STRIPE_WEBHOOK_SECRET"]


@pytest.mark.asyncio
async def test_readiness_passes_when_configured(client):
    with patch("config.settings.OPENAI_API_KEY", "sk-test"):
        response = await client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {"ready": True}


@pytest.mark.asyncio
async def test_liveness_and_root(client):
    assert (await client.get("/health/live")).json() == {"alive": True}
    root = await client.get("/")
    assert root.json()["name"] == "PodBrief API"
