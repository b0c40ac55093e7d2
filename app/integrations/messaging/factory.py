from __future__ import annotations

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integrations_mode
from app.integrations.messaging.base import MessagingProvider
from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.integrations.messaging.whatsapp_cloud_provider import WhatsAppCloudMessagingProvider, whatsapp_health
from app.utils.env import env_str


def messaging_provider_name() -> str:
    return (env_str("MESSAGING_PROVIDER", "mock") or "mock").lower()


def build_messaging_provider() -> MessagingProvider:
    mode = integrations_mode()
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:messaging")

    provider = messaging_provider_name()
    if provider == "mock":
        return MockMessagingProvider()
    if provider != "whatsapp_cloud":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:messaging_provider={provider}")

    missing = whatsapp_health().get("missing", [])
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {', '.join(missing)}")
    return WhatsAppCloudMessagingProvider(
        access_token=env_str("WHATSAPP_ACCESS_TOKEN"),
        phone_number_id=env_str("WHATSAPP_PHONE_NUMBER_ID"),
        api_version=env_str("WHATSAPP_API_VERSION", "v19.0"),
    )


def messaging_health() -> dict:
    mode = integrations_mode()
    provider = messaging_provider_name()
    missing = whatsapp_health().get("missing", []) if provider == "whatsapp_cloud" else []
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "mode": mode,
        "provider": provider,
        "missing": missing,
    }
