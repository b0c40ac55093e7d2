from __future__ import annotations

from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integrations_mode
from app.integrations.payments.base import PaymentsProvider
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.integrations.payments.paystack_provider import PaystackPaymentsProvider
from app.integrations.payments.signature import webhook_secret
from app.utils.env import env_str


def payments_provider_name() -> str:
    return (env_str("PAYMENTS_PROVIDER", "mock") or "mock").lower()


def build_payments_provider() -> PaymentsProvider:
    mode = integrations_mode()
    provider = payments_provider_name()

    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = env_str("PAYSTACK_SECRET_KEY")
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")

    return PaystackPaymentsProvider(secret_key=secret_key)


def payment_health() -> dict:
    mode = integrations_mode()
    provider = payments_provider_name()
    missing = []
    if mode != "disabled" and provider == "paystack":
        if not env_str("PAYSTACK_SECRET_KEY"):
            missing.append("PAYSTACK_SECRET_KEY")
    if not webhook_secret():
        missing.append("PAYSTACK_WEBHOOK_SECRET")
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
