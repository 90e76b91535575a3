from renewals.clients.billing import BillingClient, InMemoryBillingClient, YouniumClient
from renewals.clients.crm import CrmClient, HubSpotClient, InMemoryCrmClient
from renewals.core.config import Settings, get_settings


def build_billing_client(settings: Settings | None = None) -> BillingClient:
    settings = settings or get_settings()
    if settings.billing_backend.lower() == "inmemory":
        return InMemoryBillingClient()
    return YouniumClient(
        base_url=settings.younium_base_url,
        client_id=settings.younium_client_id,
        secret=settings.younium_secret,
        legal_entity=settings.younium_legal_entity,
        api_version=settings.younium_api_version,
        charges_page_size=settings.snapshot_page_size,
        subscriptions_page_size=settings.ingest_page_size,
        timeout=settings.http_timeout_seconds,
    )


def build_crm_client(settings: Settings | None = None) -> CrmClient:
    settings = settings or get_settings()
    if settings.crm_backend.lower() == "inmemory":
        return InMemoryCrmClient()
    return HubSpotClient(
        token=settings.hubspot_private_app_token,
        base_url=settings.hubspot_base_url,
        timeout=settings.http_timeout_seconds,
    )


__all__ = [
    "BillingClient",
    "CrmClient",
    "HubSpotClient",
    "InMemoryBillingClient",
    "InMemoryCrmClient",
    "YouniumClient",
    "build_billing_client",
    "build_crm_client",
]
