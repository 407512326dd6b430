"""Provider client bundle injected into checkout, refund and webhook code"""
from dataclasses import dataclass, field

from faithflow.services.paystack_service import PaystackClient, PaystackClientFactory, paystack_clients
from faithflow.services.stripe_service import StripeClientFactory, StripeGateway, stripe_clients


@dataclass
class ProviderClients:
    stripe_factory: StripeClientFactory = field(default_factory=lambda: stripe_clients)
    paystack_factory: PaystackClientFactory = field(default_factory=lambda: paystack_clients)

    def stripe(self) -> StripeGateway:
        return self.stripe_factory.get()

    def paystack(self) -> PaystackClient:
        return self.paystack_factory.get()


_default_clients = ProviderClients()


def get_provider_clients() -> ProviderClients:
    """FastAPI dependency returning the settings-backed clients"""
    return _default_clients
