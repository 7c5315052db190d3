# reservation_engine/infrastructure/payments/registry.py

import logging
import threading

from reservation_engine.config import EngineSettings, RazorpayConfig, StripeConfig
from reservation_engine.domain.exceptions import ProviderNotConfiguredError
from reservation_engine.domain.models import PaymentProvider
from reservation_engine.infrastructure.payments.gateway import PaymentGateway
from reservation_engine.infrastructure.payments.razorpay_gateway import RazorpayGateway
from reservation_engine.infrastructure.payments.stripe_gateway import StripeGateway


logger = logging.getLogger(__name__)


def build_gateway(payment_config) -> PaymentGateway:
    if isinstance(payment_config, RazorpayConfig):
        return RazorpayGateway(
            key_id=payment_config.key_id,
            key_secret=payment_config.key_secret,
            webhook_secret=payment_config.webhook_secret,
        )
    if isinstance(payment_config, StripeConfig):
        return StripeGateway(
            secret_key=payment_config.secret_key,
            webhook_secret=payment_config.webhook_secret,
        )
    raise TypeError(f"Unsupported payment config {type(payment_config).__name__}")


class GatewayRegistry:
    """
    Tenant id -> payment gateway, following each tenant's configured
    provider. Gateways are built on first use.
    """

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self._gateways: dict[str, PaymentGateway] = {}
        self._lock = threading.Lock()

    def register(self, tenant_id: str, gateway: PaymentGateway) -> None:
        with self._lock:
            self._gateways[tenant_id] = gateway

    def get(self, tenant_id: str, provider: PaymentProvider | str | None = None) -> PaymentGateway:
        """
        Returns the tenant's gateway. When `provider` is given it must match
        the tenant's configured provider.
        """
        with self._lock:
            gateway = self._gateways.get(tenant_id)
            if gateway is None:
                payment_config = self.settings.tenant(tenant_id).payment
                if payment_config is None:
                    raise ProviderNotConfiguredError(tenant_id, str(provider or "any"))
                gateway = build_gateway(payment_config)
                self._gateways[tenant_id] = gateway
                logger.info("Payment gateway %s ready for tenant %s", gateway.provider.value, tenant_id)

        if provider is not None and PaymentProvider(provider) != gateway.provider:
            raise ProviderNotConfiguredError(tenant_id, PaymentProvider(provider).value)
        return gateway
