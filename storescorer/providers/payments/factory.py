from __future__ import annotations

from storescorer.providers.payments.base import PaymentProvider
from storescorer.providers.payments.stripe_provider import StripePaymentProvider


_provider: PaymentProvider | None = None


def get_payment_provider() -> PaymentProvider:
    # Process-wide provider built on first use.
    global _provider
    if _provider is None:
        _provider = StripePaymentProvider()
    return _provider


async def close_payment_provider() -> None:
    global _provider
    provider = _provider
    _provider = None
    if provider is not None:
        await provider.close()
