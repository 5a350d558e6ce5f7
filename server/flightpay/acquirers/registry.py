from __future__ import annotations

from typing import Iterator

import httpx

from flightpay.core.config import Settings
from flightpay.core.errors import AcquirerNotFound, DuplicateAcquirer, RegistryFrozen
from flightpay.core.logging import get_logger

from .base import AcquirerClient
from .razorpay_adapter import RazorpayAdapter
from .stripe_adapter import StripeAdapter

logger = get_logger(__name__)


class AcquirerRegistry:
    """
    Acquirer code -> client mapping, filled at startup and frozen before
    requests are served. Lookups are read-only afterwards.
    """

    def __init__(self) -> None:
        self._clients: dict[str, AcquirerClient] = {}
        self._frozen = False

    def register(self, code: str, client: AcquirerClient) -> None:
        if self._frozen:
            raise RegistryFrozen(f"cannot register {code}: registry is frozen")
        key = code.strip().upper()
        if key in self._clients:
            raise DuplicateAcquirer(f"acquirer {key} is already registered")
        self._clients[key] = client
        logger.info("acquirer.registered", acquirer=key)

    def resolve(self, code: str | None) -> AcquirerClient:
        key = (code or "").strip().upper()
        client = self._clients.get(key)
        if client is None:
            raise AcquirerNotFound(f"acquirer {code!r} is not registered")
        return client

    def freeze(self) -> "AcquirerRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def codes(self) -> list[str]:
        return sorted(self._clients)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.strip().upper() in self._clients

    def __iter__(self) -> Iterator[str]:
        return iter(self.codes())

    def __len__(self) -> int:
        return len(self._clients)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()


def build_registry(settings: Settings, http_client: httpx.AsyncClient) -> AcquirerRegistry:
    registry = AcquirerRegistry()
    registry.register(
        RazorpayAdapter.code,
        RazorpayAdapter(
            http_client,
            base_url=settings.razorpay_base_url,
            timeout=settings.gateway_timeout_seconds,
            merchant_name=settings.app_name,
        ),
    )
    registry.register(
        StripeAdapter.code,
        StripeAdapter(
            base_url=settings.stripe_base_url,
            timeout=settings.gateway_timeout_seconds,
            webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
        ),
    )
    return registry.freeze()
