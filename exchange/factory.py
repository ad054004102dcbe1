"""
Exchange Client - Adapter Factory.

Sync jobs, the stream and the candle collector ask for an
adapter by exchange name and never import a concrete class.
An adapter built without credentials can still fetch klines.
"""

import logging
from typing import Callable, Dict, List, Optional

from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


def _build_bybit(api_key: Optional[str], api_secret: Optional[str], testnet: bool) -> ExchangeAdapter:
    from .bybit import BybitAdapter
    return BybitAdapter(api_key=api_key or "", api_secret=api_secret or "", testnet=testnet)


def _build_mock(api_key: Optional[str], api_secret: Optional[str], testnet: bool) -> ExchangeAdapter:
    from .mock import MockConfig, MockExchangeAdapter
    config = MockConfig()
    if api_key:
        config.api_key = api_key
    if api_secret:
        config.api_secret = api_secret
    return MockExchangeAdapter(config)


class AdapterFactory:
    """Exchange name to adapter builder."""

    _builders: Dict[str, Callable[[Optional[str], Optional[str], bool], ExchangeAdapter]] = {
        "bybit": _build_bybit,
        "mock": _build_mock,
    }

    @classmethod
    def list_supported(cls) -> List[str]:
        return sorted(cls._builders)

    @classmethod
    def create(
        cls,
        exchange_id: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        testnet: bool = False,
    ) -> ExchangeAdapter:
        """
        Raises:
            ValueError: exchange_id has no builder
        """
        builder = cls._builders.get(exchange_id.lower())
        if builder is None:
            raise ValueError(f"Unsupported exchange: {exchange_id}")
        logger.debug(f"Creating {exchange_id} adapter (testnet={testnet}, signed={bool(api_key)})")
        return builder(api_key, api_secret, testnet)


def create_adapter(
    exchange_id: str,
    api_key: Optional[str] = None,
    api_secret: Optional[str] = None,
    testnet: bool = False,
) -> ExchangeAdapter:
    return AdapterFactory.create(exchange_id, api_key=api_key, api_secret=api_secret, testnet=testnet)
