"""
Orchestrator - Credentials.

============================================================
RESPONSIBILITY
============================================================
Resolve exchange API credentials for a connection. Storage
and encryption of credentials live outside this system; here
they are read from the environment.

Lookup order for user 42 on bybit:
  BYBIT_API_KEY_42 / BYBIT_API_SECRET_42
  BYBIT_API_KEY    / BYBIT_API_SECRET

============================================================
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from exchange.logging_utils import mask_value
from reconciliation.errors import CredentialError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str
    testnet: bool = False

    def __repr__(self) -> str:
        return f"Credentials(api_key={mask_value(self.api_key)}, api_secret=***, testnet={self.testnet})"

    __str__ = __repr__


class CredentialResolver(ABC):
    """Resolves credentials for (user, exchange)."""

    @abstractmethod
    def resolve(self, user_id: int, exchange: str) -> Credentials:
        """
        Raises:
            CredentialError: If no usable credentials exist
        """
        pass


class EnvCredentialResolver(CredentialResolver):
    """Environment-variable credential lookup (.env honored)."""

    def __init__(self, environ: Optional[dict] = None, load_env_file: bool = True) -> None:
        if load_env_file and environ is None:
            load_dotenv()
        self._environ = environ if environ is not None else os.environ

    def _lookup(self, name: str, user_id: int) -> Optional[str]:
        return self._environ.get(f"{name}_{user_id}") or self._environ.get(name)

    def resolve(self, user_id: int, exchange: str) -> Credentials:
        prefix = exchange.upper()
        api_key = self._lookup(f"{prefix}_API_KEY", user_id)
        api_secret = self._lookup(f"{prefix}_API_SECRET", user_id)

        if not api_key or not api_secret:
            raise CredentialError(
                f"No {exchange} credentials for user {user_id} "
                f"(set {prefix}_API_KEY[_{user_id}] and {prefix}_API_SECRET[_{user_id}])",
                user_id=user_id,
                exchange=exchange,
            )

        testnet = (self._lookup(f"{prefix}_TESTNET", user_id) or "").lower() in ("1", "true", "yes")
        logger.debug(f"Resolved {exchange} credentials for user {user_id}: key={mask_value(api_key)}")
        return Credentials(api_key=api_key, api_secret=api_secret, testnet=testnet)
