"""Per-merchant credential providers.

The reconciler never acquires or refreshes tokens; it only asks a provider for
the merchant's current access token. Backends:
- InMemoryCredentialStore: For development/testing
- EnvCredentialProvider: Reads SQUARE_ACCESS_TOKEN[_<MERCHANT>] from the environment
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


class MissingCredentialError(Exception):
    """No access token is configured for the merchant."""
    def __init__(self, merchant_id: str):
        super().__init__(f"Merchant {merchant_id} has no access token configured")
        self.merchant_id = merchant_id


@dataclass
class MerchantCredential:
    """Access token record with metadata."""
    merchant_id: str
    access_token: str
    scopes: List[str] = field(default_factory=list)
    stored_at: datetime = field(default_factory=datetime.utcnow)
    last_used_at: Optional[datetime] = None


class CredentialProvider(ABC):
    """Abstract source of per-merchant access tokens."""

    @abstractmethod
    async def get_access_token(self, merchant_id: str) -> str:
        """Return the merchant's access token or raise MissingCredentialError."""
        pass


class InMemoryCredentialStore(CredentialProvider):
    """In-memory credential storage for development/testing.

    WARNING: Tokens are lost on restart. Use only for development.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self._credentials: Dict[str, MerchantCredential] = {}
        self._lock = threading.Lock()
        for merchant_id, token in (tokens or {}).items():
            self.store(MerchantCredential(merchant_id=merchant_id, access_token=token))

    def store(self, credential: MerchantCredential) -> None:
        with self._lock:
            self._credentials[credential.merchant_id] = credential

    def delete(self, merchant_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(merchant_id, None) is not None

    def list_merchants(self) -> List[str]:
        with self._lock:
            return sorted(self._credentials)

    async def get_access_token(self, merchant_id: str) -> str:
        with self._lock:
            credential = self._credentials.get(merchant_id)
            if credential is None or not credential.access_token:
                raise MissingCredentialError(merchant_id)
            credential.last_used_at = datetime.utcnow()
            return credential.access_token


class EnvCredentialProvider(CredentialProvider):
    """Tokens from environment variables.

    Looks up SQUARE_ACCESS_TOKEN_<MERCHANT_ID> first (merchant id upper-cased,
    non-alphanumerics replaced by underscores), then SQUARE_ACCESS_TOKEN.
    """

    def __init__(self, prefix: str = "SQUARE_ACCESS_TOKEN"):
        self.prefix = prefix

    def _merchant_var(self, merchant_id: str) -> str:
        safe = "".join(c if c.isalnum() else "_" for c in merchant_id).upper()
        return f"{self.prefix}_{safe}"

    async def get_access_token(self, merchant_id: str) -> str:
        token = os.getenv(self._merchant_var(merchant_id)) or os.getenv(self.prefix)
        if not token:
            raise MissingCredentialError(merchant_id)
        return token
