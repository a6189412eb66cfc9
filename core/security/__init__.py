"""Security module - per-merchant credential providers."""

from core.security.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    InMemoryCredentialStore,
    MerchantCredential,
    MissingCredentialError,
)

__all__ = [
    "CredentialProvider",
    "EnvCredentialProvider",
    "InMemoryCredentialStore",
    "MerchantCredential",
    "MissingCredentialError",
]
