"""Email provider connectors."""

from .base import EmailProvider, ProviderError, is_permanent_error
from .imap import ImapProvider

__all__ = [
    "EmailProvider",
    "ImapProvider",
    "ProviderError",
    "is_permanent_error",
]
