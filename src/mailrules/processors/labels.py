"""Resolve human-readable label and folder names to provider ids."""

import logging

from mailrules.providers.base import EmailProvider

logger = logging.getLogger(__name__)


class LabelResolver:
    """Caches name -> id lookups for the duration of one execution.

    Names are compared case-insensitively. A new resolver is created per
    executed rule so nothing is shared between handler invocations.
    """

    def __init__(self, provider: EmailProvider) -> None:
        self.provider = provider
        self._labels: dict[str, str] = {}
        self._folders: dict[str, str] = {}

    async def resolve_label(self, name: str) -> str:
        key = name.strip().lower()
        if key not in self._labels:
            self._labels[key] = await self.provider.resolve_or_create_label(name.strip())
            logger.debug(f"Resolved label '{name}' to {self._labels[key]}")
        return self._labels[key]

    async def resolve_folder(self, name: str) -> str:
        key = name.strip().lower()
        if key not in self._folders:
            self._folders[key] = await self.provider.resolve_or_create_folder(name.strip())
            logger.debug(f"Resolved folder '{name}' to {self._folders[key]}")
        return self._folders[key]
