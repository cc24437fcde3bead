"""Base class for email provider connectors."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from mailrules.models import ActionResult, ActionType, Email

# Provider error codes that retrying will not fix
PERMANENT_ERROR_CODES = frozenset(
    {"PERMISSION_DENIED", "NOT_FOUND", "INVALID_ARGUMENT", "FAILED_PRECONDITION"}
)

PERMANENT_ERROR_MESSAGES = ("permission denied", "invalid argument", "not found", "forbidden")


class ProviderError(Exception):
    """An error raised by a provider call, optionally carrying a provider code."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


def is_permanent_error(error: BaseException) -> bool:
    """Whether an exception from a provider call should not be retried."""
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in PERMANENT_ERROR_CODES:
        return True
    message = str(error).lower()
    return any(text in message for text in PERMANENT_ERROR_MESSAGES)


class EmailProvider(ABC):
    """Abstract base class for the mailbox a rule acts on.

    Action calls report expected failures as an ActionResult with an error
    code; anything raised is treated as unexpected by the executor.
    """

    name: str

    async def connect(self) -> None:
        """Establish connection to the provider, if it needs one."""

    async def disconnect(self) -> None:
        """Close connection to the provider."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Email | None:
        """Fetch a message by provider id, or None if it no longer exists."""
        ...

    @abstractmethod
    async def get_thread_messages(self, thread_id: str) -> list[Email]:
        """All messages of a thread, oldest first."""
        ...

    @abstractmethod
    async def has_previous_communication(
        self,
        sender: str,
        before: datetime | None,
        exclude_message_id: str | None = None,
    ) -> bool:
        """Whether any message to or from `sender` predates `before`.

        Args:
            sender: Normalized sender key, a full address or a bare domain.
            before: Cutoff; only earlier messages count.
            exclude_message_id: The message being evaluated, never counted.
        """
        ...

    @abstractmethod
    async def run_action(
        self,
        email: Email,
        action_type: ActionType,
        params: dict[str, Any],
    ) -> ActionResult:
        """Perform one action on a message."""
        ...

    @abstractmethod
    async def resolve_or_create_label(self, name: str) -> str:
        """Return the provider id of the label called `name`, creating it if missing."""
        ...

    async def resolve_or_create_folder(self, name: str) -> str:
        """Return the provider id of a folder. Providers without folders use labels."""
        return await self.resolve_or_create_label(name)

    async def __aenter__(self) -> "EmailProvider":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()
