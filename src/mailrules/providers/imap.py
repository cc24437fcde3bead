"""IMAP email provider."""

import email
import email.policy
import logging
import re
from datetime import datetime
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any

from imapclient import DRAFT, SEEN, IMAPClient
from imapclient.exceptions import IMAPClientError

from mailrules.config import IMAPConfig
from mailrules.models import ActionResult, ActionType, Attachment, Email

from .base import EmailProvider

logger = logging.getLogger(__name__)

_MESSAGE_ID_PATTERN = re.compile(r"<[^>]+>")


def make_message_id(folder: str, uid: int) -> str:
    """Provider message ids are `<folder>:<uid>`; UIDs are only unique per folder."""
    return f"{folder}:{uid}"


def split_message_id(message_id: str) -> tuple[str, int]:
    folder, _, uid = message_id.rpartition(":")
    if not folder or not uid.isdigit():
        raise ValueError(f"Not an IMAP message id: {message_id}")
    return folder, int(uid)


def _thread_key(msg: EmailMessage) -> str | None:
    """Root Message-ID of the conversation a message belongs to."""
    for header in ("References", "In-Reply-To"):
        ids = _MESSAGE_ID_PATTERN.findall(str(msg.get(header, "")))
        if ids:
            return ids[0]
    return msg.get("Message-ID")


def parse_message(raw: bytes, message_id: str, folder: str, source: str, flags: list[str]) -> Email:
    """Build an Email from an RFC 822 message."""
    msg: EmailMessage = email.message_from_bytes(raw, policy=email.policy.default)  # type: ignore

    body_text = ""
    body_html = None
    attachments: list[Attachment] = []

    if msg.is_multipart():
        for part in msg.walk():
            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", ""))

            if "attachment" in disposition:
                attachments.append(
                    Attachment(
                        filename=part.get_filename() or "unnamed",
                        content_type=content_type,
                        size=len(part.get_payload(decode=True) or b""),
                        content_id=part.get("Content-ID"),
                    )
                )
            elif content_type == "text/plain" and not body_text:
                payload = part.get_payload(decode=True)
                if payload:
                    body_text = payload.decode("utf-8", errors="replace")
            elif content_type == "text/html" and body_html is None:
                payload = part.get_payload(decode=True)
                if payload:
                    body_html = payload.decode("utf-8", errors="replace")
    else:
        payload = msg.get_payload(decode=True)
        if payload:
            body_text = payload.decode("utf-8", errors="replace")

    date = None
    if msg.get("Date"):
        try:
            date = parsedate_to_datetime(str(msg["Date"]))
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Date header on {message_id}: {msg['Date']}")

    return Email(
        id=message_id,
        thread_id=_thread_key(msg),
        source=source,
        message_id=msg.get("Message-ID"),
        subject=str(msg.get("Subject", "")),
        from_addr=str(msg.get("From", "")),
        to_addrs=[a.strip() for a in str(msg.get("To") or "").split(",") if a.strip()],
        cc_addrs=[a.strip() for a in str(msg.get("Cc") or "").split(",") if a.strip()],
        date=date,
        body_text=body_text,
        body_html=body_html,
        headers={key: str(value) for key, value in msg.items()},
        folder=folder,
        flags=flags,
        attachments=attachments,
    )


class ImapProvider(EmailProvider):
    """Runs rule actions against an IMAP mailbox.

    Gmail labels are used when the server advertises X-GM-EXT-1; other
    servers get IMAP keywords instead. Outgoing mail is never sent, only
    saved as a draft.
    """

    def __init__(self, config: IMAPConfig, name: str = "imap") -> None:
        self.config = config
        self.name = name
        self._client: IMAPClient | None = None

    async def connect(self) -> None:
        """Connect to IMAP server."""
        if self._client is not None:
            return
        self._client = IMAPClient(
            self.config.host,
            port=self.config.port,
            ssl=self.config.use_ssl,
        )
        self._client.login(self.config.username, self.config.password)
        logger.debug(f"Connected to {self.config.host} as {self.config.username}")

    async def disconnect(self) -> None:
        """Disconnect from IMAP server."""
        if self._client:
            try:
                self._client.logout()
            except (IMAPClientError, OSError) as e:
                logger.debug(f"Error during IMAP logout: {e}")
            self._client = None

    async def _connected(self) -> IMAPClient:
        await self.connect()
        assert self._client is not None
        return self._client

    def _fetch(self, client: IMAPClient, folder: str, uids: list[int]) -> list[Email]:
        if not uids:
            return []
        response = client.fetch(uids, ["RFC822", "FLAGS"])
        messages = []
        for uid in uids:
            data = response.get(uid)
            if not data:
                continue
            flags = [f.decode() if isinstance(f, bytes) else str(f) for f in data.get(b"FLAGS", [])]
            messages.append(
                parse_message(data[b"RFC822"], make_message_id(folder, uid), folder, self.name, flags)
            )
        return messages

    async def get_message(self, message_id: str) -> Email | None:
        folder, uid = split_message_id(message_id)
        client = await self._connected()
        try:
            client.select_folder(folder, readonly=True)
        except IMAPClientError:
            logger.info(f"Folder {folder} no longer exists")
            return None
        messages = self._fetch(client, folder, [uid])
        return messages[0] if messages else None

    async def get_thread_messages(self, thread_id: str) -> list[Email]:
        client = await self._connected()
        messages: list[Email] = []
        for folder in ("INBOX", self.config.sent_folder):
            try:
                client.select_folder(folder, readonly=True)
            except IMAPClientError:
                logger.debug(f"Skipping missing folder {folder}")
                continue
            uids = client.search(
                ["OR", "HEADER", "Message-ID", thread_id, "HEADER", "References", thread_id]
            )
            messages.extend(self._fetch(client, folder, list(uids)))

        return sorted(messages, key=lambda m: m.date.timestamp() if m.date else 0.0)

    async def has_previous_communication(
        self,
        sender: str,
        before: datetime | None,
        exclude_message_id: str | None = None,
    ) -> bool:
        client = await self._connected()
        excluded = split_message_id(exclude_message_id) if exclude_message_id else None

        for folder, field in (("INBOX", "FROM"), (self.config.sent_folder, "TO")):
            criteria: list[Any] = [field, sender]
            if before:
                criteria += ["BEFORE", before.date()]
            try:
                client.select_folder(folder, readonly=True)
            except IMAPClientError:
                continue
            uids = set(client.search(criteria))
            if excluded and excluded[0] == folder:
                uids.discard(excluded[1])
            if uids:
                return True
        return False

    async def run_action(
        self,
        email: Email,
        action_type: ActionType,
        params: dict[str, Any],
    ) -> ActionResult:
        folder, uid = split_message_id(email.id)
        client = await self._connected()

        try:
            if action_type == ActionType.ARCHIVE:
                client.select_folder(folder)
                client.move([uid], self.config.archive_folder)

            elif action_type == ActionType.LABEL:
                label = params.get("label_id") or params.get("label")
                if not label:
                    return ActionResult(success=False, error_code="MISSING_LABEL")
                client.select_folder(folder)
                if self._is_gmail(client):
                    client.add_gmail_labels([uid], [label])
                else:
                    client.add_flags([uid], [_keyword(label)])

            elif action_type == ActionType.MOVE_FOLDER:
                target = params.get("folder_id") or params.get("folder_name")
                if not target:
                    return ActionResult(success=False, error_code="MISSING_FOLDER")
                client.select_folder(folder)
                client.move([uid], target)

            elif action_type == ActionType.MARK_READ:
                client.select_folder(folder)
                client.add_flags([uid], [SEEN])

            elif action_type == ActionType.MARK_SPAM:
                client.select_folder(folder)
                client.move([uid], self.config.spam_folder)

            elif action_type in (ActionType.DRAFT_EMAIL, ActionType.REPLY):
                draft = self._build_draft(email, params)
                client.append(self.config.drafts_folder, draft.as_bytes(), flags=[DRAFT])

            else:
                logger.info(f"IMAP provider cannot perform {action_type.value}")
                return ActionResult(success=False, error_code="UNSUPPORTED_ACTION")

        except IMAPClientError as e:
            logger.warning(f"IMAP {action_type.value} on {email.id} failed: {e}")
            return ActionResult(success=False, error_code="IMAP_ERROR")

        return ActionResult(success=True)

    async def resolve_or_create_label(self, name: str) -> str:
        client = await self._connected()
        if self._is_gmail(client):
            return await self.resolve_or_create_folder(name)
        return _keyword(name)

    async def resolve_or_create_folder(self, name: str) -> str:
        client = await self._connected()
        for _flags, _delimiter, folder_name in client.list_folders():
            if str(folder_name).lower() == name.lower():
                return str(folder_name)
        client.create_folder(name)
        logger.info(f"Created folder {name}")
        return name

    def _is_gmail(self, client: IMAPClient) -> bool:
        return client.has_capability("X-GM-EXT-1")

    def _build_draft(self, email_obj: Email, params: dict[str, Any]) -> EmailMessage:
        draft = EmailMessage()
        draft["From"] = self.config.username
        draft["To"] = params.get("to") or email_obj.from_addr
        if params.get("cc"):
            draft["Cc"] = params["cc"]
        if params.get("bcc"):
            draft["Bcc"] = params["bcc"]

        subject = params.get("subject") or email_obj.subject
        if not params.get("subject") and not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"
        draft["Subject"] = subject

        if email_obj.message_id:
            draft["In-Reply-To"] = email_obj.message_id
            draft["References"] = email_obj.message_id

        draft.set_content(params.get("content") or "")
        return draft


def _keyword(label: str) -> str:
    """IMAP keywords cannot contain spaces or specials."""
    return re.sub(r"[^\w.-]", "_", label)
