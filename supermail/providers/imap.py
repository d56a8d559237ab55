"""
IMAP email provider implementation.
Supports generic IMAP servers with SSL/TLS for reading and SMTP for sending.

Message ids are UIDs within the configured mailbox. Labels are IMAP flags.
"""

from __future__ import annotations

import asyncio
import functools
import imaplib
import logging
import re
import smtplib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any, Callable, List, Optional, Tuple, TypeVar, Union

from ..config import ImapConfig
from ..errors import (
    AuthenticationError,
    ErrorCode,
    NotFoundError,
    SuperMailError,
    register_classifier,
)
from ..models import (
    AddLabelsOptions,
    EmailFolder,
    EmailLabel,
    EmailMessage,
    LabelType,
    ListEmailsOptions,
    ListEmailsResponse,
    MoveEmailOptions,
    ProviderType,
    RemoveLabelsOptions,
    SendEmailOptions,
)
from .base import EmailProvider, classify_errors, unsupported, validate_send_options
from .mime import build_mime_message, new_message_id, parse_address, parse_raw_message, reply_subject

logger = logging.getLogger(__name__)

T = TypeVar('T')

ARCHIVE_FOLDER_NAME = "Archive"
TRASH_FOLDER_NAME = "Trash"

# Flags exposed as labels; (id, display name)
SYSTEM_FLAGS: List[Tuple[str, str]] = [
    ('\\Seen', 'Read'),
    ('\\Flagged', 'Starred'),
    ('\\Draft', 'Draft'),
    ('\\Answered', 'Answered'),
]

# SEARCH keys for system flags; anything else is searched as a KEYWORD
FLAG_SEARCH_KEYS = {
    '\\seen': 'SEEN',
    '\\flagged': 'FLAGGED',
    '\\draft': 'DRAFT',
    '\\answered': 'ANSWERED',
    '\\deleted': 'DELETED',
}

_UID_RE = re.compile(rb'UID (\d+)')
_FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)')
_LIST_RE = re.compile(rb'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')
_STATUS_RE = re.compile(rb'(MESSAGES|UNSEEN) (\d+)')

_AUTH_MARKERS = ('AUTHENTICATIONFAILED', 'AUTHENTICATE', 'LOGIN', 'INVALID CREDENTIALS')
_MISSING_MARKERS = ('NONEXISTENT', 'TRYCREATE', "DOESN'T EXIST", 'NOT EXIST', 'UNKNOWN MAILBOX')


@register_classifier(ProviderType.IMAP.value)
def classify_imap_error(error: BaseException, provider: str) -> Optional[SuperMailError]:
    if isinstance(error, smtplib.SMTPAuthenticationError):
        return AuthenticationError(f"SMTP authentication failed: {error}", provider, error)
    if isinstance(error, (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError)):
        return SuperMailError(ErrorCode.SEND_FAILED, f"SMTP server rejected the message: {error}", provider, error)
    if isinstance(error, smtplib.SMTPServerDisconnected):
        return SuperMailError(ErrorCode.NETWORK_ERROR, f"SMTP connection lost: {error}", provider, error)
    if isinstance(error, imaplib.IMAP4.abort):
        return SuperMailError(ErrorCode.NETWORK_ERROR, f"IMAP connection lost: {error}", provider, error)
    if isinstance(error, imaplib.IMAP4.error):
        text = str(error).upper()
        if any(marker in text for marker in _AUTH_MARKERS):
            return AuthenticationError(f"IMAP authentication failed: {error}", provider, error)
        if any(marker in text for marker in _MISSING_MARKERS):
            return NotFoundError(f"IMAP mailbox not found: {error}", provider, original_error=error)
        return SuperMailError(ErrorCode.OPERATION_FAILED, f"IMAP command failed: {error}", provider, error)
    return None


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = name.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: bytes) -> str:
    text = value.decode('utf-8', errors='replace').strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        text = text[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return text


def parse_list_line(line: Union[bytes, Tuple[bytes, bytes]]) -> Optional[Tuple[List[str], Optional[str], str]]:
    """
    Parse one ``LIST`` response line into (flags, delimiter, name).

    Names sent as literals arrive as a (prefix, name) tuple.
    """
    literal_name = None
    if isinstance(line, tuple):
        line, literal_name = line[0], line[1]
    if not line:
        return None
    match = _LIST_RE.match(line)
    if not match:
        return None
    flags = match.group('flags').decode('ascii', errors='replace').split()
    raw_delimiter = match.group('delimiter')
    delimiter = None if raw_delimiter == b'NIL' else _unquote(raw_delimiter)
    if literal_name is not None:
        name = literal_name.decode('utf-8', errors='replace')
    else:
        name = _unquote(match.group('name'))
    return flags, delimiter, name


def parse_fetch_response(data: List[Any]) -> List[Tuple[str, List[str], bytes]]:
    """
    Split a ``UID FETCH (BODY.PEEK[] FLAGS)`` response into (uid, flags, raw).

    Servers may return FLAGS before or after the body literal, in which case
    it arrives in the trailing bytes element.
    """
    results = []
    current: Optional[List[Any]] = None
    for item in data:
        if isinstance(item, tuple):
            header, raw = item[0], item[1]
            uid_match = _UID_RE.search(header)
            flags_match = _FLAGS_RE.search(header)
            current = [
                uid_match.group(1).decode() if uid_match else None,
                flags_match.group(1).decode().split() if flags_match else None,
                raw,
            ]
            results.append(current)
        elif isinstance(item, bytes) and current is not None:
            if current[0] is None:
                uid_match = _UID_RE.search(item)
                if uid_match:
                    current[0] = uid_match.group(1).decode()
            if current[1] is None:
                flags_match = _FLAGS_RE.search(item)
                if flags_match:
                    current[1] = flags_match.group(1).decode().split()
    return [(uid, flags or [], raw) for uid, flags, raw in results if uid is not None]


class IMAPProvider(EmailProvider):
    """
    IMAP email provider for generic email servers.

    A single IMAP session is kept per instance. All protocol commands run on
    one dedicated worker thread, so commands from overlapping calls never
    interleave on the socket. The selected mailbox is still shared state.
    """

    def __init__(self, config: ImapConfig):
        """
        Initialize IMAP provider.

        Args:
            config: IMAP session settings and SMTP submission settings
        """
        self.config = config
        self.mailbox = config.imap.mailbox
        self._connection: Optional[Union[imaplib.IMAP4_SSL, imaplib.IMAP4]] = None
        self._selected: Optional[str] = None
        self._delimiter: Optional[str] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    @property
    def sender(self) -> str:
        return self.config.smtp.from_address or self.config.smtp.username or self.config.imap.username

    # Session ----------------------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking IMAP call on the session thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="supermail-imap")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(self._call, func, *args))

    def _call(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except (imaplib.IMAP4.abort, OSError):
            # The socket is unusable; the next command reconnects
            self._drop_connection()
            raise

    def _drop_connection(self) -> None:
        connection = self._connection
        self._connection = None
        self._selected = None
        if connection is None:
            return
        logger.warning(f"IMAP connection to {self.config.imap.host} lost; reconnecting on next command")
        try:
            connection.shutdown()
        except OSError as e:
            logger.debug(f"IMAP shutdown after connection loss failed: {e}")

    def _connect(self) -> Union[imaplib.IMAP4_SSL, imaplib.IMAP4]:
        """Connect and log in, unless already connected."""
        if self._connection is not None:
            return self._connection

        settings = self.config.imap
        if settings.use_ssl:
            connection = imaplib.IMAP4_SSL(settings.host, settings.port)
        else:
            connection = imaplib.IMAP4(settings.host, settings.port)
        try:
            connection.login(settings.username, settings.password)
        except imaplib.IMAP4.error as e:
            connection.shutdown()
            raise AuthenticationError(
                f"IMAP login failed for {settings.username}: {e}",
                self.provider_type.value,
                e
            ) from e
        logger.info(f"IMAP authenticated to {settings.host}")
        self._connection = connection
        self._selected = None
        return connection

    @staticmethod
    def _check(status: str, data: Any, command: str) -> Any:
        if status != 'OK':
            detail = b' '.join(d for d in data if isinstance(d, bytes)).decode('utf-8', errors='replace') if data else ''
            raise imaplib.IMAP4.error(f"{command} failed: {detail or status}")
        return data

    def _select(self, mailbox: str) -> Union[imaplib.IMAP4_SSL, imaplib.IMAP4]:
        connection = self._connect()
        if self._selected != mailbox:
            status, data = connection.select(quote_mailbox(mailbox))
            self._check(status, data, f"SELECT {mailbox}")
            self._selected = mailbox
        return connection

    def _uid(self, command: str, *args: Any) -> Any:
        connection = self._select(self.mailbox)
        status, data = connection.uid(command, *args)
        return self._check(status, data, f"UID {command}")

    def _search(self, criteria: List[Union[str, bytes]]) -> List[str]:
        data = self._uid('SEARCH', *criteria)
        return [uid.decode() for uid in (data[0] or b'').split()]

    def _fetch(self, uids: List[str]) -> List[Tuple[str, List[str], bytes]]:
        if not uids:
            return []
        data = self._uid('FETCH', ','.join(uids), '(UID FLAGS BODY.PEEK[])')
        return parse_fetch_response(data)

    def _list(self) -> List[Tuple[List[str], Optional[str], str]]:
        connection = self._connect()
        status, data = connection.list()
        self._check(status, data, "LIST")
        entries = [entry for entry in (parse_list_line(line) for line in data) if entry is not None]
        for _, delimiter, _ in entries:
            if delimiter:
                self._delimiter = delimiter
                break
        return entries

    def _status(self, mailbox: str) -> EmailFolder:
        connection = self._connect()
        status, data = connection.status(quote_mailbox(mailbox), '(MESSAGES UNSEEN)')
        self._check(status, data, f"STATUS {mailbox}")
        counts = {key.decode(): int(value) for key, value in _STATUS_RE.findall(data[0] or b'')}
        return EmailFolder(
            id=mailbox,
            name=mailbox,
            parent_id=self._parent_of(mailbox),
            unread_count=counts.get('UNSEEN'),
            total_count=counts.get('MESSAGES'),
        )

    def _parent_of(self, name: str) -> Optional[str]:
        if not self._delimiter or self._delimiter not in name:
            return None
        return name.rsplit(self._delimiter, 1)[0]

    def _store(self, uid: str, action: str, flags: List[str]) -> None:
        self._uid('STORE', uid, action, f"({' '.join(flags)})")

    def _delete(self, uid: str) -> None:
        self._store(uid, '+FLAGS', ['\\Deleted'])
        connection = self._select(self.mailbox)
        status, data = connection.expunge()
        self._check(status, data, "EXPUNGE")

    def _move(self, uid: str, folder: str) -> None:
        self._uid('MOVE', uid, quote_mailbox(folder))

    def _create(self, name: str) -> None:
        connection = self._connect()
        status, data = connection.create(quote_mailbox(name))
        self._check(status, data, f"CREATE {name}")

    def _logout(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning(f"IMAP logout failed: {e}")
        finally:
            self._connection = None
            self._selected = None

    # Conversion -------------------------------------------------------------------

    def _to_email(self, uid: str, flags: List[str], raw: bytes) -> Tuple[EmailMessage, Any]:
        message, parsed = parse_raw_message(raw)
        message.id = uid
        message.folder_id = self.mailbox
        message.is_read = '\\Seen' in flags
        message.labels = flags
        return message, parsed

    def _search_criteria(self, options: ListEmailsOptions) -> List[Union[str, bytes]]:
        criteria: List[Union[str, bytes]] = []
        if options.unread_only:
            # Unread listing ignores the text query
            criteria.append('UNSEEN')
        elif options.query:
            quoted = quote_mailbox(options.query)
            if quoted.isascii():
                criteria.extend(['SUBJECT', quoted])
            else:
                criteria = ['CHARSET', 'UTF-8', 'SUBJECT', quoted.encode('utf-8')]

        for label_id in options.label_ids or []:
            key = FLAG_SEARCH_KEYS.get(label_id.lower())
            if key:
                criteria.append(key)
            else:
                criteria.extend(['KEYWORD', label_id])

        return criteria or ['ALL']

    # Sending ----------------------------------------------------------------------

    def _smtp_send(self, mime: Any, recipients: List[str]) -> None:
        settings = self.config.smtp
        if settings.use_ssl:
            server = smtplib.SMTP_SSL(settings.host, settings.port, timeout=settings.timeout)
        else:
            server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
        with server:
            if settings.use_tls and not settings.use_ssl:
                server.starttls()
            if settings.username and settings.password:
                server.login(settings.username, settings.password)
            server.sendmail(parseaddr(self.sender)[1] or self.sender, recipients, mime.as_string())

    async def _submit(
        self,
        options: SendEmailOptions,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None
    ) -> EmailMessage:
        message_id = new_message_id(self.sender)
        mime = build_mime_message(
            options,
            sender=self.sender,
            in_reply_to=in_reply_to,
            references=references,
            message_id=message_id,
        )
        # Bcc recipients get the message through the envelope only
        del mime['Bcc']
        recipients = [a.email for a in options.to + (options.cc or []) + (options.bcc or [])]

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._smtp_send, mime, recipients)
        logger.info(f"SMTP message sent to {len(recipients)} recipients: {message_id}")

        return EmailMessage(
            id=message_id,
            subject=options.subject,
            from_=parse_address(self.sender),
            to=list(options.to),
            cc=options.cc,
            bcc=options.bcc,
            body=options.body,
            html_body=options.html_body,
            attachments=options.attachments,
            date=datetime.now(timezone.utc),
            is_read=True,
        )

    # Messages -------------------------------------------------------------------

    @classify_errors
    async def send_email(self, options: SendEmailOptions) -> EmailMessage:
        validate_send_options(options)
        return await self._submit(options)

    @classify_errors
    async def list_emails(self, options: Optional[ListEmailsOptions] = None) -> ListEmailsResponse:
        options = options or ListEmailsOptions()
        limit = options.max_results or 100

        uids = await self._run(self._search, self._search_criteria(options))
        # Highest UIDs are the newest
        selected = sorted(uids, key=int)[-limit:]
        fetched = await self._run(self._fetch, selected)

        messages = [self._to_email(uid, flags, raw)[0] for uid, flags, raw in fetched]
        messages.sort(key=lambda m: int(m.id), reverse=True)
        return ListEmailsResponse(messages=messages, total_count=len(uids))

    async def _fetch_one(self, email_id: str) -> Tuple[EmailMessage, Any]:
        fetched = await self._run(self._fetch, [email_id])
        for uid, flags, raw in fetched:
            if uid == email_id:
                return self._to_email(uid, flags, raw)
        raise NotFoundError(
            f"Message {email_id} not found in {self.mailbox}",
            self.provider_type.value,
            resource_id=email_id
        )

    @classify_errors
    async def get_email(self, email_id: str) -> EmailMessage:
        message, _ = await self._fetch_one(email_id)
        return message

    @classify_errors
    async def delete_email(self, email_id: str) -> None:
        await self._run(self._delete, email_id)

    @classify_errors
    async def mark_as_read(self, email_id: str) -> None:
        await self._run(self._store, email_id, '+FLAGS', ['\\Seen'])

    @classify_errors
    async def mark_as_unread(self, email_id: str) -> None:
        await self._run(self._store, email_id, '-FLAGS', ['\\Seen'])

    @classify_errors
    async def reply_to_email(self, email_id: str, options: SendEmailOptions) -> EmailMessage:
        """
        Reply to the original sender.

        Explicit ``options.to`` recipients take precedence. The reply carries
        In-Reply-To and References so clients thread it.
        """
        validate_send_options(options, require_recipients=False)
        original, parsed = await self._fetch_one(email_id)

        recipients = list(options.to)
        if not recipients:
            sender = parse_address(parsed.get('Reply-To')) or original.from_
            if sender is None:
                raise SuperMailError(
                    ErrorCode.MISSING_REQUIRED_FIELD,
                    "Original message has no sender to reply to",
                    self.provider_type.value
                )
            recipients = [sender]

        reply_options = SendEmailOptions(
            subject=reply_subject(original.subject),
            to=recipients,
            body=options.body,
            cc=options.cc,
            bcc=options.bcc,
            html_body=options.html_body,
            attachments=options.attachments,
            reply_to=options.reply_to,
        )
        return await self._submit(
            reply_options,
            in_reply_to=parsed.get('Message-ID'),
            references=parsed.get('References'),
        )

    # Folders ----------------------------------------------------------------------

    @classify_errors
    async def list_folders(self) -> List[EmailFolder]:
        """Get all IMAP mailboxes; hierarchy comes from the server delimiter."""
        entries = await self._run(self._list)
        folders = []
        for flags, delimiter, name in entries:
            if '\\Noselect' in flags or '\\NonExistent' in flags:
                continue
            parent_id = name.rsplit(delimiter, 1)[0] if delimiter and delimiter in name else None
            folders.append(EmailFolder(id=name, name=name, parent_id=parent_id))
        return folders

    @classify_errors
    async def get_folder(self, folder_id: str) -> EmailFolder:
        return await self._run(self._status, folder_id)

    @classify_errors
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> EmailFolder:
        full_name = name
        if parent_id:
            if self._delimiter is None:
                await self._run(self._list)
            full_name = f"{parent_id}{self._delimiter or '/'}{name}"
        await self._run(self._create, full_name)
        return EmailFolder(id=full_name, name=full_name, parent_id=parent_id, unread_count=0, total_count=0)

    @classify_errors
    async def move_to_folder(self, options: MoveEmailOptions) -> None:
        """Move a message; it gets a new UID in the destination mailbox."""
        await self._run(self._move, options.email_id, options.folder_id)

    # Labels (flags) ---------------------------------------------------------------

    @classify_errors
    async def list_labels(self) -> List[EmailLabel]:
        return [EmailLabel(id=flag, name=name, type=LabelType.SYSTEM) for flag, name in SYSTEM_FLAGS]

    @classify_errors
    async def add_labels(self, options: AddLabelsOptions) -> None:
        if options.label_ids:
            await self._run(self._store, options.email_id, '+FLAGS', list(options.label_ids))

    @classify_errors
    async def remove_labels(self, options: RemoveLabelsOptions) -> None:
        if options.label_ids:
            await self._run(self._store, options.email_id, '-FLAGS', list(options.label_ids))

    @classify_errors
    async def create_label(self, name: str, color: Optional[str] = None) -> EmailLabel:
        raise SuperMailError(
            ErrorCode.OPERATION_FAILED,
            "IMAP does not support creating custom labels. Use folders instead.",
            self.provider_type.value
        )

    # Organisation -----------------------------------------------------------------

    async def _has_folder(self, name: str) -> bool:
        return any(folder.name == name for folder in await self.list_folders())

    @classify_errors
    async def archive_email(self, email_id: str) -> None:
        if await self._has_folder(ARCHIVE_FOLDER_NAME):
            await self.move_to_folder(MoveEmailOptions(email_id=email_id, folder_id=ARCHIVE_FOLDER_NAME))
            return
        logger.warning(f"No '{ARCHIVE_FOLDER_NAME}' mailbox; flagging {email_id} as deleted instead")
        await self._run(self._store, email_id, '+FLAGS', ['\\Deleted'])

    @classify_errors
    async def trash_email(self, email_id: str) -> None:
        try:
            await self.move_to_folder(MoveEmailOptions(email_id=email_id, folder_id=TRASH_FOLDER_NAME))
        except SuperMailError as e:
            logger.warning(f"Moving {email_id} to '{TRASH_FOLDER_NAME}' failed ({e.code.value}); deleting instead")
            await self.delete_email(email_id)

    @classify_errors
    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        # Attachments are always returned with their content
        raise unsupported(self.provider_type, "attachment download; attachment content is returned by get_email")

    async def disconnect(self) -> None:
        """Log out and stop the session thread."""
        if self._connection is not None:
            await self._run(self._logout)
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
