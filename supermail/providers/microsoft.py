"""
Microsoft 365 / Outlook email provider implementation.
Uses Microsoft Graph API for email access.

Graph has a real folder hierarchy; categories (a flat, mailbox-wide list
referenced on messages by name) act as labels.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

import httpx
import msal

from ..config import MicrosoftConfig
from ..errors import (
    ErrorCode,
    SuperMailError,
    ValidationError,
    error_from_status,
    parse_retry_after,
    register_classifier,
)
from ..models import (
    AddLabelsOptions,
    AttachmentReference,
    EmailAddress,
    EmailAttachment,
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
from .colors import nearest_color
from .mime import reply_subject

logger = logging.getLogger(__name__)

ARCHIVE_FOLDER_NAME = "Archive"
TRASH_FOLDER_NAME = "Deleted Items"

# Graph only accepts preset0..preset24 as category colours
PRESET_COLORS: Dict[str, str] = {
    '#ff0000': 'preset0',   # Red
    '#ff4500': 'preset1',   # Orange
    '#8b4513': 'preset2',   # Brown
    '#ffff00': 'preset3',   # Yellow
    '#008000': 'preset4',   # Green
    '#008080': 'preset5',   # Teal
    '#808000': 'preset6',   # Olive
    '#0000ff': 'preset7',   # Blue
    '#800080': 'preset8',   # Purple
    '#9b2d30': 'preset9',   # Cranberry
    '#5a7e9f': 'preset10',  # Steel
    '#485c69': 'preset11',  # DarkSteel
    '#808080': 'preset12',  # Gray
    '#696969': 'preset13',  # DarkGray
    '#000000': 'preset14',  # Black
    '#8b0000': 'preset15',  # DarkRed
    '#ff8c00': 'preset16',  # DarkOrange
    '#654321': 'preset17',  # DarkBrown
    '#9b870c': 'preset18',  # DarkYellow
    '#006400': 'preset19',  # DarkGreen
    '#00555a': 'preset20',  # DarkTeal
    '#5b5e0a': 'preset21',  # DarkOlive
    '#00008b': 'preset22',  # DarkBlue
    '#4b0082': 'preset23',  # DarkPurple
    '#6f2633': 'preset24',  # DarkCranberry
}

DEFAULT_PRESET = 'preset0'

_PRESET_NAME = re.compile(r'^preset([0-9]|1[0-9]|2[0-4])$')

# Graph error codes that identify a failure more precisely than the status
_ERROR_CODE_STATUS = {
    'InvalidAuthenticationToken': 401,
    'Forbidden': 403,
    'ErrorAccessDenied': 403,
    'ResourceNotFound': 404,
    'ErrorItemNotFound': 404,
    'TooManyRequests': 429,
    'ApplicationThrottled': 429,
}


def convert_color_to_preset(color: Optional[str]) -> str:
    """Map a hex colour to the nearest Outlook category preset."""
    if color and _PRESET_NAME.match(color.strip().lower()):
        return color.strip().lower()
    return nearest_color(color, PRESET_COLORS, DEFAULT_PRESET)


def _graph_error_code(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get('error', {}).get('code')
    except ValueError:
        return None


@register_classifier(ProviderType.MICROSOFT.value)
def classify_microsoft_error(error: BaseException, provider: str) -> Optional[SuperMailError]:
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status = _ERROR_CODE_STATUS.get(_graph_error_code(response), response.status_code)
        retry_after = parse_retry_after(response.headers.get('Retry-After'))
        return error_from_status(status, provider, error, "Microsoft", retry_after)
    if isinstance(error, httpx.TransportError):
        return SuperMailError(ErrorCode.NETWORK_ERROR, f"Network error: {error}", provider, error)
    return None


class MicrosoftProvider(EmailProvider):
    """
    Microsoft 365 / Outlook email provider using Graph API.

    Requires the 'msal' and 'httpx' packages: pip install msal httpx
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    SCOPES = ["https://graph.microsoft.com/.default"]
    MESSAGE_FIELDS = (
        "id,conversationId,parentFolderId,from,toRecipients,ccRecipients,bccRecipients,"
        "subject,bodyPreview,body,receivedDateTime,isRead,hasAttachments,categories"
    )

    def __init__(self, config: MicrosoftConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Microsoft provider.

        Args:
            config: Either a delegated access token, or client credentials and
                the mailbox (user_email) to act on
            transport: Optional httpx transport, used instead of the network
        """
        self.config = config
        self._access_token: Optional[str] = config.access_token
        self._msal_app: Optional[msal.ConfidentialClientApplication] = None
        self._transport = transport
        # Delegated tokens address the signed-in user, app-only tokens need a user
        self._mailbox = "/me" if config.access_token else f"/users/{config.user_email}"

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MICROSOFT

    def _get_msal_app(self) -> msal.ConfidentialClientApplication:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            authority = f"https://login.microsoftonline.com/{self.config.tenant_id}"
            self._msal_app = msal.ConfidentialClientApplication(
                self.config.client_id,
                authority=authority,
                client_credential=self.config.client_secret
            )
        return self._msal_app

    async def _get_access_token(self) -> str:
        """Return the configured token or acquire one with the client credentials flow."""
        if self._access_token:
            return self._access_token

        app = self._get_msal_app()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: app.acquire_token_for_client(scopes=self.SCOPES))

        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown error"))
            raise SuperMailError(
                ErrorCode.INVALID_CREDENTIALS,
                f"Failed to acquire Microsoft token: {error}",
                self.provider_type.value
            )
        self._access_token = result["access_token"]
        return self._access_token

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Make an authenticated Graph request.

        ``endpoint`` is relative to the mailbox root, or an absolute URL such
        as an ``@odata.nextLink``. Absolute URLs must point at the Graph API,
        so the bearer token is never sent to another host.
        """
        if "://" in endpoint:
            if not endpoint.startswith(f"{self.GRAPH_BASE_URL}/"):
                raise ValidationError(f"Not a Microsoft Graph URL: {endpoint!r}", field='page_token')
            url = endpoint
        else:
            url = f"{self.GRAPH_BASE_URL}{self._mailbox}{endpoint}"
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json"
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            response = await client.request(method=method, url=url, headers=headers, params=params, json=json_data)
            response.raise_for_status()
            return response

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        response = await self._request(method, endpoint, params=params, json_data=json_data)
        return response.json() if response.content else {}

    # Conversion -------------------------------------------------------------------

    @staticmethod
    def _parse_recipient(recipient: Optional[Dict[str, Any]]) -> Optional[EmailAddress]:
        data = (recipient or {}).get('emailAddress') or {}
        address = data.get('address') or ''
        name = data.get('name') or None
        if not address:
            return EmailAddress(email=name) if name else None
        return EmailAddress(email=address, name=name)

    def _parse_recipients(self, recipients: Optional[List[Dict[str, Any]]]) -> List[EmailAddress]:
        parsed = (self._parse_recipient(r) for r in recipients or [])
        return [r for r in parsed if r is not None]

    @staticmethod
    def _parse_attachment(att: Dict[str, Any]) -> EmailAttachment:
        content: Any = AttachmentReference(att.get('id', ''))
        if att.get('contentBytes'):
            try:
                content = base64.b64decode(att['contentBytes'])
            except (binascii.Error, ValueError):
                logger.warning(f"Could not decode attachment {att.get('id')}; keeping a reference")
        return EmailAttachment(
            filename=att.get('name', 'attachment'),
            content=content,
            content_type=att.get('contentType') or 'application/octet-stream',
            size=att.get('size')
        )

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Graph API email message to EmailMessage."""
        body = msg.get('body') or {}
        content = body.get('content', '')
        is_html = (body.get('contentType') or '').lower() == 'html'

        received_str = msg.get('receivedDateTime')
        date = datetime.fromisoformat(received_str.replace('Z', '+00:00')) if received_str else None

        attachments = None
        if msg.get('attachments') is not None:
            attachments = [self._parse_attachment(att) for att in msg['attachments']]

        return EmailMessage(
            id=msg.get('id'),
            thread_id=msg.get('conversationId'),
            folder_id=msg.get('parentFolderId'),
            subject=msg.get('subject') or '',
            from_=self._parse_recipient(msg.get('from')),
            to=self._parse_recipients(msg.get('toRecipients')),
            cc=self._parse_recipients(msg.get('ccRecipients')),
            bcc=self._parse_recipients(msg.get('bccRecipients')) or None,
            body=msg.get('bodyPreview', '') if is_html else content,
            html_body=content if is_html else None,
            attachments=attachments,
            date=date,
            is_read=msg.get('isRead'),
            labels=list(msg.get('categories') or []),
        )

    @staticmethod
    def _to_recipient(address: EmailAddress) -> Dict[str, Any]:
        data = {'address': address.email}
        if address.name:
            data['name'] = address.name
        return {'emailAddress': data}

    def _to_graph_message(self, options: SendEmailOptions, include_recipients: bool = True) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            'subject': options.subject,
            'body': {
                'contentType': 'HTML' if options.html_body else 'Text',
                'content': options.html_body or options.body,
            },
        }
        if include_recipients:
            message['toRecipients'] = [self._to_recipient(a) for a in options.to]
            message['ccRecipients'] = [self._to_recipient(a) for a in options.cc or []]
            message['bccRecipients'] = [self._to_recipient(a) for a in options.bcc or []]
        if options.reply_to:
            message['replyTo'] = [self._to_recipient(options.reply_to)]
        if options.attachments:
            message['attachments'] = []
            for att in options.attachments:
                if not att.is_materialized:
                    raise ValidationError(
                        f"Attachment '{att.filename}' content has not been downloaded and cannot be sent",
                        field='attachments'
                    )
                message['attachments'].append({
                    '@odata.type': '#microsoft.graph.fileAttachment',
                    'name': att.filename,
                    'contentType': att.content_type,
                    'contentBytes': base64.b64encode(att.content_bytes()).decode('ascii'),
                })
        return message

    @staticmethod
    def _sent_message(options: SendEmailOptions, subject: str) -> EmailMessage:
        # sendMail and reply return 202 without a body, so there is no id
        return EmailMessage(
            subject=subject,
            to=list(options.to),
            cc=options.cc,
            bcc=options.bcc,
            body=options.body,
            html_body=options.html_body,
            attachments=options.attachments,
            date=datetime.now(timezone.utc),
        )

    @staticmethod
    def _parse_folder(folder: Dict[str, Any]) -> EmailFolder:
        return EmailFolder(
            id=folder.get('id', ''),
            name=folder.get('displayName', ''),
            parent_id=folder.get('parentFolderId'),
            unread_count=folder.get('unreadItemCount'),
            total_count=folder.get('totalItemCount')
        )

    # Messages -------------------------------------------------------------------

    @classify_errors
    async def send_email(self, options: SendEmailOptions) -> EmailMessage:
        validate_send_options(options)
        await self._make_request(
            "POST",
            "/sendMail",
            json_data={'message': self._to_graph_message(options), 'saveToSentItems': True}
        )
        logger.info(f"Microsoft message sent: {options.subject}")
        return self._sent_message(options, options.subject)

    async def _category_names(self, label_ids: List[str]) -> List[str]:
        """
        Resolve category ids to names.

        Ids that do not match a category are dropped.
        """
        by_id = {label.id: label.name for label in await self.list_labels()}
        names = []
        for label_id in label_ids:
            if label_id in by_id:
                names.append(by_id[label_id])
            else:
                logger.warning(f"Unknown Microsoft category id dropped: {label_id}")
        return names

    @classify_errors
    async def list_emails(self, options: Optional[ListEmailsOptions] = None) -> ListEmailsResponse:
        options = options or ListEmailsOptions()

        if options.page_token:
            # nextLink already carries every query parameter
            result = await self._make_request("GET", options.page_token)
        else:
            params: Dict[str, Any] = {
                "$top": options.max_results or 100,
                "$select": self.MESSAGE_FIELDS,
            }
            filters = []
            if options.unread_only:
                filters.append("isRead eq false")
            if options.label_ids:
                names = await self._category_names(options.label_ids)
                if not names:
                    # No message can carry a category that does not exist
                    return ListEmailsResponse(messages=[], total_count=0)
                clauses = " or ".join("categories/any(c:c eq '{}')".format(n.replace("'", "''")) for n in names)
                filters.append(f"({clauses})")
            if filters:
                params["$filter"] = " and ".join(filters)
            if options.query:
                params["$search"] = f'"{options.query}"'
            else:
                # Graph rejects $orderby together with $search
                params["$orderby"] = "receivedDateTime desc"
            result = await self._make_request("GET", "/messages", params=params)

        return ListEmailsResponse(
            messages=[self._parse_email(msg) for msg in result.get('value', [])],
            next_page_token=result.get('@odata.nextLink'),
            total_count=result.get('@odata.count')
        )

    @classify_errors
    async def get_email(self, email_id: str) -> EmailMessage:
        result = await self._make_request(
            "GET",
            f"/messages/{email_id}",
            params={"$select": self.MESSAGE_FIELDS, "$expand": "attachments"}
        )
        return self._parse_email(result)

    @classify_errors
    async def delete_email(self, email_id: str) -> None:
        await self._make_request("DELETE", f"/messages/{email_id}")

    @classify_errors
    async def mark_as_read(self, email_id: str) -> None:
        await self._make_request("PATCH", f"/messages/{email_id}", json_data={"isRead": True})

    @classify_errors
    async def mark_as_unread(self, email_id: str) -> None:
        await self._make_request("PATCH", f"/messages/{email_id}", json_data={"isRead": False})

    @classify_errors
    async def reply_to_email(self, email_id: str, options: SendEmailOptions) -> EmailMessage:
        """
        Reply to a message.

        The reply endpoint accepts either a plain ``comment`` or a full
        ``message`` but not both. Text-only replies to the original sender
        use the comment form; HTML bodies, attachments and explicit
        recipients need the message form.
        """
        validate_send_options(options, require_recipients=False)

        if options.attachments or options.html_body or options.to:
            payload = {'message': self._to_graph_message(options, include_recipients=bool(options.to))}
        else:
            payload = {'comment': options.body}

        await self._make_request("POST", f"/messages/{email_id}/reply", json_data=payload)
        logger.info(f"Microsoft reply to {email_id} sent")
        return self._sent_message(options, reply_subject(options.subject))

    # Folders ----------------------------------------------------------------------

    @classify_errors
    async def list_folders(self) -> List[EmailFolder]:
        """Get all top-level mail folders."""
        result = await self._make_request("GET", "/mailFolders", params={"$top": 100})
        return [self._parse_folder(folder) for folder in result.get('value', [])]

    @classify_errors
    async def get_folder(self, folder_id: str) -> EmailFolder:
        return self._parse_folder(await self._make_request("GET", f"/mailFolders/{folder_id}"))

    @classify_errors
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> EmailFolder:
        endpoint = f"/mailFolders/{parent_id}/childFolders" if parent_id else "/mailFolders"
        result = await self._make_request("POST", endpoint, json_data={"displayName": name})
        return self._parse_folder(result)

    @classify_errors
    async def move_to_folder(self, options: MoveEmailOptions) -> None:
        """Move a message. Graph may assign the moved message a new id."""
        await self._make_request(
            "POST",
            f"/messages/{options.email_id}/move",
            json_data={"destinationId": options.folder_id}
        )

    async def _find_folder(self, name: str) -> Optional[EmailFolder]:
        for folder in await self.list_folders():
            if folder.name == name:
                return folder
        return None

    # Categories -------------------------------------------------------------------

    @classify_errors
    async def list_labels(self) -> List[EmailLabel]:
        result = await self._make_request("GET", "/outlook/masterCategories")
        return [
            EmailLabel(
                id=category.get('id', ''),
                name=category.get('displayName', ''),
                color=category.get('color'),
                type=LabelType.SYSTEM if category.get('preset') else LabelType.USER
            )
            for category in result.get('value', [])
        ]

    async def _current_categories(self, email_id: str) -> List[str]:
        result = await self._make_request("GET", f"/messages/{email_id}", params={"$select": "categories"})
        return list(result.get('categories') or [])

    @classify_errors
    async def add_labels(self, options: AddLabelsOptions) -> None:
        """Add categories; messages reference categories by name, not id."""
        names = await self._category_names(options.label_ids)
        current = await self._current_categories(options.email_id)
        updated = current + [name for name in names if name not in current]
        await self._make_request("PATCH", f"/messages/{options.email_id}", json_data={"categories": updated})

    @classify_errors
    async def remove_labels(self, options: RemoveLabelsOptions) -> None:
        names = set(await self._category_names(options.label_ids))
        current = await self._current_categories(options.email_id)
        updated = [name for name in current if name not in names]
        await self._make_request("PATCH", f"/messages/{options.email_id}", json_data={"categories": updated})

    @classify_errors
    async def create_label(self, name: str, color: Optional[str] = None) -> EmailLabel:
        preset = convert_color_to_preset(color)
        result = await self._make_request(
            "POST",
            "/outlook/masterCategories",
            json_data={"displayName": name, "color": preset}
        )
        return EmailLabel(
            id=result.get('id', ''),
            name=result.get('displayName', name),
            color=result.get('color', preset),
            type=LabelType.USER
        )

    # Organisation -----------------------------------------------------------------

    @classify_errors
    async def archive_email(self, email_id: str) -> None:
        folder = await self._find_folder(ARCHIVE_FOLDER_NAME)
        if folder is None:
            raise unsupported(self.provider_type, f"archiving without an '{ARCHIVE_FOLDER_NAME}' folder")
        await self.move_to_folder(MoveEmailOptions(email_id=email_id, folder_id=folder.id))

    @classify_errors
    async def trash_email(self, email_id: str) -> None:
        folder = await self._find_folder(TRASH_FOLDER_NAME)
        if folder is None:
            logger.warning(f"No '{TRASH_FOLDER_NAME}' folder; deleting {email_id} instead")
            await self.delete_email(email_id)
            return
        await self.move_to_folder(MoveEmailOptions(email_id=email_id, folder_id=folder.id))

    @classify_errors
    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download email attachment."""
        response = await self._request("GET", f"/messages/{message_id}/attachments/{attachment_id}/$value")
        return response.content

    async def disconnect(self) -> None:
        """Forget any token acquired through MSAL."""
        if not self.config.access_token:
            self._access_token = None
