"""Microsoft Graph mailbox served through ``httpx.MockTransport``."""

from __future__ import annotations

import itertools
import json
import re
from typing import Any, Dict, List, Optional

import httpx

GRAPH_PREFIX = '/v1.0/me'

_CATEGORY_NAME = re.compile(r"c eq '((?:[^']|'')*)'")


class FakeGraph:
    """
    Minimal Graph mail API.

    Folders: Inbox, Archive, Deleted Items, Sent Items (ids are lowercase
    names). Set ``fail_status`` (and ``fail_headers``) to make every request
    fail with that status.
    """

    def __init__(self, with_archive: bool = True, with_deleted_items: bool = True):
        self.ids = itertools.count(1)
        self.folders: Dict[str, Dict[str, Any]] = {}
        for name in ['Inbox', 'Sent Items'] + (['Archive'] if with_archive else []) + (
                ['Deleted Items'] if with_deleted_items else []):
            folder_id = name.lower().replace(' ', '-')
            self.folders[folder_id] = {
                'id': folder_id,
                'displayName': name,
                'parentFolderId': 'root',
                'unreadItemCount': 0,
                'totalItemCount': 0,
            }
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.categories: List[Dict[str, Any]] = []
        self.attachments: Dict[str, bytes] = {}
        self.sent: List[Dict[str, Any]] = []
        self.replies: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.fail_status: Optional[int] = None
        self.fail_headers: Dict[str, str] = {}
        self.fail_code: str = 'ErrorFake'

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def add_message(
        self,
        subject: str = 'Hello',
        sender: str = 'alice@example.com',
        body: str = 'Body text',
        is_read: bool = True,
        folder_id: str = 'inbox',
        categories: Optional[List[str]] = None,
        content_type: str = 'text',
    ) -> str:
        msg_id = f"AAMk-{next(self.ids)}"
        self.messages[msg_id] = {
            'id': msg_id,
            'conversationId': f"conv-{msg_id}",
            'parentFolderId': folder_id,
            'subject': subject,
            'from': {'emailAddress': {'address': sender, 'name': sender.split('@')[0].title()}},
            'toRecipients': [{'emailAddress': {'address': 'me@example.com', 'name': 'Me'}}],
            'ccRecipients': [],
            'bccRecipients': [],
            'body': {'contentType': content_type, 'content': body},
            'bodyPreview': 'preview text',
            'receivedDateTime': '2026-01-01T10:00:00Z',
            'isRead': is_read,
            'categories': list(categories or []),
            'attachments': [],
        }
        return msg_id

    def add_category(self, name: str, color: str = 'preset0', preset: bool = False) -> str:
        category_id = f"cat-{next(self.ids)}"
        category = {'id': category_id, 'displayName': name, 'color': color}
        if preset:
            category['preset'] = True
        self.categories.append(category)
        return category_id

    # Routing --------------------------------------------------------------------

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(
                self.fail_status,
                headers=self.fail_headers,
                json={'error': {'code': self.fail_code, 'message': 'fake failure'}},
            )

        path = request.url.path
        if path.startswith(GRAPH_PREFIX):
            path = path[len(GRAPH_PREFIX):]
        elif path.startswith('/v1.0/users/'):
            path = '/' + path.split('/', 4)[4]
        parts = [p for p in path.split('/') if p]
        body = json.loads(request.content) if request.content else {}
        method = request.method

        if parts == ['sendMail'] and method == 'POST':
            return self._send_mail(body)
        if parts and parts[0] == 'messages':
            return self._messages(method, parts[1:], request, body)
        if parts and parts[0] == 'mailFolders':
            return self._folders(method, parts[1:], body)
        if parts == ['outlook', 'masterCategories']:
            return self._categories(method, body)
        return _error(400, 'BadRequest')

    def _message_or_404(self, msg_id: str) -> Optional[Dict[str, Any]]:
        return self.messages.get(msg_id)

    def _messages(self, method: str, parts: List[str], request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        if not parts:
            return self._list_messages(request)

        msg = self._message_or_404(parts[0])
        if msg is None:
            return _error(404, 'ErrorItemNotFound')

        if len(parts) == 1:
            if method == 'GET':
                return httpx.Response(200, json=msg)
            if method == 'PATCH':
                msg.update(body)
                return httpx.Response(200, json=msg)
            if method == 'DELETE':
                del self.messages[parts[0]]
                return httpx.Response(204)
        if parts[1:] == ['move'] and method == 'POST':
            folder_id = body['destinationId']
            if folder_id not in self.folders:
                return _error(404, 'ErrorItemNotFound')
            msg['parentFolderId'] = folder_id
            return httpx.Response(201, json=msg)
        if parts[1:] == ['reply'] and method == 'POST':
            self.replies.append({'id': parts[0], **body})
            return httpx.Response(202)
        if len(parts) == 4 and parts[1] == 'attachments' and parts[3] == '$value':
            data = self.attachments.get(parts[2])
            if data is None:
                return _error(404, 'ErrorItemNotFound')
            return httpx.Response(200, content=data)
        return _error(400, 'BadRequest')

    def _list_messages(self, request: httpx.Request) -> httpx.Response:
        found = list(self.messages.values())
        flt = request.url.params.get('$filter', '')
        if 'isRead eq false' in flt:
            found = [m for m in found if not m['isRead']]
        names = [n.replace("''", "'") for n in _CATEGORY_NAME.findall(flt)]
        if names:
            found = [m for m in found if any(n in m['categories'] for n in names)]
        top = int(request.url.params.get('$top', 10))
        result: Dict[str, Any] = {'value': found[:top]}
        if len(found) > top:
            result['@odata.nextLink'] = f"https://graph.microsoft.com/v1.0/me/messages?$skip={top}"
        return httpx.Response(200, json=result)

    def _send_mail(self, body: Dict[str, Any]) -> httpx.Response:
        self.sent.append(body)
        message = body['message']
        msg_id = self.add_message(
            subject=message['subject'],
            sender='me@example.com',
            body=message['body']['content'],
            folder_id='sent-items',
        )
        self.messages[msg_id]['toRecipients'] = message.get('toRecipients', [])
        return httpx.Response(202)

    def _folders(self, method: str, parts: List[str], body: Dict[str, Any]) -> httpx.Response:
        if not parts:
            if method == 'GET':
                return httpx.Response(200, json={'value': list(self.folders.values())})
            return httpx.Response(201, json=self._create_folder(body['displayName'], 'root'))
        folder = self.folders.get(parts[0])
        if folder is None:
            return _error(404, 'ErrorItemNotFound')
        if parts[1:] == ['childFolders'] and method == 'POST':
            return httpx.Response(201, json=self._create_folder(body['displayName'], parts[0]))
        return httpx.Response(200, json=folder)

    def _create_folder(self, name: str, parent_id: str) -> Dict[str, Any]:
        folder_id = f"folder-{next(self.ids)}"
        folder = {
            'id': folder_id,
            'displayName': name,
            'parentFolderId': parent_id,
            'unreadItemCount': 0,
            'totalItemCount': 0,
        }
        self.folders[folder_id] = folder
        return folder

    def _categories(self, method: str, body: Dict[str, Any]) -> httpx.Response:
        if method == 'GET':
            return httpx.Response(200, json={'value': self.categories})
        category_id = self.add_category(body['displayName'], body['color'])
        return httpx.Response(201, json=self.categories[-1] | {'id': category_id})


def _error(status: int, code: str) -> httpx.Response:
    return httpx.Response(status, json={'error': {'code': code, 'message': code}})
