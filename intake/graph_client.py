"""Microsoft Graph access for the OneDrive drop folder, the history workbook and Teams.

The wrapper is intentionally thin: it turns HTTP failures into
``RemoteIOError`` (``DocumentLockedError`` for HTTP 423) and leaves retry
policy above the transport layer to its callers.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from intake.errors import DocumentLockedError, RemoteIOError
from intake.models import FileRef

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/Files.ReadWrite.All https://graph.microsoft.com/ChatMessage.Send offline_access"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
TICKET_FILE_SUFFIX = ".json"
REQUEST_TIMEOUT = 30
MAX_API_RETRIES = 4
RETRY_BACKOFF_SECONDS = 3
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class GraphTokenProvider:
    """Caches a delegated Graph bearer token and refreshes it when it expires."""

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.token_url = TOKEN_URL_TEMPLATE.format(tenant=tenant_id)
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.log = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def get_token(self) -> str:
        with self._lock:
            if self._token and time.time() < self._expires_at:
                return self._token
            self._token, self._expires_at = self._fetch_token()
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def _fetch_token(self) -> tuple[str, float]:
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": GRAPH_SCOPE,
            "grant_type": "password",
            "username": self.username,
            "password": self.password,
        }
        try:
            response = self.session.post(self.token_url, data=form, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise RemoteIOError(f"Token request failed: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteIOError(
                f"Token endpoint returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise RemoteIOError("Token endpoint response has no access_token", payload=payload)
        expires_in = int(payload.get("expires_in") or 3600)
        self.log.debug("Fetched Graph token valid for %ss", expires_in)
        return token, time.time() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)


class GraphClient:
    """OneDrive and Teams operations used by the ticket intake daemon."""

    def __init__(
        self,
        tokens: GraphTokenProvider,
        *,
        archive_path: str,
        base_url: str = GRAPH_BASE_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.tokens = tokens
        self.archive_path = archive_path
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.log = logging.getLogger(self.__class__.__name__)

    # Ticket drop folder

    def list_ticket_files(self, folder_path: str) -> List[FileRef]:
        url = f"{self.base_url}/me/drive/root:{folder_path}:/children"
        payload = self._request("GET", url).json()
        files: List[FileRef] = []
        for item in payload.get("value") or []:
            name = item.get("name") or ""
            if "folder" in item or not name.lower().endswith(TICKET_FILE_SUFFIX):
                continue
            files.append(FileRef(id=str(item.get("id")), name=name))
        return files

    def read_file_content(self, file_ref: FileRef) -> bytes:
        return self.download_binary(file_ref.id)

    def download_binary(self, item_id: str) -> bytes:
        url = f"{self.base_url}/me/drive/items/{item_id}/content"
        return self._request("GET", url).content

    def archive(self, file_ref: FileRef) -> None:
        url = f"{self.base_url}/me/drive/items/{file_ref.id}"
        body = {"parentReference": {"path": f"/drive/root:{self.archive_path}"}}
        self._request("PATCH", url, json_payload=body)

    # History workbook

    def get_item(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/me/drive/root:{path}"
        try:
            return self._request("GET", url).json()
        except RemoteIOError as exc:
            if exc.status_code == 404:
                return None
            raise

    def download_item(self, item_id: str) -> bytes:
        return self.download_binary(item_id)

    def upload_new(self, path: str, data: bytes) -> Dict[str, Any]:
        url = f"{self.base_url}/me/drive/root:{path}:/content"
        return self._request("PUT", url, data=data, content_type=XLSX_CONTENT_TYPE).json()

    def upload_existing(self, item_id: str, data: bytes) -> Dict[str, Any]:
        url = f"{self.base_url}/me/drive/items/{item_id}/content"
        return self._request("PUT", url, data=data, content_type=XLSX_CONTENT_TYPE).json()

    # Teams

    def post_chat_message(self, chat_id: str, content: str) -> Dict[str, Any]:
        url = f"{self.base_url}/chats/{chat_id}/messages"
        body = {"body": {"content": content, "contentType": "html"}}
        return self._request("POST", url, json_payload=body).json()

    def _request(
        self,
        method: str,
        url: str,
        *,
        json_payload: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> requests.Response:
        reauthenticated = False
        attempt = 0
        while attempt < MAX_API_RETRIES:
            attempt += 1
            headers = {"Authorization": f"Bearer {self.tokens.get_token()}"}
            if content_type:
                headers["Content-Type"] = content_type
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=headers,
                    json=json_payload,
                    data=data,
                    timeout=REQUEST_TIMEOUT,
                )
            except requests.RequestException as exc:
                self.log.warning("Graph request failed (%s/%s): %s", attempt, MAX_API_RETRIES, exc)
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue

            if response.status_code == 401 and not reauthenticated:
                self.log.info("Graph token rejected; refreshing and retrying %s %s", method, url)
                self.tokens.invalidate()
                reauthenticated = True
                attempt -= 1
                continue

            if response.status_code >= 500:
                self.log.warning(
                    "Graph server error %s (%s/%s): %s",
                    response.status_code,
                    attempt,
                    MAX_API_RETRIES,
                    response.text,
                )
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue

            if response.status_code >= 400:
                raise _graph_error(method, url, response)
            return response

        raise RemoteIOError(f"Failed Graph request after {MAX_API_RETRIES} attempts: {method} {url}")


def _graph_error(method: str, url: str, response: requests.Response) -> RemoteIOError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    error = (payload or {}).get("error") if isinstance(payload, dict) else None
    code = (error or {}).get("code") if isinstance(error, dict) else None
    message = f"Graph {method} {url} returned {response.status_code}: {response.text}"
    if response.status_code == 423 or code == "resourceLocked":
        return DocumentLockedError(message, status_code=response.status_code, payload=payload)
    return RemoteIOError(message, status_code=response.status_code, payload=payload)
