from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from intake.errors import RemoteIOError, TrackerRequestError

REQUEST_TIMEOUT = 30
MAX_API_RETRIES = 4
RETRY_BACKOFF_SECONDS = 3
COLLECTION_PAGE_SIZE = 100

PERMISSION_REJECTION_TEXT = "The chosen user is not allowed"
ASSIGNEE_REJECTION_TEXT = "Assignee"


class OpenProjectClient:
    """Thin wrapper around the OpenProject API v3 with retry/backoff."""

    def __init__(self, base_url: str, api_token: str, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = ("apikey", api_token)
        self.session.headers.update({"Accept": "application/hal+json"})
        self.log = logging.getLogger(self.__class__.__name__)

    def work_package_url(self, project: Optional[str], work_package_id: int) -> str:
        if project:
            return f"{self.base_url}/projects/{project}/work_packages/{work_package_id}"
        return f"{self.base_url}/work_packages/{work_package_id}"

    def create_work_package(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v3/work_packages"
        return self._request("POST", url, json_payload=body)

    def upload_attachment(self, file_name: str, content: bytes) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v3/attachments"
        files = {
            "metadata": (None, json.dumps({"fileName": file_name}), "application/json"),
            "file": (file_name, content, "application/octet-stream"),
        }
        return self._request("POST", url, files=files)

    def fetch_collection(self, endpoint: str) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        offset = 1
        total: Optional[int] = None
        while True:
            url = f"{self.base_url}/api/v3/{endpoint}"
            params = {"offset": offset, "pageSize": COLLECTION_PAGE_SIZE}
            payload = self._request("GET", url, params=params)
            elements = (payload.get("_embedded") or {}).get("elements") or []
            if not elements:
                break
            results.extend(elements)
            if total is None:
                total = int(payload.get("total") or 0)
            self.log.debug("Fetched %s so far: %s / %s", endpoint, len(results), total)
            if len(results) >= total:
                break
            offset += 1
        return results

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        for attempt in range(1, MAX_API_RETRIES + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_payload,
                    files=files,
                    timeout=REQUEST_TIMEOUT,
                )
            except requests.RequestException as exc:
                self.log.warning("OpenProject request failed (%s/%s): %s", attempt, MAX_API_RETRIES, exc)
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue

            if response.status_code >= 500:
                self.log.warning(
                    "OpenProject server error %s (%s/%s): %s",
                    response.status_code,
                    attempt,
                    MAX_API_RETRIES,
                    response.text,
                )
                time.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue

            if response.status_code >= 400:
                raise tracker_error(response)

            try:
                return response.json()
            except ValueError as exc:  # pragma: no cover - unexpected payloads
                raise RemoteIOError("Failed to parse OpenProject response as JSON") from exc

        raise RemoteIOError(f"Failed OpenProject request after {MAX_API_RETRIES} attempts: {url}")


def error_attributes(payload: Any) -> List[str]:
    """Collect the ``_embedded.details.attribute`` names from an error envelope."""
    if not isinstance(payload, dict):
        return []
    attributes: List[str] = []
    embedded = payload.get("_embedded") or {}
    details = embedded.get("details") or {}
    attribute = details.get("attribute")
    if attribute:
        attributes.append(str(attribute))
    for nested in embedded.get("errors") or []:
        attributes.extend(error_attributes(nested))
    return attributes


def error_messages(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return []
    messages = [str(payload["message"])] if payload.get("message") else []
    for nested in (payload.get("_embedded") or {}).get("errors") or []:
        messages.extend(error_messages(nested))
    return messages


def tracker_error(response: requests.Response) -> TrackerRequestError:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    messages = error_messages(payload)
    message = " ".join(messages) if messages else response.text
    return TrackerRequestError(
        f"OpenProject API returned {response.status_code}: {message}",
        status_code=response.status_code,
        payload=payload,
        error_identifier=(payload or {}).get("errorIdentifier") if isinstance(payload, dict) else None,
        attributes=error_attributes(payload),
    )


def is_permission_rejection(error: Exception) -> bool:
    """True when OpenProject refused the responsible or assignee user.

    OpenProject reports this as a property constraint violation whose only
    distinguishing feature is the message wording, so this stays a text match.
    """
    return PERMISSION_REJECTION_TEXT in str(error)


def rejects_assignee(error: Exception) -> bool:
    """True when the permission rejection names the assignee.

    Prefers the structured attribute list; falls back to the message text for
    servers that do not send ``_embedded.details``.
    """
    attributes = getattr(error, "attributes", None) or []
    if attributes:
        return "assignee" in attributes
    return ASSIGNEE_REJECTION_TEXT in str(error)
