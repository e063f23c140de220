"""Team Foundation Version Control backend (Azure DevOps Server / TFS REST API).

Endpoints used, relative to the project collection URL:

    GET  _apis/connectionData                       authenticated identity
    GET  _apis/tfvc/items?scopePath=&recursionLevel= item queries
    GET  _apis/tfvc/items?path=&download=true        item content
    POST _apis/tfvc/changesets                       check-in
    GET  _apis/permissions/{namespace}/{bits}        check-in permission

Credentials are sent as HTTP basic auth (username + password or personal
access token). With system credentials no auth header is set and httpx
picks up .netrc and proxy settings from the environment.
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .base import (
    ChangeRequest,
    ChangeType,
    Credentials,
    RecursionType,
    ServerItem,
    VersionControlServer,
    WorkspaceRegistry,
)
from ..errors import (
    AuthenticationError,
    BackendError,
    CheckInConflictError,
    TransientBackendError,
)

logger = logging.getLogger(__name__)

API_VERSION = "5.0"

# Security namespace for version control items and the CheckIn permission bit
VERSION_CONTROL_NAMESPACE = "a39371cf-0841-4c16-bbd3-276e341bc052"
CHECKIN_PERMISSION = 4

RECURSION_LEVELS = {
    RecursionType.NONE: "None",
    RecursionType.ONE_LEVEL: "OneLevel",
    RecursionType.FULL: "Full",
}


def parse_change_date(value: Optional[str]) -> datetime:
    """Parse a REST timestamp such as '2024-03-01T10:15:30.123Z'."""
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 accepts only 3 or 6 fractional digits
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        tail = ""
        for i, ch in enumerate(rest):
            if not ch.isdigit():
                tail = rest[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{tail}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return data["message"]
    return response.reason_phrase


class TfvcServer(VersionControlServer):
    """TFVC over the Azure DevOps / TFS REST API."""

    def __init__(
        self,
        url: str,
        credentials: Credentials,
        registry: WorkspaceRegistry,
        timeout: int = 30,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(url.rstrip("/"), credentials, registry, timeout)
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _create_client(self) -> httpx.Client:
        auth = None
        if not self.credentials.use_system_credentials:
            auth = httpx.BasicAuth(self.credentials.username or "", self.credentials.password or "")

        return httpx.Client(
            base_url=self.url + "/",
            auth=auth,
            timeout=httpx.Timeout(self.timeout),
            trust_env=True,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if self._client is None:
            raise BackendError("Not connected")
        params = dict(kwargs.pop("params", None) or {})
        params.setdefault("api-version", API_VERSION)
        try:
            return self._client.request(method, path, params=params, **kwargs)
        except httpx.TransportError as e:
            raise TransientBackendError(f"{method} {path} failed: {e}")
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}")

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise BackendError(
            f"Server returned {response.status_code}: {_error_message(response)}",
            status_code=response.status_code,
        )

    # === Connection ===

    def connect(self) -> str:
        if self.is_connected:
            return self.authorized_user

        self._client = self._create_client()
        try:
            response = self._request("GET", "_apis/connectionData")
        except BackendError:
            self._close_client()
            raise

        # Azure DevOps answers a rejected token with 203 and a sign-in page
        if response.status_code in (203, 401, 403):
            self._close_client()
            raise AuthenticationError(
                f"Authentication to {self.url} failed ({response.status_code})",
                url=self.url,
                username=self.credentials.username,
            )
        if not response.is_success:
            self._close_client()
            self._raise_for_status(response)

        try:
            user = response.json().get("authenticatedUser") or {}
        except ValueError:
            self._close_client()
            raise AuthenticationError(
                f"Authentication to {self.url} failed (unexpected response)",
                url=self.url,
                username=self.credentials.username,
            )

        name = (
            user.get("providerDisplayName")
            or user.get("customDisplayName")
            or self.credentials.username
            or ""
        )
        self.authorized_user = name
        logger.info(f"Connected to {self.url} as {name}")
        return name

    def _close_client(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def close(self) -> None:
        if self._client is not None:
            logger.debug(f"Closing connection to {self.url}")
        self._close_client()
        self.authorized_user = None

    def has_check_in_permission(self, server_path: str) -> bool:
        response = self._request(
            "GET",
            f"_apis/permissions/{VERSION_CONTROL_NAMESPACE}/{CHECKIN_PERMISSION}",
            params={"tokens": server_path, "alwaysAllowAdministrators": "true"},
        )
        if response.status_code in (401, 403):
            return False
        self._raise_for_status(response)
        values = response.json().get("value") or []
        return bool(values) and all(bool(v) for v in values)

    # === Items ===

    def _query(self, scope_path: str, recursion: RecursionType) -> list[ServerItem]:
        response = self._request(
            "GET",
            "_apis/tfvc/items",
            params={
                "scopePath": scope_path,
                "recursionLevel": RECURSION_LEVELS[recursion],
            },
        )
        if response.status_code == 404:
            return []
        self._raise_for_status(response)

        items = []
        for entry in response.json().get("value", []):
            if entry.get("isDeleted"):
                continue
            items.append(ServerItem(
                path=entry["path"],
                version=int(entry.get("version", 0)),
                check_in_date=parse_change_date(entry.get("changeDate")),
                is_folder=bool(entry.get("isFolder", False)),
            ))
        return items

    def download(self, server_path: str) -> Optional[bytes]:
        response = self._request(
            "GET",
            "_apis/tfvc/items",
            params={"path": server_path, "download": "true"},
            headers={"Accept": "application/octet-stream"},
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.content

    # === Check-in ===

    @staticmethod
    def _change_body(change: ChangeRequest) -> dict:
        item: dict = {"path": change.server_path}
        if change.base_version is not None and change.change_type != ChangeType.ADD:
            item["version"] = change.base_version

        body: dict = {"changeType": change.change_type.value, "item": item}
        if change.change_type != ChangeType.DELETE:
            body["newContent"] = {
                "content": base64.b64encode(change.content or b"").decode("ascii"),
                "contentType": "base64encoded",
            }
        return body

    def check_in(self, changes: list[ChangeRequest], comment: str) -> int:
        response = self._request(
            "POST",
            "_apis/tfvc/changesets",
            json={
                "comment": comment,
                "changes": [self._change_body(c) for c in changes],
            },
        )

        if response.status_code in (400, 401, 403, 409, 412):
            raise CheckInConflictError(
                f"Check-in rejected ({response.status_code}): {_error_message(response)}",
                conflicts=[c.server_path for c in changes],
            )
        self._raise_for_status(response)

        changeset_id = int(response.json()["changesetId"])
        logger.info(f"Checked in changeset {changeset_id} ({len(changes)} change(s))")
        return changeset_id
