"""
Appwrite REST adapters.

One ``AppwriteHttp`` (a shared ``requests.Session``) backs three services:
  AppwriteDocuments - document collections (columns, leads, customers)
  BlobStore         - customer document files
  IdentityProvider  - account sessions and the user directory

All calls are blocking; the async layer (client.py, board.py) runs them in a
worker thread. HTTP failures are mapped onto the store error taxonomy.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import requests

from .errors import StoreUnavailable, NotFound, StoreConflict, StoreError
from .schema import User, UrlMode

logger = logging.getLogger(__name__)

UNIQUE_ID = "unique()"


def _error_message(response: requests.Response) -> str:
    try:
        return response.json().get("message", "")
    except ValueError:
        return response.text[:200]


class AppwriteHttp:
    """Session, headers and error mapping shared by all Appwrite services."""

    def __init__(
        self,
        endpoint: str,
        project_id: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"X-Appwrite-Project": project_id})
        if api_key:
            self.session.headers.update({"X-Appwrite-Key": api_key})

    @classmethod
    def from_config(cls, cfg) -> "AppwriteHttp":
        return cls(cfg.endpoint, cfg.project_id, api_key=cfg.api_key, timeout=cfg.request_timeout)

    def url(self, path: str) -> str:
        return f"{self.endpoint}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs) -> Any:
        """
        Perform one call and decode the JSON body.

        Raises:
            NotFound: HTTP 404
            StoreConflict: HTTP 409
            StoreUnavailable: network errors, timeouts and every other non-2xx
        """
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, self.url(path), **kwargs)
        except requests.RequestException as e:
            raise StoreUnavailable(f"{method} {path}: {e}") from e

        if response.status_code == 404:
            raise NotFound(f"{method} {path}: {_error_message(response)}")
        if response.status_code == 409:
            raise StoreConflict(f"{method} {path}: {_error_message(response)}")
        if not response.ok:
            raise StoreUnavailable(
                f"{method} {path}: HTTP {response.status_code} {_error_message(response)}"
            )

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreUnavailable(f"{method} {path}: invalid JSON response") from e


# ── Documents ────────────────────────────────────────────────────────────────


class AppwriteDocuments:
    """Document backend over the Appwrite databases API."""

    def __init__(self, http: AppwriteHttp, database_id: str):
        self.http = http
        self.database_id = database_id

    def _path(self, collection: str, doc_id: Optional[str] = None) -> str:
        path = f"databases/{self.database_id}/collections/{collection}/documents"
        return f"{path}/{doc_id}" if doc_id else path

    def list_documents(
        self, collection: str, sort: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """List documents. ``sort`` is an attribute name, prefix ``-`` for descending."""
        queries = []
        if sort:
            method = "orderDesc" if sort.startswith("-") else "orderAsc"
            queries.append(json.dumps({"method": method, "attribute": sort.lstrip("-")}))
        if limit:
            queries.append(json.dumps({"method": "limit", "values": [limit]}))
        data = self.http.request("GET", self._path(collection), params={"queries[]": queries})
        return (data or {}).get("documents", [])

    def get_document(self, collection: str, doc_id: str) -> Dict[str, Any]:
        return self.http.request("GET", self._path(collection, doc_id))

    def create_document(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.http.request(
            "POST", self._path(collection), json={"documentId": UNIQUE_ID, "data": data}
        )

    def update_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.http.request("PATCH", self._path(collection, doc_id), json={"data": data})

    def delete_document(self, collection: str, doc_id: str) -> None:
        self.http.request("DELETE", self._path(collection, doc_id))


# ── Blob storage ─────────────────────────────────────────────────────────────


class BlobStore:
    """Customer document files in one storage bucket."""

    def __init__(self, http: AppwriteHttp, bucket_id: str):
        self.http = http
        self.bucket_id = bucket_id

    def upload(self, data: bytes, mime_type: str, filename: str = "document") -> str:
        """Upload bytes and return the new file id."""
        result = self.http.request(
            "POST",
            f"storage/buckets/{self.bucket_id}/files",
            data={"fileId": UNIQUE_ID},
            files={"file": (filename, data, mime_type)},
        )
        file_id = result["$id"]
        logger.info(f"Uploaded {filename} ({len(data)} bytes) as {file_id}")
        return file_id

    def delete(self, file_id: str) -> None:
        """Delete a file; a missing file counts as deleted."""
        try:
            self.http.request("DELETE", f"storage/buckets/{self.bucket_id}/files/{file_id}")
        except NotFound:
            logger.debug(f"File {file_id} already gone")

    def url_for(self, file_id: str, mode: UrlMode = UrlMode.PREVIEW) -> str:
        return self.http.url(
            f"storage/buckets/{self.bucket_id}/files/{file_id}/{mode.value}"
            f"?project={self.http.project_id}"
        )


# ── Identity ─────────────────────────────────────────────────────────────────


@dataclass
class AuthSession:
    """An authenticated account session. ``secret`` authenticates later calls for this user only."""
    id: str
    user_id: str
    expire: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False)


SESSION_HEADER = "X-Appwrite-Session"


class IdentityProvider:
    """
    Email/password sessions plus the user directory (server key required).

    The provider holds no session of its own: the HTTP session is shared by
    every caller, so each account call takes the caller's session secret.
    """

    def __init__(self, http: AppwriteHttp):
        self.http = http

    def login(self, email: str, password: str) -> AuthSession:
        data = self.http.request(
            "POST", "account/sessions/email", json={"email": email, "password": password}
        )
        logger.info(f"Logged in as {email}")
        return AuthSession(
            id=data.get("$id", ""),
            user_id=data.get("userId", ""),
            expire=data.get("expire"),
            secret=data.get("secret"),
        )

    def signup(self, name: str, email: str, password: str) -> AuthSession:
        self.http.request(
            "POST",
            "account",
            json={"userId": UNIQUE_ID, "email": email, "password": password, "name": name},
        )
        return self.login(email, password)

    def logout(self, secret: str) -> None:
        self.http.request("DELETE", "account/sessions/current", headers={SESSION_HEADER: secret})

    def current_user(self, secret: Optional[str]) -> Optional[User]:
        """The user owning ``secret``, or None when there is no valid session."""
        if not secret:
            return None
        try:
            data = self.http.request("GET", "account", headers={SESSION_HEADER: secret})
        except StoreError:
            return None
        return User.from_wire(data) if data else None

    def list_users(self) -> List[User]:
        data = self.http.request("GET", "users")
        return [User.from_wire(u) for u in (data or {}).get("users", [])]
