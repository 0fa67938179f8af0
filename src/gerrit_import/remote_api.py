from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit

import requests

from gerrit_import.errors import BadRequest
from gerrit_import.remote_model import (
    RemoteAccount,
    RemoteChange,
    RemoteComment,
    RemoteGroup,
    RemoteProject,
    parse_account,
    parse_change,
    parse_comments,
    parse_group,
    parse_project,
)

logger = logging.getLogger(__name__)

# Anti-XSSI prefix written before every JSON response body.
JSON_MAGIC = b")]}'\n"

_CHANGE_QUERY_OPTIONS = ("ALL_REVISIONS", "MESSAGES", "DETAILED_LABELS", "DETAILED_ACCOUNTS")


@dataclass
class RemoteApiError(Exception):
    method: str
    url: str
    status_code: int
    body: str

    def __str__(self) -> str:
        return f"{self.method} {self.url} failed with {self.status_code}: {self.body[:200]}"


class RemoteNotFound(RemoteApiError):
    pass


def strip_json_magic(content: bytes) -> bytes:
    if content.startswith(JSON_MAGIC):
        return content[len(JSON_MAGIC) :]
    # Some proxies drop the trailing newline.
    if content.startswith(JSON_MAGIC.rstrip()):
        return content[len(JSON_MAGIC.rstrip()) :]
    return content


class RestResponse:
    """HTTP response whose body reader skips the anti-hijacking prefix."""

    def __init__(self, response: requests.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def content(self) -> bytes:
        return strip_json_magic(self._response.content)

    @property
    def text(self) -> str:
        return self.content.decode(self._response.encoding or "utf-8", errors="replace")

    def json(self) -> Any:
        content = self.content
        if not content.strip():
            return None
        return json.loads(content)


def is_valid_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def validate_source(*, from_url: str | None, user: str | None, password: str | None) -> None:
    if not from_url:
        raise BadRequest("from is required")
    if not is_valid_url(from_url):
        raise BadRequest("from must be a valid URL")
    if not user:
        raise BadRequest("user is required")
    if not password:
        raise BadRequest("pass is required")


def _quote(segment: str) -> str:
    return quote(segment, safe="")


class RemoteApi:
    def __init__(
        self,
        *,
        base_url: str,
        user: str,
        password: str,
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.auth = (user, password)
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            raise ValueError(f"path must start with '/': {path!r}")
        return f"{self._base_url}/a{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any | None = None,
        content: Any | None = None,
        data: bytes | None = None,
        content_type: str | None = None,
    ) -> RestResponse:
        url = self._url(path)
        headers: dict[str, str] = {"Accept": "application/json"}
        if content is not None:
            headers["Content-Type"] = "application/json; charset=UTF-8"
            data = json.dumps(content, separators=(",", ":")).encode("utf-8")
        elif data is not None:
            headers["Content-Type"] = content_type or "application/octet-stream"

        resp = self._session.request(
            method,
            url,
            headers=headers,
            params=params,
            data=data,
            timeout=self._timeout,
        )

        if resp.status_code == 404:
            raise RemoteNotFound(
                method=method, url=url, status_code=resp.status_code, body=resp.text
            )
        if resp.status_code >= 400:
            raise RemoteApiError(
                method=method, url=url, status_code=resp.status_code, body=resp.text
            )

        return RestResponse(resp)

    def get(self, path: str, *, params: Any | None = None) -> RestResponse:
        return self._request("GET", path, params=params)

    def post(self, path: str, content: Any | None = None) -> RestResponse:
        return self._request("POST", path, content=content)

    def put(self, path: str, content: Any | None = None) -> RestResponse:
        return self._request("PUT", path, content=content)

    def put_raw(
        self, path: str, data: bytes, *, content_type: str = "application/octet-stream"
    ) -> RestResponse:
        if not data:
            raise ValueError("raw content must not be empty")
        return self._request("PUT", path, data=data, content_type=content_type)

    def delete(self, path: str) -> RestResponse:
        return self._request("DELETE", path)

    def get_project(self, name: str) -> RemoteProject:
        data = self.get(f"/projects/{_quote(name)}").json()
        assert isinstance(data, dict)
        return parse_project(data)

    def get_group(self, id_or_name: str) -> RemoteGroup:
        data = self.get(f"/groups/{_quote(id_or_name)}/detail").json()
        assert isinstance(data, dict)
        return parse_group(data)

    def get_account(self, account_id: int) -> RemoteAccount:
        data = self.get(f"/accounts/{account_id}/detail").json()
        account = parse_account(data)
        assert account is not None
        return account

    def iter_changes(self, project: str, *, page_size: int = 100) -> Iterator[RemoteChange]:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        start = 0
        while True:
            params: list[tuple[str, Any]] = [
                ("q", f"project:{project}"),
                ("n", page_size),
                ("S", start),
            ]
            params.extend(("o", o) for o in _CHANGE_QUERY_OPTIONS)
            data = self.get("/changes/", params=params).json()
            assert isinstance(data, list)

            page = [parse_change(c) for c in data if isinstance(c, dict)]
            yield from page
            if not page or not page[-1].more_changes:
                return
            start += len(page)
            logger.debug("Fetching next change page for %s (start=%d)", project, start)

    def query_changes(self, project: str, *, page_size: int = 100) -> list[RemoteChange]:
        return list(self.iter_changes(project, page_size=page_size))

    def get_comments(self, change_id: str) -> list[RemoteComment]:
        data = self.get(f"/changes/{_quote(change_id)}/comments").json()
        if not data:
            return []
        assert isinstance(data, dict)
        return parse_comments(data)
