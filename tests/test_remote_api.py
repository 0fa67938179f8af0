from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from gerrit_import.errors import BadRequest
from gerrit_import.remote_api import (
    RemoteApi,
    RemoteApiError,
    RemoteNotFound,
    strip_json_magic,
    validate_source,
)


def _body(data: object) -> str:
    return ")]}'\n" + json.dumps(data)


def _change(number: int, *, more: bool = False) -> dict[str, object]:
    data: dict[str, object] = {
        "id": f"proj~master~I{number:040d}",
        "change_id": f"I{number:040d}",
        "_number": number,
        "project": "proj",
        "branch": "master",
        "owner": {"_account_id": 1000, "username": "alice"},
        "created": "2015-03-10 12:34:56.000000000",
        "updated": "2015-03-11 08:00:00.000000000",
        "status": "NEW",
        "subject": f"change {number}",
    }
    if more:
        data["_more_changes"] = True
    return data


def test_strip_json_magic() -> None:
    assert strip_json_magic(b")]}'\n{}") == b"{}"
    assert strip_json_magic(b")]}'[]") == b"[]"
    assert strip_json_magic(b"{}") == b"{}"


@responses.activate
def test_get_project_uses_basic_auth_and_strips_prefix() -> None:
    api = RemoteApi(base_url="http://gerrit.test/", user="alice", password="secret")

    responses.add(
        responses.GET,
        "http://gerrit.test/a/projects/foo",
        body=_body({"name": "foo", "parent": "Public-Projects"}),
        status=200,
    )

    project = api.get_project("foo")

    assert project.name == "foo"
    assert project.parent == "Public-Projects"
    expected = base64.b64encode(b"alice:secret").decode("ascii")
    assert responses.calls[0].request.headers["Authorization"] == f"Basic {expected}"


@responses.activate
def test_get_project_quotes_nested_names() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(
        responses.GET,
        "http://gerrit.test/a/projects/plugins%2Freplication",
        body=_body({"name": "plugins/replication"}),
        status=200,
    )

    project = api.get_project("plugins/replication")

    assert project.parent is None


@responses.activate
def test_not_found_raises_remote_not_found() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(responses.GET, "http://gerrit.test/a/groups/nope/detail", status=404)

    with pytest.raises(RemoteNotFound) as excinfo:
        api.get_group("nope")

    assert excinfo.value.status_code == 404
    assert excinfo.value.method == "GET"


@responses.activate
def test_server_error_raises_remote_api_error() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(responses.GET, "http://gerrit.test/a/projects/foo", body="boom", status=500)

    with pytest.raises(RemoteApiError) as excinfo:
        api.get_project("foo")

    assert not isinstance(excinfo.value, RemoteNotFound)
    assert excinfo.value.body == "boom"


@responses.activate
def test_iter_changes_follows_more_changes() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(
        responses.GET,
        "http://gerrit.test/a/changes/",
        body=_body([_change(1), _change(2, more=True)]),
        status=200,
    )
    responses.add(
        responses.GET,
        "http://gerrit.test/a/changes/",
        body=_body([_change(3)]),
        status=200,
    )

    changes = api.query_changes("proj", page_size=2)

    assert [c.number for c in changes] == [1, 2, 3]
    assert len(responses.calls) == 2

    first = parse_qs(urlsplit(responses.calls[0].request.url).query)
    second = parse_qs(urlsplit(responses.calls[1].request.url).query)
    assert first["q"] == ["project:proj"]
    assert first["n"] == ["2"]
    assert first["S"] == ["0"]
    assert first["o"] == ["ALL_REVISIONS", "MESSAGES", "DETAILED_LABELS", "DETAILED_ACCOUNTS"]
    assert second["S"] == ["2"]


@responses.activate
def test_iter_changes_empty_project() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(responses.GET, "http://gerrit.test/a/changes/", body=_body([]), status=200)

    assert api.query_changes("proj") == []


@responses.activate
def test_get_comments_flattens_paths() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(
        responses.GET,
        "http://gerrit.test/a/changes/proj~master~I1/comments",
        body=_body(
            {
                "a.txt": [
                    {
                        "id": "c1",
                        "patch_set": 1,
                        "line": 3,
                        "message": "nit",
                        "updated": "2015-03-10 12:00:00.000000000",
                        "author": {"_account_id": 1000, "username": "alice"},
                    }
                ],
                "b.txt": [
                    {
                        "id": "c2",
                        "patch_set": 2,
                        "side": "PARENT",
                        "message": "why?",
                        "in_reply_to": "c1",
                        "author": {"_account_id": 1001, "username": "bob"},
                    }
                ],
            }
        ),
        status=200,
    )

    comments = api.get_comments("proj~master~I1")

    assert {c.path for c in comments} == {"a.txt", "b.txt"}
    by_id = {c.uuid: c for c in comments}
    assert by_id["c1"].line == 3
    assert by_id["c2"].side == "PARENT"
    assert by_id["c2"].in_reply_to == "c1"


@responses.activate
def test_put_sends_compact_json() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(responses.PUT, "http://gerrit.test/a/projects/foo/description", status=200)

    api.put("/projects/foo/description", {"description": "Foo", "commit_message": "x"})

    request = responses.calls[0].request
    assert request.body == b'{"description":"Foo","commit_message":"x"}'
    assert request.headers["Content-Type"].startswith("application/json")


@responses.activate
def test_put_raw_sends_bytes() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(responses.PUT, "http://gerrit.test/a/changes/1/edit/a.txt", status=204)

    api.put_raw("/changes/1/edit/a.txt", b"hello", content_type="text/plain")

    request = responses.calls[0].request
    assert request.body == b"hello"
    assert request.headers["Content-Type"] == "text/plain"


def test_put_raw_rejects_empty_body() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    with pytest.raises(ValueError):
        api.put_raw("/changes/1/edit/a.txt", b"")


@pytest.mark.parametrize(
    ("from_url", "user", "password", "message"),
    [
        (None, "alice", "secret", "from is required"),
        ("", "alice", "secret", "from is required"),
        ("not a url", "alice", "secret", "from must be a valid URL"),
        ("ftp://gerrit.test", "alice", "secret", "from must be a valid URL"),
        ("http://gerrit.test", None, "secret", "user is required"),
        ("http://gerrit.test", "alice", "", "pass is required"),
    ],
)
def test_validate_source_rejects_bad_input(
    from_url: str | None, user: str | None, password: str | None, message: str
) -> None:
    with pytest.raises(BadRequest, match=message):
        validate_source(from_url=from_url, user=user, password=password)


def test_validate_source_accepts_complete_input() -> None:
    validate_source(from_url="https://gerrit.test/r", user="alice", password="secret")


@responses.activate
def test_post_and_delete_use_authenticated_paths() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    responses.add(
        responses.POST,
        "http://gerrit.test/a/changes/1/abandon",
        body=_body({"status": "ABANDONED"}),
        status=200,
    )
    responses.add(responses.DELETE, "http://gerrit.test/a/changes/1/topic", status=204)

    assert api.post("/changes/1/abandon", {}).json() == {"status": "ABANDONED"}
    assert api.delete("/changes/1/topic").json() is None
    assert [c.request.method for c in responses.calls] == ["POST", "DELETE"]


def test_paths_must_be_absolute() -> None:
    api = RemoteApi(base_url="http://gerrit.test", user="alice", password="secret")

    with pytest.raises(ValueError, match="must start with"):
        api.get("projects/foo")
