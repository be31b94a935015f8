from __future__ import annotations

import base64
import io
import json
from pathlib import Path
from urllib.error import HTTPError, URLError

import pytest

from vmsbackup.directory_client import DirectoryClient, client_factory
from vmsbackup.errors import FetchError
from vmsbackup.models import Recording, Site

RECORDINGS = [
    {"id": 42, "name": "Team A: Review?", "createdAt": 1700000000, "authorId": 7, "cameraCount": 1, "duration": 3600},
    {"id": 43, "name": "Drills", "createdAt": 1700003600, "authorId": 8, "cameraCount": 2},
]
USERS = [{"id": 7, "team": "Coaches"}, {"id": 8, "teamName": "U19"}]


def _site() -> Site:
    return Site(
        name="Main",
        endpoint="https://vms.example.lan",
        remote_host="vms.example.lan",
        home_dir=Path("/tmp/unused"),
        username="backup",
        password="secret",
    )


class FakeOpener:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append((request, timeout))
        response = self.responses[request.full_url]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, bytes):
            return io.BytesIO(response)
        return io.BytesIO(json.dumps(response).encode("utf-8"))


def _client(responses) -> tuple[DirectoryClient, FakeOpener]:
    opener = FakeOpener(responses)
    return DirectoryClient(_site(), timeout_sec=5, opener=opener), opener


def test_fetch_listing_decodes_records_and_teams():
    client, opener = _client(
        {
            "https://vms.example.lan/api/recordings": {"recordings": RECORDINGS},
            "https://vms.example.lan/api/users": USERS,
        }
    )

    listing = client.fetch_listing()

    assert [r.id for r in listing.recordings] == [42, 43]
    first = listing.recordings[0]
    assert first.name == "Team A: Review?"
    assert first.snapshot()["duration"] == 3600
    assert listing.teams == {7: "Coaches", 8: "U19"}

    request, timeout = opener.requests[0]
    assert timeout == 5
    expected = "Basic " + base64.b64encode(b"backup:secret").decode("ascii")
    assert request.get_header("Authorization") == expected


def test_http_error_becomes_fetch_error():
    url = "https://vms.example.lan/api/recordings"
    client, _ = _client({url: HTTPError(url, 401, "Unauthorized", {}, None)})

    with pytest.raises(FetchError, match="HTTP 401"):
        client.fetch_listing()


def test_network_error_becomes_fetch_error():
    client, _ = _client({"https://vms.example.lan/api/recordings": URLError("timed out")})

    with pytest.raises(FetchError):
        client.fetch_listing()


def test_users_failure_fails_whole_listing():
    client, _ = _client(
        {
            "https://vms.example.lan/api/recordings": RECORDINGS,
            "https://vms.example.lan/api/users": b"<html>oops</html>",
        }
    )

    with pytest.raises(FetchError, match="invalid JSON"):
        client.fetch_listing()


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": "x", "createdAt": 1, "authorId": 1, "cameraCount": 1}, "missing required field 'id'"),
        ({"id": "42", "name": "x", "createdAt": 1, "authorId": 1, "cameraCount": 1}, "expected int"),
        ({"id": 42, "name": "x", "createdAt": 1, "authorId": 1, "cameraCount": True}, "cameraCount"),
        ({"id": 42, "name": None, "createdAt": 1, "authorId": 1, "cameraCount": 1}, "'name'"),
        ({"id": 42, "name": "x", "createdAt": 1, "authorId": 1, "cameraCount": -1}, "negative"),
    ],
)
def test_schema_mismatch_is_rejected(payload, message):
    with pytest.raises(FetchError, match=message):
        Recording.from_payload(payload)


def test_unwrapped_object_is_rejected():
    client, _ = _client({"https://vms.example.lan/api/recordings": {"count": 2}})

    with pytest.raises(FetchError, match="does not contain a list"):
        client.fetch_recordings()


def test_client_factory_uses_directory_settings():
    build = client_factory({"timeout_sec": 12, "recordings_path": "/v2/rec", "users_path": "/v2/users"})
    client = build(_site())
    assert client.timeout == 12.0
    assert client.recordings_path == "/v2/rec"
    assert client.users_path == "/v2/users"
