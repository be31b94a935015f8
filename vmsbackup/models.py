"""Typed records exchanged with the remote directory service."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

from .errors import ConfigError, FetchError
from .naming import sanitize

_RECORDING_FIELDS: tuple[tuple[str, type], ...] = (
    ("id", int),
    ("name", str),
    ("createdAt", int),
    ("authorId", int),
    ("cameraCount", int),
)


def _require(payload: Mapping[str, Any], key: str, expected: type, what: str) -> Any:
    if key not in payload:
        raise FetchError(f"{what} is missing required field {key!r}")
    value = payload[key]
    # bool is an int subclass; a JSON true/false is never a valid id or count.
    if isinstance(value, bool) or not isinstance(value, expected):
        raise FetchError(
            f"{what} field {key!r} has type {type(value).__name__}, expected {expected.__name__}"
        )
    return value


@dataclass(frozen=True)
class Recording:
    """One remote recording as returned by the directory service."""

    id: int
    name: str
    created_at: int
    author_id: int
    camera_count: int
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "Recording":
        if not isinstance(payload, Mapping):
            raise FetchError(f"recording entry is {type(payload).__name__}, expected an object")
        what = f"recording {payload.get('id', '?')}"
        values = {key: _require(payload, key, kind, what) for key, kind in _RECORDING_FIELDS}
        if values["cameraCount"] < 0:
            raise FetchError(f"{what} has a negative cameraCount")
        return cls(
            id=values["id"],
            name=values["name"],
            created_at=values["createdAt"],
            author_id=values["authorId"],
            camera_count=values["cameraCount"],
            raw=dict(payload),
        )

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy of the record as it was fetched."""

        if self.raw:
            return dict(self.raw)
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "authorId": self.author_id,
            "cameraCount": self.camera_count,
        }


def decode_teams(entries: Any) -> dict[int, str]:
    if not isinstance(entries, list):
        raise FetchError(f"user list is {type(entries).__name__}, expected a list")
    teams: dict[int, str] = {}
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise FetchError(f"user entry is {type(entry).__name__}, expected an object")
        user_id = _require(entry, "id", int, "user")
        team_key = "team" if "team" in entry else "teamName"
        teams[user_id] = _require(entry, team_key, str, f"user {user_id}")
    return teams


def decode_recordings(entries: Any) -> list[Recording]:
    if not isinstance(entries, list):
        raise FetchError(f"recording list is {type(entries).__name__}, expected a list")
    return [Recording.from_payload(entry) for entry in entries]


@dataclass(frozen=True)
class SiteListing:
    recordings: list[Recording]
    teams: dict[int, str]

    def team_for(self, record: Recording, default: str) -> str:
        team = self.teams.get(record.author_id, "")
        return team if team.strip() else default


@dataclass(frozen=True)
class Site:
    """A backup target: remote appliance plus the local home of its tree."""

    name: str
    endpoint: str
    remote_host: str
    home_dir: Path
    username: str = ""
    password: str = field(default="", repr=False)

    @classmethod
    def from_cfg(cls, entry: Any, output_root: Path) -> "Site":
        if not isinstance(entry, Mapping):
            raise ConfigError("each entry under 'sites' must be a mapping")
        name = str(entry.get("name") or "").strip()
        endpoint = str(entry.get("endpoint") or "").strip()
        if not name:
            raise ConfigError("site entry is missing 'name'")
        if not endpoint:
            raise ConfigError(f"site {name!r} is missing 'endpoint'")

        remote_host = str(entry.get("remote_host") or "").strip()
        if not remote_host:
            remote_host = urlsplit(endpoint).hostname or ""
        if not remote_host:
            raise ConfigError(f"site {name!r} has no remote_host and endpoint {endpoint!r} has no host")

        home = str(entry.get("home_dir") or "").strip()
        home_dir = Path(home).expanduser() if home else output_root / sanitize(name)

        return cls(
            name=name,
            endpoint=endpoint.rstrip("/"),
            remote_host=remote_host,
            home_dir=home_dir,
            username=str(entry.get("username") or ""),
            password=str(entry.get("password") or ""),
        )
