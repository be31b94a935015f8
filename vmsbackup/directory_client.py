"""Client for the appliance's recording and user listings."""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import FetchError
from .models import Site, SiteListing, decode_recordings, decode_teams

_LIST_KEYS = ("recordings", "users", "items", "data")


def _unwrap_list(payload: Any, what: str) -> Any:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _LIST_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    raise FetchError(f"{what} response does not contain a list")


class DirectoryClient:
    """Fetch one site's recordings and user/team lookup over HTTP."""

    def __init__(
        self,
        site: Site,
        *,
        timeout_sec: float = 30.0,
        recordings_path: str = "/api/recordings",
        users_path: str = "/api/users",
        opener: Callable[..., Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.site = site
        self.timeout = float(timeout_sec or 30.0)
        self.recordings_path = recordings_path
        self.users_path = users_path
        self._opener = opener or urlopen
        self._logger = logger or logging.getLogger("vms_backup")

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.site.username:
            token = f"{self.site.username}:{self.site.password}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(token).decode("ascii")
        return headers

    def _get_json(self, path: str) -> Any:
        url = f"{self.site.endpoint}/{path.lstrip('/')}"
        request = Request(url, method="GET", headers=self._headers())
        self._logger.debug("GET %s", url)
        try:
            with self._opener(request, timeout=self.timeout) as response:
                body = response.read()
        except HTTPError as exc:
            raise FetchError(f"GET {url} returned HTTP {exc.code}") from exc
        except (URLError, OSError) as exc:
            raise FetchError(f"GET {url} failed: {exc}") from exc

        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise FetchError(f"GET {url} returned invalid JSON: {exc}") from exc

    def fetch_recordings(self):
        payload = self._get_json(self.recordings_path)
        return decode_recordings(_unwrap_list(payload, "recordings"))

    def fetch_teams(self) -> dict[int, str]:
        payload = self._get_json(self.users_path)
        return decode_teams(_unwrap_list(payload, "users"))

    def fetch_listing(self) -> SiteListing:
        """Both lists or nothing: any failure raises :class:`FetchError`."""

        recordings = self.fetch_recordings()
        teams = self.fetch_teams()
        self._logger.info(
            "site %s: %d recording(s), %d user(s)", self.site.name, len(recordings), len(teams)
        )
        return SiteListing(recordings=recordings, teams=teams)


def client_factory(directory_cfg: dict[str, Any]) -> Callable[[Site], DirectoryClient]:
    def _build(site: Site) -> DirectoryClient:
        return DirectoryClient(
            site,
            timeout_sec=float(directory_cfg.get("timeout_sec", 30.0) or 30.0),
            recordings_path=str(directory_cfg.get("recordings_path") or "/api/recordings"),
            users_path=str(directory_cfg.get("users_path") or "/api/users"),
        )

    return _build
