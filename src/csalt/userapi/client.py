"""HTTP client for the Cacophony user API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter

from csalt.core.models import Device, DeviceName, DeviceQuery, Session, TokenTTL

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30.0
MAX_IDLE_CONNECTIONS = 5
API_BASE_PATH = "/api/v1"
AUTH_USER_PATH = "/authenticate_user"
TOKEN_PATH = "/token"
DEVICES_QUERY_PATH = "/devices/query"
TEST_API_HOST = "api-test.cacophony.org.nz"

SHORT_TTL: TokenTTL = "short"
MEDIUM_TTL: TokenTTL = "medium"
LONG_TTL: TokenTTL = "long"
TOKEN_TTLS: tuple[TokenTTL, ...] = (SHORT_TTL, MEDIUM_TTL, LONG_TTL)


class DirectoryClientError(RuntimeError):
    """Base exception for API client errors."""


class InvalidInputError(DirectoryClientError, ValueError):
    """Raised before any request when the caller supplied unusable input."""


class NoCredentialError(DirectoryClientError):
    """Raised when a call needs a token and none is held."""


class AuthenticationError(DirectoryClientError):
    """Raised on HTTP 401 or when no token is available for an authenticated call.

    The caller should re-authenticate and may retry the same call once.
    """

    recoverable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HTTPStatusError(DirectoryClientError):
    """Raised when the server answers with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP request failed ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class ClientError(HTTPStatusError):
    """Permanent 4xx failure other than 401."""


class ServerError(HTTPStatusError):
    """5xx or other unexpected status. Not retried."""


class TransportError(DirectoryClientError):
    """Raised when the request could not be completed (connect, TLS, timeout)."""


class DecodeError(DirectoryClientError):
    """Raised when a successful response body cannot be decoded."""


def join_url(base_url: str, *paths: str) -> str:
    """Append ``paths`` to the path of ``base_url``."""

    parts = urlsplit(base_url)
    segments = [parts.path.rstrip("/")]
    segments.extend(path.strip("/") for path in paths if path.strip("/"))
    joined = "/".join(segments)
    if not joined.startswith("/"):
        joined = "/" + joined
    return urlunsplit((parts.scheme, parts.netloc, joined, parts.query, parts.fragment))


def build_http_session(max_idle_connections: int = MAX_IDLE_CONNECTIONS) -> requests.Session:
    """Create a ``requests.Session`` with a capped connection pool."""

    http = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max_idle_connections)
    http.mount("https://", adapter)
    http.mount("http://", adapter)
    return http


def classify_response(response: requests.Response) -> None:
    """Raise the matching client exception for a non-success response."""

    status = response.status_code
    if status == 401:
        raise AuthenticationError(f"API authentication failed ({status})", status_code=status)
    if 200 <= status < 300:
        return
    body = response.text
    if 400 <= status < 500:
        raise ClientError(status, body)
    raise ServerError(status, body)


def _decode_json(response: requests.Response) -> Mapping[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise DecodeError(f"decode: {exc}") from exc
    if not isinstance(data, Mapping):
        raise DecodeError("decode: response body must be a JSON object")
    return data


def _decode_token(response: requests.Response) -> str:
    data = _decode_json(response)
    token = data.get("token")
    if not isinstance(token, str) or not token:
        raise DecodeError("decode: response has no token")
    return token


def _decode_devices(response: requests.Response) -> list[Device]:
    data = _decode_json(response)
    raw_devices = data.get("devices") or []
    if not isinstance(raw_devices, list):
        raise DecodeError("decode: 'devices' must be a list")

    devices: list[Device] = []
    for raw in raw_devices:
        if not isinstance(raw, Mapping):
            raise DecodeError("decode: each device must be an object")
        salt_id = raw.get("saltId")
        if isinstance(salt_id, bool) or not isinstance(salt_id, int):
            raise DecodeError(f"decode: device {raw.get('devicename')!r} has no numeric saltId")
        devices.append(
            Device(
                group_name=str(raw.get("groupname") or ""),
                device_name=str(raw.get("devicename") or ""),
                salt_id=salt_id,
            )
        )
    return devices


def _device_names_param(devices: Iterable[DeviceName]) -> str:
    return json.dumps([device.to_query() for device in devices])


@dataclass(slots=True)
class DirectoryClient:
    """Synchronous client for the authentication and device query endpoints."""

    session: Session
    timeout: float = HTTP_TIMEOUT
    http: requests.Session = field(default_factory=build_http_session)

    @property
    def server_url(self) -> str:
        return self.session.identity.server_url

    @property
    def user_name(self) -> str:
        return self.session.identity.user_name

    @property
    def has_token(self) -> bool:
        return bool(self.session.token)

    @property
    def authenticated(self) -> bool:
        return self.session.authenticated

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> DirectoryClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def authenticate(self, password: str) -> None:
        """Exchange the user's password for a session token."""

        if not password:
            raise InvalidInputError("empty password")

        response = self._request(
            "POST",
            join_url(self.server_url, AUTH_USER_PATH),
            json={"username": self.user_name, "password": password},
        )
        self.session.token = _decode_token(response)
        self.session.authenticated = True
        logger.info("authenticated server=%s", self.server_url, extra={"user": self.user_name})

    def request_scoped_token(self, ttl: TokenTTL = LONG_TTL) -> str:
        """Exchange the current token for a read-only device token with ``ttl``."""

        if not self.session.token:
            raise NoCredentialError("No Token found")
        if ttl not in TOKEN_TTLS:
            raise InvalidInputError(f"invalid ttl '{ttl}'. Allowed: {', '.join(TOKEN_TTLS)}")

        response = self._request(
            "POST",
            join_url(self.server_url, TOKEN_PATH),
            json={"ttl": ttl, "access": {"devices": "r"}},
            headers={"Authorization": self.session.token},
        )
        token = _decode_token(response)
        logger.debug("scoped token issued ttl=%s", ttl, extra={"user": self.user_name})
        return f"JWT {token}"

    def resolve_devices(self, query: DeviceQuery) -> list[Device]:
        """Translate group and device names into devices with salt ids."""

        if not self.session.token:
            raise AuthenticationError("No Token Supplied")

        params: dict[str, str] = {}
        if query.groups:
            params["groups"] = json.dumps(list(query.groups))
        if query.devices:
            params["devices"] = _device_names_param(query.devices)

        response = self._request(
            "GET",
            join_url(self.server_url, API_BASE_PATH, DEVICES_QUERY_PATH),
            params=params,
            headers={"Authorization": self.session.token},
        )
        devices = _decode_devices(response)
        self.session.authenticated = True
        logger.debug(
            "devices resolved groups=%d devices=%d found=%d",
            len(query.groups),
            len(query.devices),
            len(devices),
            extra={"user": self.user_name},
        )
        return devices

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        logger.debug("request method=%s url=%s", method, url, extra={"user": self.user_name})
        try:
            response = self.http.request(method, url, timeout=(self.timeout, self.timeout), **kwargs)
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        logger.debug("response status=%s url=%s", response.status_code, url, extra={"user": self.user_name})
        classify_response(response)
        return response
