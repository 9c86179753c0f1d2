import asyncio
from typing import Any, Mapping, Protocol, runtime_checkable

import httpx
import structlog
from cachetools import TTLCache

from .errors import ResponseValidationError, TransportError
from .models import Account, Relationship, TopologyNode, User

logger = structlog.get_logger(__name__)

SERVICE_NAME = "aims"
API_VERSION = "v1"
AUTH_TOKEN_HEADER = "X-AIMS-Auth-Token"

# Status codes worth another attempt; everything else fails immediately.
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@runtime_checkable
class AimsClient(Protocol):
    """A runtime-checkable protocol for the AIMS calls the relationship view relies on.

    Implementations own transport concerns (authentication, caching, retries) and
    hand back already-validated models.
    """

    async def fetch_topology(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> TopologyNode:
        """Return the server-resolved topology rooted at ``account_id``."""
        ...

    async def fetch_accounts(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Account]:
        """Return the accounts directly related to ``account_id`` along an axis."""
        ...

    async def fetch_account_ids(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Return the server's flat listing of ids related to ``account_id``."""
        ...

    async def fetch_account(self, account_id: str) -> Account:
        """Return the details of a single account."""
        ...

    async def fetch_users(
        self, account_id: str, params: Mapping[str, Any] | None = None
    ) -> list[User]:
        """Return the users owned directly by ``account_id``."""
        ...


class HttpAimsClient:
    """An ``AimsClient`` speaking to the AIMS REST API over httpx.

    Relationship and account lookups are cached for ``cache_ttl`` seconds, keyed on
    path and query parameters. Connection failures and retryable status codes are
    attempted up to ``retry_count`` more times.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        retry_count: int = 5,
        retry_delay: float = 0.5,
        cache_ttl: int = 120,
        cache_maxsize: int = 512,
    ):
        """Create a client for the AIMS API at ``base_url``.

        An ``http_client`` supplied by the caller is used as-is and left open on
        ``aclose``; otherwise one is created with ``timeout`` and owned here.
        """
        if retry_count < 0:
            raise ValueError("retry_count must not be negative")

        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._retry_count = retry_count
        self._retry_delay = retry_delay

        if http_client is None:
            self._http = httpx.AsyncClient(timeout=timeout)
            self._owns_http = True
        else:
            self._http = http_client
            self._owns_http = False

        self._response_cache: TTLCache[tuple, Any] = TTLCache(maxsize=cache_maxsize, ttl=cache_ttl)
        self._logger = logger.bind(component="aims_http_client")

    async def __aenter__(self) -> "HttpAimsClient":
        """Return the client itself for use in ``async with``."""
        return self

    async def __aexit__(self, *exc_info) -> None:
        """Close the client on leaving the ``async with`` block."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # --------------------------------------------------------------------------------
    # Relationship endpoints

    async def fetch_topology(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> TopologyNode:
        """Fetch and parse the topology rooted at ``account_id``; never cached."""
        axis = Relationship.coerce(relationship)
        body = await self._get(account_id, f"/accounts/{axis.value}/topology", params)
        return TopologyNode.from_response(_require_field(body, "topology"), axis)

    async def fetch_accounts(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Account]:
        """List the accounts directly related to ``account_id``, cached per params."""
        axis = Relationship.coerce(relationship)
        body = await self._get(account_id, f"/accounts/{axis.value}", params, cache=True)
        return [Account.from_response(item) for item in _require_list(body, "accounts")]

    async def fetch_account_ids(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Return the server's own flat listing of related account ids."""
        axis = Relationship.coerce(relationship)
        body = await self._get(account_id, f"/account_ids/{axis.value}", params, cache=True)
        ids = _require_list(body, "account_ids")
        if not all(isinstance(ident, str) for ident in ids):
            raise ResponseValidationError("Unexpected response format: non-string account id")
        return list(ids)

    # --------------------------------------------------------------------------------
    # Account and user endpoints

    async def fetch_account(self, account_id: str) -> Account:
        """Return the details of a single account, cached."""
        body = await self._get(account_id, "/account", cache=True)
        return Account.from_response(body)

    async def fetch_users(
        self, account_id: str, params: Mapping[str, Any] | None = None
    ) -> list[User]:
        """List the users owned directly by ``account_id``; never cached."""
        body = await self._get(account_id, "/users", params)
        return [User.from_response(item) for item in _require_list(body, "users")]

    # --------------------------------------------------------------------------------
    #

    def _url(self, account_id: str, path: str) -> str:
        """Build the versioned AIMS URL for an account-scoped path."""
        return f"{self._base_url}/{SERVICE_NAME}/{API_VERSION}/{account_id}{path}"

    async def _get(
        self,
        account_id: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        cache: bool = False,
    ) -> Any:
        """Issue a GET, consulting and filling the TTL cache when ``cache`` is set."""
        url = self._url(account_id, path)
        query = _encode_params(params)
        cache_key = (url, tuple(sorted(query.items())))

        if cache and cache_key in self._response_cache:
            self._logger.debug("aims_cache_hit", url=url)
            return self._response_cache[cache_key]

        body = await self._request("GET", url, query)

        if cache:
            self._response_cache[cache_key] = body
        return body

    async def _request(self, method: str, url: str, query: dict[str, str]) -> Any:
        """Send a request, retrying transient failures, and return the decoded JSON body."""
        headers = {}
        if self._auth_token:
            headers[AUTH_TOKEN_HEADER] = self._auth_token

        attempt = 0
        while True:
            try:
                response = await self._http.request(method, url, params=query, headers=headers)
            except httpx.HTTPError as e:
                if attempt < self._retry_count:
                    attempt += 1
                    self._logger.debug("aims_request_retry", url=url, attempt=attempt, error=str(e))
                    await asyncio.sleep(self._retry_delay * attempt)
                    continue
                raise TransportError(f"{method} {url} failed: {e}") from e

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self._retry_count:
                attempt += 1
                self._logger.debug(
                    "aims_request_retry", url=url, attempt=attempt, status_code=response.status_code
                )
                await asyncio.sleep(self._retry_delay * attempt)
                continue

            if response.is_error:
                raise TransportError(
                    f"{method} {url} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError as e:
                raise ResponseValidationError(f"{method} {url} returned a non-JSON body") from e


def _encode_params(params: Mapping[str, Any] | None) -> dict[str, str]:
    """Render query parameters the way the service expects booleans."""
    if not params:
        return {}

    query = {}
    for key, value in params.items():
        if value is None:
            continue
        query[key] = str(value).lower() if isinstance(value, bool) else str(value)
    return query


def _require_field(body: Any, name: str) -> Any:
    """Return ``body[name]``, raising ``ResponseValidationError`` when it is absent."""
    if not isinstance(body, Mapping) or name not in body:
        raise ResponseValidationError(f"Unexpected response format: no '{name}' property present.")
    return body[name]


def _require_list(body: Any, name: str) -> list:
    """Return ``body[name]`` when it is present and a list."""
    value = _require_field(body, name)
    if not isinstance(value, list):
        raise ResponseValidationError(f"Unexpected response format: '{name}' is not a list.")
    return value
