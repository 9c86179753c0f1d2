import asyncio
import re
import warnings
from typing import Any, Mapping, Sequence

import structlog

from .client import AimsClient
from .errors import AggregationError, HierarchyDepthError
from .models import Account, Relationship, TopologyNode, User
from .topology import DEFAULT_MAX_FLATTEN_DEPTH, flatten_topology

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_MAX_ASCENT_DEPTH = 32

# Direct members only; role ids and credentials are never needed for aggregation.
USER_LISTING_PARAMS = {"include_role_ids": False, "include_user_credential": False}

# Optional leading whitespace and sign, then ASCII digits; anything after is ignored.
LEADING_INTEGER = re.compile(r"\s*([+-]?[0-9]+)")


class AimsTopologyView:
    """High-level view over AIMS account relationships.

    Resolves related account ids from the service's topology endpoint and gathers
    the users belonging to related accounts. All network access goes through the
    injected ``AimsClient``.
    """

    def __init__(
        self,
        client: AimsClient,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_ascent_depth: int = DEFAULT_MAX_ASCENT_DEPTH,
        max_flatten_depth: int = DEFAULT_MAX_FLATTEN_DEPTH,
    ):
        if not isinstance(client, AimsClient):
            raise TypeError("client must implement the AimsClient protocol")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if max_ascent_depth < 0 or max_flatten_depth < 0:
            raise ValueError("depth limits must not be negative")

        self._client = client
        self._max_concurrency = max_concurrency
        self._max_ascent_depth = max_ascent_depth
        self._max_flatten_depth = max_flatten_depth
        self._logger = logger.bind(component="aims_topology_view")

    # --------------------------------------------------------------------------------
    # Related account ids

    async def get_account_relationship_topology(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> TopologyNode:
        """Return the topology rooted at ``account_id`` along ``relationship``."""
        async with asyncio.timeout(timeout):
            return await self._client.fetch_topology(account_id, relationship, params)

    async def get_account_ids_by_relationship(
        self,
        account_id: str,
        relationship: Relationship | str,
        include_self: bool = True,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[str]:
        """Return the ids of every account related to ``account_id``, in pre-order.

        With a ``managed`` relationship these are the accounts ``account_id``
        manages, directly or transitively; with ``managing`` the accounts that
        manage it. The originating id leads the list when ``include_self`` is set.
        """
        axis = Relationship.coerce(relationship)

        async with asyncio.timeout(timeout):
            topology = await self._client.fetch_topology(account_id, axis, params)

        related = flatten_topology(
            topology.children(axis),
            axis,
            max_depth=self._max_flatten_depth,
            ancestors={account_id, topology.id},
        )
        self._logger.debug(
            "resolved_related_accounts",
            account_id=account_id,
            relationship=axis.value,
            count=len(related),
        )

        if include_self:
            return [account_id, *related]
        return related

    async def get_managed_account_ids(
        self, account_id: str, timeout: float | None = None
    ) -> list[str]:
        """Deprecated alias for ``get_account_ids_by_relationship(account_id, "managed")``."""
        warnings.warn(
            "get_managed_account_ids is deprecated; use get_account_ids_by_relationship",
            DeprecationWarning,
            stacklevel=2,
        )
        return await self.get_account_ids_by_relationship(
            account_id, Relationship.MANAGED, timeout=timeout
        )

    async def get_accounts_by_relationship(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[Account]:
        """Return the accounts directly related to ``account_id``."""
        async with asyncio.timeout(timeout):
            return await self._client.fetch_accounts(account_id, relationship, params)

    async def get_account_ids_listing(
        self,
        account_id: str,
        relationship: Relationship | str,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[str]:
        """Return the service's own flat listing of related account ids.

        Unlike ``get_account_ids_by_relationship`` this never includes
        ``account_id`` itself and its order is whatever the service returns.
        """
        async with asyncio.timeout(timeout):
            return await self._client.fetch_account_ids(account_id, relationship, params)

    async def get_account_details(self, account_id: str, timeout: float | None = None) -> Account:
        """Return the details of ``account_id``."""
        async with asyncio.timeout(timeout):
            return await self._client.fetch_account(account_id)

    # --------------------------------------------------------------------------------
    # Users

    async def get_users(
        self,
        account_id: str,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[User]:
        async with asyncio.timeout(timeout):
            return await self._client.fetch_users(account_id, params)

    async def get_users_from_managed_relationship(
        self,
        leaf_account_id: str,
        terminal_account_id: str | None = None,
        fail_on_error: bool = True,
        timeout: float | None = None,
    ) -> list[User]:
        """Collect users from an account and every account above it, leaf first.

        This walks the older single-parent model of the ``managing`` relationship:
        at each level the managing account with the greatest numeric id is taken
        as the parent. The walk stops when an account has no managing accounts.
        ``terminal_account_id`` is carried along for callers that orchestrate their
        own cutoff; reaching it does not end the walk.

        With ``fail_on_error`` unset, a failure above the leaf's own user listing
        ends the walk early and the users gathered so far are returned. Cycles and
        walks deeper than ``max_ascent_depth`` always raise ``HierarchyDepthError``.

        Prefer ``get_account_ids_by_relationship`` with ``get_users_from_accounts``.
        """
        async with asyncio.timeout(timeout):
            return await self._ascend(leaf_account_id, terminal_account_id, fail_on_error)

    async def _ascend(
        self, leaf_account_id: str, terminal_account_id: str | None, fail_on_error: bool
    ) -> list[User]:
        users = list(await self._client.fetch_users(leaf_account_id, USER_LISTING_PARAMS))

        current_id = leaf_account_id
        visited = {leaf_account_id}
        depth = 0

        while True:
            try:
                managing = await self._client.fetch_accounts(current_id, Relationship.MANAGING)
            except Exception as e:
                if fail_on_error:
                    raise
                self._logger.warning(
                    "managing_lookup_failed", account_id=current_id, error=str(e), collected=len(users)
                )
                break

            if not managing:
                break

            parent_id = _select_managing_account(managing).id
            depth += 1

            if parent_id in visited:
                raise HierarchyDepthError(
                    f"Managing relationship of {current_id} loops back to {parent_id}"
                )
            if depth > self._max_ascent_depth:
                raise HierarchyDepthError(
                    f"Exceeded maximum ascent depth of {self._max_ascent_depth} above {leaf_account_id}"
                )

            self._logger.debug(
                "ascending",
                account_id=current_id,
                parent_id=parent_id,
                depth=depth,
                terminal_account_id=terminal_account_id,
            )

            try:
                parent_users = await self._client.fetch_users(parent_id, USER_LISTING_PARAMS)
            except Exception as e:
                if fail_on_error:
                    raise
                self._logger.warning(
                    "parent_users_failed", account_id=parent_id, error=str(e), collected=len(users)
                )
                break

            users.extend(parent_users)
            visited.add(parent_id)
            current_id = parent_id

        return users

    async def get_users_from_accounts(
        self,
        account_ids: Sequence[str],
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[User]:
        """Return the users of every listed account, grouped in the order given.

        Fetches run concurrently, at most ``max_concurrency`` at a time. If any
        fetch fails the remaining ones are cancelled and ``AggregationError`` is
        raised for the failing account; no partial result is returned.
        """
        if params is None:
            params = USER_LISTING_PARAMS

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def fetch(account_id: str) -> list[User]:
            async with semaphore:
                try:
                    return await self._client.fetch_users(account_id, params)
                except Exception as e:
                    raise AggregationError(account_id) from e

        async with asyncio.timeout(timeout):
            tasks = [asyncio.ensure_future(fetch(account_id)) for account_id in account_ids]
            try:
                per_account = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        self._logger.debug("aggregated_users", accounts=len(account_ids))
        return [user for users in per_account for user in users]


def _select_managing_account(candidates: Sequence[Account]) -> Account:
    """Pick the candidate with the greatest numeric id; the first one wins ties."""
    # TODO: replace once the service exposes which managing account is authoritative.
    return max(candidates, key=_numeric_id_key)


def _numeric_id_key(account: Account) -> tuple[int, int]:
    """Read the leading integer of an id; ids without one rank below all others."""
    match = LEADING_INTEGER.match(account.id)
    if match is None:
        return (0, 0)
    return (1, int(match.group(1)))
