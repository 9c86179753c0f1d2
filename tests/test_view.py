import asyncio

import pytest

from aims_topology import (
    Account,
    AimsTopologyView,
    HierarchyDepthError,
    Relationship,
    TransportError,
)
from tests.fakes.aims import FakeAimsClient, node, users_of

pytestmark = pytest.mark.anyio


# --------------------------------------------------------------------------------------
# construction

def test_view_rejects_objects_that_are_not_clients():
    with pytest.raises(TypeError):
        AimsTopologyView(client=object())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_concurrency": 0},
        {"max_ascent_depth": -1},
        {"max_flatten_depth": -1},
    ],
)
def test_view_rejects_invalid_limits(aims_client, kwargs):
    with pytest.raises(ValueError):
        AimsTopologyView(client=aims_client, **kwargs)


# --------------------------------------------------------------------------------------
# get_account_ids_by_relationship tests

@pytest.fixture
def managed_topology(aims_client: FakeAimsClient) -> FakeAimsClient:
    aims_client.topologies[("100", "managed")] = node(
        "100", managed=[node("200"), node("300")]
    )
    return aims_client


async def test_account_ids_include_self_by_default(view, managed_topology):
    assert await view.get_account_ids_by_relationship("100", Relationship.MANAGED) == [
        "100",
        "200",
        "300",
    ]


async def test_account_ids_without_self(view, managed_topology):
    assert await view.get_account_ids_by_relationship("100", "managed", include_self=False) == [
        "200",
        "300",
    ]


async def test_account_ids_fetches_topology_once(view, managed_topology):
    await view.get_account_ids_by_relationship("100", "managed")
    assert managed_topology.fetch_topology_calls == [
        {"account_id": "100", "relationship": "managed"}
    ]


async def test_account_ids_flattens_nested_topology(view, aims_client):
    aims_client.topologies[("1", "managed")] = node(
        "1",
        managed=[
            node("2", managed=[node("4"), node("5", managed=[node("6")])]),
            node("3", managed=[node("4")]),
        ],
    )
    assert await view.get_account_ids_by_relationship("1", "managed") == [
        "1", "2", "4", "5", "6", "3", "4",
    ]


async def test_account_ids_cut_reference_back_to_root(view, aims_client):
    aims_client.topologies[("A", "managing")] = node("A", managing=[node("A")])

    assert await view.get_account_ids_by_relationship("A", "managing") == ["A"]
    assert await view.get_account_ids_by_relationship("A", "managing", include_self=False) == []


async def test_account_ids_propagate_transport_errors(view, aims_client):
    with pytest.raises(TransportError):
        await view.get_account_ids_by_relationship("missing", "managed")


async def test_deprecated_managed_account_ids_alias(view, managed_topology):
    with pytest.warns(DeprecationWarning):
        ids = await view.get_managed_account_ids("100")
    assert ids == ["100", "200", "300"]


# --------------------------------------------------------------------------------------
# get_users_from_managed_relationship tests

@pytest.fixture
def hierarchy(aims_client: FakeAimsClient) -> FakeAimsClient:
    """
    5 is managed by 7, 3 and 9; 9 is managed by 20; 20 has no managing accounts.
    """
    aims_client.managing_by_account = {"5": ["7", "3", "9"], "9": ["20"]}
    for account_id in ("5", "7", "3", "9", "20"):
        aims_client.users_by_account[account_id] = users_of(account_id, count=2)
    return aims_client


async def test_walker_ascends_to_greatest_numeric_id(view, hierarchy):
    users = await view.get_users_from_managed_relationship("5")

    assert [u.account_id for u in users] == ["5", "5", "9", "9", "20", "20"]
    assert [c["account_id"] for c in hierarchy.fetch_users_calls] == ["5", "9", "20"]


async def test_walker_compares_ids_numerically_not_lexically(view, aims_client):
    aims_client.managing_by_account = {"1": ["9", "10"]}
    aims_client.users_by_account = {"1": users_of("1"), "10": users_of("10")}

    users = await view.get_users_from_managed_relationship("1")
    assert [u.account_id for u in users] == ["1", "10"]


async def test_walker_prefers_first_candidate_on_equal_ids(view, aims_client):
    aims_client.managing_by_account = {"1": ["007", "7"]}

    await view.get_users_from_managed_relationship("1")
    assert [c["account_id"] for c in aims_client.fetch_users_calls] == ["1", "007"]


async def test_walker_requests_direct_members_only(view, hierarchy):
    await view.get_users_from_managed_relationship("5")
    assert all(
        c["params"] == {"include_role_ids": False, "include_user_credential": False}
        for c in hierarchy.fetch_users_calls
    )


async def test_walker_returns_leaf_users_when_nothing_manages_it(view, aims_client):
    aims_client.users_by_account["42"] = users_of("42", count=3)

    users = await view.get_users_from_managed_relationship("42")
    assert [u.id for u in users] == ["42-u0", "42-u1", "42-u2"]
    assert aims_client.fetch_accounts_calls == [{"account_id": "42", "relationship": "managing"}]


async def test_walker_continues_past_terminal_account(view, hierarchy):
    users = await view.get_users_from_managed_relationship("5", terminal_account_id="9")

    # The terminal id is only carried along; the walk ends where managing runs out.
    assert [u.account_id for u in users] == ["5", "5", "9", "9", "20", "20"]
    assert [c["account_id"] for c in hierarchy.fetch_accounts_calls] == ["5", "9", "20"]


@pytest.mark.parametrize(
    "candidates, expected",
    [
        (["1_000", "7"], "7"),
        (["12abc", "9"], "12abc"),
        ([" 8 ", "7"], " 8 "),
        (["abc", "2"], "2"),
        (["abc", "xyz"], "abc"),
    ],
)
async def test_walker_reads_leading_digits_of_candidate_ids(view, aims_client, candidates, expected):
    aims_client.managing_by_account = {"1": candidates}

    await view.get_users_from_managed_relationship("1")
    assert [c["account_id"] for c in aims_client.fetch_users_calls] == ["1", expected]


async def test_walker_strict_mode_raises_on_managing_failure(view, hierarchy):
    hierarchy.failing_managing.add("9")

    with pytest.raises(TransportError):
        await view.get_users_from_managed_relationship("5")


async def test_walker_tolerant_mode_returns_users_collected_so_far(view, hierarchy):
    hierarchy.failing_managing.add("9")

    users = await view.get_users_from_managed_relationship("5", fail_on_error=False)
    assert [u.account_id for u in users] == ["5", "5", "9", "9"]


async def test_walker_tolerant_mode_on_parent_user_failure(view, hierarchy):
    hierarchy.failing_users.add("20")

    users = await view.get_users_from_managed_relationship("5", fail_on_error=False)
    assert [u.account_id for u in users] == ["5", "5", "9", "9"]


async def test_walker_always_raises_when_leaf_users_fail(view, hierarchy):
    hierarchy.failing_users.add("5")

    with pytest.raises(TransportError):
        await view.get_users_from_managed_relationship("5", fail_on_error=False)


async def test_walker_raises_on_managing_cycle(view, aims_client):
    aims_client.managing_by_account = {"1": ["2"], "2": ["3"], "3": ["1"]}

    with pytest.raises(HierarchyDepthError):
        await view.get_users_from_managed_relationship("1", fail_on_error=False)


async def test_walker_raises_when_depth_budget_exhausted(aims_client):
    aims_client.managing_by_account = {str(i): [str(i + 1)] for i in range(10)}
    view = AimsTopologyView(client=aims_client, max_ascent_depth=3)

    with pytest.raises(HierarchyDepthError):
        await view.get_users_from_managed_relationship("0")

    # Leaf plus three ascents, never the fourth.
    assert [c["account_id"] for c in aims_client.fetch_users_calls] == ["0", "1", "2", "3"]


async def test_walker_honours_timeout(view, hierarchy):
    hierarchy.delays["9"] = 1.0

    with pytest.raises(TimeoutError):
        await view.get_users_from_managed_relationship("5", timeout=0.05)

    # The walk was abandoned before reaching the top of the hierarchy.
    assert "20" not in [c["account_id"] for c in hierarchy.fetch_users_calls]


async def test_walker_cancellation_stops_further_requests(view, hierarchy):
    hierarchy.delays["9"] = 1.0

    task = asyncio.ensure_future(view.get_users_from_managed_relationship("5"))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert [c["account_id"] for c in hierarchy.fetch_users_calls] == ["5", "9"]


# --------------------------------------------------------------------------------------
# pass-through lookups

async def test_relationship_topology_is_returned_as_fetched(view, managed_topology):
    topology = await view.get_account_relationship_topology("100", "managed")
    assert [c.id for c in topology.children("managed")] == ["200", "300"]


async def test_accounts_by_relationship(view, hierarchy):
    accounts = await view.get_accounts_by_relationship("5", Relationship.MANAGING)
    assert [a.id for a in accounts] == ["7", "3", "9"]


async def test_get_users_passes_params_through(view, hierarchy):
    users = await view.get_users("9", {"include_role_ids": True})

    assert [u.id for u in users] == ["9-u0", "9-u1"]
    assert hierarchy.fetch_users_calls == [{"account_id": "9", "params": {"include_role_ids": True}}]


async def test_account_ids_listing_comes_from_the_service(view, aims_client):
    aims_client.account_ids_by_relationship[("100", "bills_to")] = ["300", "200"]

    assert await view.get_account_ids_listing("100", "bills_to") == ["300", "200"]
    assert aims_client.fetch_account_ids_calls == [{"account_id": "100", "relationship": "bills_to"}]


async def test_account_details(view, aims_client):
    aims_client.accounts_by_id["100"] = Account(id="100", name="Acme")

    account = await view.get_account_details("100")
    assert (account.id, account.name) == ("100", "Acme")


async def test_account_details_propagate_transport_errors(view):
    with pytest.raises(TransportError):
        await view.get_account_details("missing")
