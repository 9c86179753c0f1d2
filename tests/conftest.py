import pytest

from aims_topology import AimsTopologyView
from tests.fakes.aims import FakeAimsClient


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def aims_client() -> FakeAimsClient:
    return FakeAimsClient()


@pytest.fixture
def view(aims_client: FakeAimsClient) -> AimsTopologyView:
    return AimsTopologyView(client=aims_client, max_concurrency=4, max_ascent_depth=8)
