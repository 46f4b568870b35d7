import pytest

from dnse2e.background import BackgroundTaskRegistry
from dnse2e.steps import StepContext
from tests.fakes import FakeCluster


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def ctx(cluster: FakeCluster) -> StepContext:
    return StepContext(cluster=cluster, background=BackgroundTaskRegistry())
