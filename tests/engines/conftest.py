from datetime import datetime, timezone

import pytest

from core.time.clock import FixedClock
from engines.costing.configuration import CostingConfiguration, CostingMethod, CostingSettings
from engines.costing.persistence import InMemoryCostingRepository
from engines.costing.services import CostingService


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 6, 30, 18, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return CostingConfiguration(organization_default=CostingMethod.FIFO)


@pytest.fixture
def repository():
    return InMemoryCostingRepository()


@pytest.fixture
def make_service(config, repository, clock):
    def _make(**settings) -> CostingService:
        return CostingService(
            resolver=config,
            settings=CostingSettings(**settings),
            repository=repository,
            clock=clock,
        )
    return _make


@pytest.fixture
def service(make_service):
    return make_service()
