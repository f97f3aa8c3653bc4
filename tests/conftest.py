from collections.abc import AsyncGenerator

import anyio
import pytest
from anyio.abc import TaskGroup

from tests.test_helpers import ManualScheduler


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def tg() -> AsyncGenerator[TaskGroup, None]:
    """Task group the transports under test run their handlers in."""
    async with anyio.create_task_group() as tg:
        try:
            yield tg
        finally:
            tg.cancel_scope.cancel()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
