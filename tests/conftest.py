"""Shared fixtures: an in-memory stack driven by a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from flowkeeper.actions import ActionCollaborators, build_default_registry
from flowkeeper.persistence import InMemoryWorkflowRepository
from flowkeeper.service import WorkflowService

TENANT = "tenant-1"
START = datetime(2026, 1, 5, 8, 30, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def collaborators():
    return ActionCollaborators()


@pytest.fixture
def registry(collaborators):
    return build_default_registry(collaborators)


@pytest.fixture
def service(repo, registry, clock):
    return WorkflowService(repo, registry, clock=clock)


@pytest.fixture
def engine(service):
    return service.engine


@pytest.fixture
def dispatcher(service):
    return service.dispatcher


@pytest.fixture
def make_workflow(service):
    """Create a workflow with ``steps`` and optionally activate it."""

    async def make(
        steps,
        trigger_type="manual",
        trigger_config=None,
        active=True,
        name=None,
        tenant_id=TENANT,
        **fields,
    ):
        workflow = await service.create_workflow(
            tenant_id,
            name or f"Workflow {len(await service.list_workflows()) + 1}",
            trigger_type,
            trigger_config,
            **fields,
        )
        await service.replace_steps(workflow.id, steps)
        if active:
            workflow = await service.activate_workflow(workflow.id)
        return workflow

    return make


@pytest.fixture
def run_manual(service, engine):
    """Trigger ``workflow_id`` manually and run the execution once."""

    async def run(workflow_id, payload=None):
        execution = await service.trigger(workflow_id, payload or {})
        return await engine.run(execution.id)

    return run
