"""Wire repository, actions, dispatcher, engine and service from configuration."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .actions import ActionCollaborators, ActionRegistry, build_default_registry
from .config import FlowkeeperConfig, load_config
from .dispatch import TriggerDispatcher
from .execute import ExecutionEngine
from .persistence import WorkflowRepository, get_repository
from .service import WorkflowService
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: FlowkeeperConfig
    repository: WorkflowRepository
    collaborators: ActionCollaborators
    actions: ActionRegistry
    dispatcher: TriggerDispatcher
    engine: ExecutionEngine
    service: WorkflowService
    transport: Optional[BaseTransport] = None

    async def run_schedules(self, lifespan: Optional[float] = None) -> None:
        """Fire due schedules every ``poll_interval`` seconds."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        while lifespan is None or loop.time() - started < lifespan:
            result = await self.dispatcher.process_schedules()
            if result.execution_ids:
                logger.info(f"Scheduler created {len(result.execution_ids)} executions")
            await asyncio.sleep(self.config.engine.poll_interval)

    async def serve(self, lifespan: Optional[float] = None) -> None:
        """Run the worker: event consumer, scheduler and resumption sweep."""
        tasks = [self.engine.start(lifespan), self.run_schedules(lifespan)]
        if self.transport is None:
            await asyncio.gather(*tasks)
            return
        async with self.transport as transport:
            tasks.append(
                self.dispatcher.consume(
                    transport, self.config.transport.topic, lifespan=lifespan
                )
            )
            await asyncio.gather(*tasks)

    async def aclose(self) -> None:
        await self.collaborators.aclose()
        await self.repository.close()


def build_runtime(
    config: Optional[FlowkeeperConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    collaborators: Optional[ActionCollaborators] = None,
    with_transport: bool = False,
) -> Runtime:
    """Construct every component once and inject them into each other."""
    config = config or load_config()
    repository = repository or get_repository(config.database_url, config)
    collaborators = collaborators or ActionCollaborators(http_timeout=config.http.timeout)
    actions = build_default_registry(collaborators)
    dispatcher = TriggerDispatcher(repository, topic=config.transport.topic)
    engine = ExecutionEngine(repository, actions, config.engine)
    service = WorkflowService(repository, actions, dispatcher=dispatcher, engine=engine)
    transport = get_transport(config=config) if with_transport else None
    return Runtime(
        config=config,
        repository=repository,
        collaborators=collaborators,
        actions=actions,
        dispatcher=dispatcher,
        engine=engine,
        service=service,
        transport=transport,
    )
