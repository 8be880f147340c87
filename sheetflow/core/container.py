"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from sheetflow.core.config import Settings
from sheetflow.core.database import Database
from sheetflow.services.ai_client import AIAssistantClient
from sheetflow.services.execution.queue import StepWorker, create_dispatcher
from sheetflow.services.execution.scheduler import StepScheduler
from sheetflow.services.graph import WorkflowGraphAccessor
from sheetflow.services.node_executor import NodeExecutor
from sheetflow.services.schema import (
    PropagationCoordinator,
    SchemaCache,
    SchemaPropagator,
    SchemaResolver,
    SchemaSubscription,
)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persisted store
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Schema services (cache and coordinator are process-wide state)
    schema_cache = providers.Singleton(
        SchemaCache,
        settings=settings
    )

    coordinator = providers.Singleton(
        PropagationCoordinator,
        settings=settings
    )

    graph = providers.Singleton(
        WorkflowGraphAccessor,
        database=database
    )

    resolver = providers.Singleton(
        SchemaResolver,
        cache=schema_cache,
        database=database
    )

    propagator = providers.Singleton(
        SchemaPropagator,
        cache=schema_cache,
        coordinator=coordinator,
        resolver=resolver,
        graph=graph,
        database=database
    )

    subscription = providers.Singleton(
        SchemaSubscription,
        cache=schema_cache,
        settings=settings
    )

    # Execution
    ai_client = providers.Singleton(
        AIAssistantClient,
        settings=settings
    )

    node_executor = providers.Singleton(
        NodeExecutor,
        settings=settings,
        ai_client=ai_client
    )

    dispatcher = providers.Singleton(
        create_dispatcher,
        settings=settings
    )

    scheduler = providers.Singleton(
        StepScheduler,
        database=database,
        graph=graph,
        executor=node_executor,
        cache=schema_cache,
        resolver=resolver,
        propagator=propagator,
        dispatcher=dispatcher,
        settings=settings
    )

    step_worker = providers.Singleton(
        StepWorker,
        queue=dispatcher,
        scheduler=scheduler,
        concurrency=settings.provided.step_worker_concurrency
    )


# Global container instance
container = Container()
