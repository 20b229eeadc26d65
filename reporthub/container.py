"""Dependency injection container for Report Hub services.

A small service registry that owns the long-lived resources of the API
process (database pool, blob store client, webhook HTTP client) and the
ingest pipeline built on top of them.

Core Features:
    - Singleton and transient lifetimes
    - Dependency resolution by name or type with circular detection
    - Async disposal of every instance exposing an async ``close()``

Registered Services:
    - settings: ``IngestSettings`` for the process
    - run_store: ``PostgresRunStore`` (asyncpg pool, initialized at startup)
    - blob_store: local or HTTP ``BlobStore``
    - notifier: ``WebhookNotifier``
    - metrics_aggregator: ``PostgresMetricsAggregator``
    - ingest_pipeline: ``IngestPipeline`` wired from the above

Usage:
    Call ``configure_services(settings)`` once in the FastAPI lifespan, read
    services with ``get_container().get(name)`` or the accessors below, and
    ``await container.dispose_async()`` on shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, TypeVar, Union

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class ServiceLifetime:
    """Lifetime constants.

    SINGLETON instances are created on first ``get`` and cached until
    disposal; TRANSIENT services are rebuilt on every ``get``.
    """

    SINGLETON = "singleton"
    TRANSIENT = "transient"


class ServiceDescriptor:
    """Registration record: implementation, lifetime and dependency keys."""

    def __init__(
        self,
        service_type: Union[type[T], str],
        implementation: Union[type[T], Callable[..., T], Callable[..., Any]],
        lifetime: str = ServiceLifetime.SINGLETON,
        dependencies: Optional[list] = None,
    ):
        self.service_type = service_type
        self.implementation = implementation
        self.lifetime = lifetime
        self.dependencies = dependencies or []


def _service_name(service_type: Union[type, str]) -> str:
    return service_type if isinstance(service_type, str) else service_type.__name__


class Container:
    """Lightweight service container.

    Dependencies listed at registration are resolved first and passed to
    the implementation positionally, in the order given.

    Internal State:
        _services: descriptors by key
        _instances: cached singletons and registered instances by key
        _resolving: keys currently being resolved (circular detection)
    """

    def __init__(self):
        self._services: dict[Union[type, str], ServiceDescriptor] = {}
        self._instances: dict[Union[type, str], Any] = {}
        self._resolving: set = set()

    def register_singleton(
        self,
        service_type: Union[type[T], str],
        implementation: Union[type[T], Callable[..., T], Callable[..., Any]],
        dependencies: Optional[list] = None,
    ) -> "Container":
        """Register a service created once and shared.

        Args:
            service_type: Key the service is resolved by
            implementation: Class or factory
            dependencies: Keys resolved and passed to the factory

        Returns:
            Container: Self for chaining
        """
        self._services[service_type] = ServiceDescriptor(
            service_type, implementation, ServiceLifetime.SINGLETON, dependencies
        )
        return self

    def register_transient(
        self,
        service_type: Union[type[T], str],
        implementation: Union[type[T], Callable[..., T], Callable[..., Any]],
        dependencies: Optional[list] = None,
    ) -> "Container":
        self._services[service_type] = ServiceDescriptor(
            service_type, implementation, ServiceLifetime.TRANSIENT, dependencies
        )
        return self

    def register_instance(self, service_type: Union[type[T], str], instance: T) -> "Container":
        """Register an already-built object, e.g. settings or a test double."""
        self._instances[service_type] = instance
        return self

    def get(self, service_type: Union[type[T], str]) -> T:
        """Resolve a service, creating it and its dependencies as needed.

        Raises:
            ValueError: Service not registered or circular dependency
        """
        service_name = _service_name(service_type)

        if service_type in self._resolving:
            raise ValueError(f"Circular dependency detected for {service_name}")

        if service_type in self._instances:
            return self._instances[service_type]

        if service_type not in self._services:
            raise ValueError(f"Service {service_name} is not registered")

        descriptor = self._services[service_type]
        self._resolving.add(service_type)

        try:
            resolved_dependencies = [self.get(dep) for dep in descriptor.dependencies]
            instance = descriptor.implementation(*resolved_dependencies)

            if descriptor.lifetime == ServiceLifetime.SINGLETON:
                self._instances[service_type] = instance

            logger.debug(
                "Service resolved successfully",
                service=service_name,
                lifetime=descriptor.lifetime,
                dependencies=[_service_name(d) for d in descriptor.dependencies],
            )
            return instance
        finally:
            self._resolving.discard(service_type)

    def try_get(self, service_type: Union[type[T], str]) -> Optional[T]:
        try:
            return self.get(service_type)
        except ValueError:
            return None

    def is_registered(self, service_type: Union[type[T], str]) -> bool:
        return service_type in self._services or service_type in self._instances

    async def dispose_async(self):
        """Close every cached instance that has an async ``close()``.

        Failures are logged and do not stop the remaining disposals.
        """
        for key, instance in list(self._instances.items()):
            if hasattr(instance, "close") and asyncio.iscoroutinefunction(instance.close):
                try:
                    await instance.close()
                except Exception as e:
                    logger.error("Error disposing service", service=_service_name(key), error=str(e))

        self._instances.clear()
        logger.info("Container disposed successfully")

    def get_service_info(self) -> dict[str, Any]:
        info = {
            "registered_services": len(self._services),
            "active_instances": len(self._instances),
            "services": {},
        }
        for service_key, descriptor in self._services.items():
            info["services"][_service_name(service_key)] = {
                "lifetime": descriptor.lifetime,
                "dependencies": [_service_name(d) for d in descriptor.dependencies],
                "instantiated": service_key in self._instances,
            }
        return info


_container: Optional[Container] = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = Container()
    return _container


def reset_container() -> None:
    """Drop the global container (used between tests and app restarts)."""
    global _container
    _container = None


def configure_services(settings=None) -> Container:
    """Register every Report Hub service in the global container.

    Args:
        settings: ``IngestSettings`` to use; read from the environment
            when omitted

    Returns:
        Container: The configured global container
    """
    container = get_container()

    # Local imports keep module import order free of cycles
    from .config import IngestSettings
    from .db.metrics import PostgresMetricsAggregator
    from .db.postgres_store import PostgresRunStore
    from .ingest.pipeline import IngestPipeline
    from .notifications.webhooks import WebhookNotifier
    from .storage.blob_store import create_blob_store

    settings = settings or IngestSettings.from_env()
    container.register_instance("settings", settings)

    container.register_singleton(
        "run_store",
        lambda s: PostgresRunStore(s.database_url, s.db_pool_min_size, s.db_pool_max_size),
        ["settings"],
    )
    container.register_singleton("blob_store", create_blob_store, ["settings"])
    container.register_singleton(
        "notifier", lambda s: WebhookNotifier(s.webhook_urls, s.webhook_secret), ["settings"]
    )
    container.register_singleton("metrics_aggregator", PostgresMetricsAggregator, ["run_store"])
    container.register_singleton(
        "ingest_pipeline",
        IngestPipeline,
        ["run_store", "blob_store", "settings", "notifier", "metrics_aggregator"],
    )

    logger.info("Service container configured successfully")
    return container


@asynccontextmanager
async def container_lifespan(settings=None):
    """Configure the container, open the run store and dispose on exit.

    The bundled schema is applied after the pool opens when
    ``settings.apply_schema`` is set.
    """
    container = configure_services(settings)
    try:
        logger.info("Starting service container")
        run_store = container.get("run_store")
        await run_store.initialize()
        if container.get("settings").apply_schema:
            await run_store.execute_schema()
        yield container
    finally:
        logger.info("Disposing service container")
        await container.dispose_async()


def get_settings():
    return get_container().get("settings")


def get_run_store():
    return get_container().get("run_store")


def get_blob_store():
    return get_container().get("blob_store")


def get_ingest_pipeline():
    """Pipeline wired with the process-wide store, blob store and hooks."""
    return get_container().get("ingest_pipeline")
