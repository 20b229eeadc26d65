"""Test the dependency injection container."""

from unittest.mock import AsyncMock

import pytest

from reporthub.container import (
    Container,
    configure_services,
    container_lifespan,
    get_container,
    reset_container,
)
from reporthub.ingest.pipeline import IngestPipeline
from reporthub.storage.blob_store import LocalBlobStore


class TestContainer:
    """Registration, resolution and disposal."""

    def test_singleton_cached(self):
        container = Container().register_singleton("thing", lambda: object())
        assert container.get("thing") is container.get("thing")

    def test_transient_rebuilt(self):
        container = Container().register_transient("thing", lambda: object())
        assert container.get("thing") is not container.get("thing")

    def test_dependencies_passed_in_order(self):
        container = Container()
        container.register_instance("a", 1).register_instance("b", 2)
        container.register_singleton("pair", lambda a, b: (a, b), ["a", "b"])
        assert container.get("pair") == (1, 2)

    def test_unregistered(self):
        container = Container()
        with pytest.raises(ValueError, match="not registered"):
            container.get("missing")
        assert container.try_get("missing") is None

    def test_circular_dependency(self):
        container = Container()
        container.register_singleton("a", lambda b: b, ["b"])
        container.register_singleton("b", lambda a: a, ["a"])
        with pytest.raises(ValueError, match="Circular dependency"):
            container.get("a")

    def test_service_info(self):
        container = Container().register_singleton("thing", lambda: object())
        info = container.get_service_info()
        assert info["registered_services"] == 1
        assert info["services"]["thing"]["instantiated"] is False
        container.get("thing")
        assert container.get_service_info()["services"]["thing"]["instantiated"] is True

    @pytest.mark.asyncio
    async def test_dispose_closes_and_continues_on_error(self):
        good = AsyncMock()
        bad = AsyncMock()
        bad.close.side_effect = RuntimeError("boom")
        container = Container().register_instance("bad", bad).register_instance("good", good)

        await container.dispose_async()

        bad.close.assert_awaited_once()
        good.close.assert_awaited_once()
        assert container.get_service_info()["active_instances"] == 0


class TestConfigureServices:
    """Wiring of the application services."""

    @pytest.fixture(autouse=True)
    def fresh_container(self):
        reset_container()
        yield
        reset_container()

    def test_pipeline_wiring(self, settings):
        container = configure_services(settings)
        pipeline = container.get("ingest_pipeline")

        assert isinstance(pipeline, IngestPipeline)
        assert pipeline.settings is settings
        assert isinstance(pipeline.blob_store, LocalBlobStore)
        assert pipeline.store is container.get("run_store")
        assert pipeline.aggregator.store is pipeline.store
        assert get_container() is container

    @pytest.mark.asyncio
    async def test_lifespan_initializes_and_disposes(self, settings, run_store, blob_store):
        get_container().register_instance("run_store", run_store)
        get_container().register_instance("blob_store", blob_store)

        async with container_lifespan(settings) as container:
            assert run_store.initialized is True
            assert container.get("settings") is settings

        assert run_store.closed is True
        assert blob_store.closed is True
        assert run_store.schema_applied is False

    @pytest.mark.asyncio
    async def test_lifespan_applies_schema(self, settings, run_store, blob_store):
        get_container().register_instance("run_store", run_store)
        get_container().register_instance("blob_store", blob_store)

        async with container_lifespan(settings.model_copy(update={"apply_schema": True})):
            assert run_store.schema_applied is True
