"""Tests for the service manager."""

import asyncio

import pytest

from kai.errors import (
    HealthCheckTimeoutError,
    ImagePullDeniedError,
    ImagePullFailedError,
    ServiceNotFoundError,
    ServiceStartError,
)
from kai.services.events import EventBus
from kai.services.orchestrator import ServiceManager, map_container_state
from kai.services.permission import PermissionBroker
from kai.services.types import ServiceEvent, StatusesChanged


class TestMapContainerState:
    def test_mapping(self):
        assert map_container_state("running") == "running"
        assert map_container_state("restarting") == "starting"
        assert map_container_state("removing") == "stopping"
        assert map_container_state("exited") == "stopped"
        assert map_container_state("dead") == "stopped"
        assert map_container_state("paused") == "unknown"


class TestStatus:
    @pytest.mark.asyncio
    async def test_no_container_reports_stopped(self, manager):
        status = await manager.get_status("backend")
        assert status.status == "stopped"
        assert status.essential is True
        assert status.container_id is None

    @pytest.mark.asyncio
    async def test_running_container(self, manager, fake_runtime):
        info = fake_runtime.add_container("kai-qdrant", "running", "healthy")
        status = await manager.get_status("qdrant")
        assert status.status == "running"
        assert status.health == "healthy"
        assert status.container_id == info.id

    @pytest.mark.asyncio
    async def test_similar_names_are_ignored(self, manager, fake_runtime):
        fake_runtime.add_container("kai-backend-old", "running")
        status = await manager.get_status("backend")
        assert status.status == "stopped"

    @pytest.mark.asyncio
    async def test_listing_error_reports_error(self, manager, fake_runtime):
        fake_runtime.fail_list = True
        status = await manager.get_status("neo4j")
        assert status.status == "error"
        assert "engine unreachable" in status.error

    @pytest.mark.asyncio
    async def test_unknown_service(self, manager):
        with pytest.raises(ServiceNotFoundError):
            await manager.get_status("nope")

    @pytest.mark.asyncio
    async def test_list_statuses_covers_all_services(self, manager):
        names = [s.name for s in await manager.list_statuses()]
        assert names == ["backend", "codeServer", "qdrant", "neo4j"]


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_network_and_volumes(self, manager, fake_runtime):
        await manager.initialize()
        assert "kai-net" in fake_runtime.networks
        assert set(fake_runtime.volumes) == {"kai-data", "qdrant-data", "neo4j-data", "neo4j-logs"}

    @pytest.mark.asyncio
    async def test_is_idempotent(self, manager, fake_runtime):
        await manager.initialize()
        await manager.initialize()
        creates = [c for c in fake_runtime.calls if c[0] in ("create_network", "create_volume")]
        assert len(creates) == 5


class TestStart:
    @pytest.mark.asyncio
    async def test_dependencies_start_first(self, manager, fake_runtime):
        await manager.start("backend")
        started = fake_runtime.started()
        assert started.index("kai-qdrant") < started.index("kai-backend")
        assert started.index("kai-neo4j") < started.index("kai-backend")
        assert (await manager.get_status("backend")).status == "running"

    @pytest.mark.asyncio
    async def test_running_dependency_not_restarted(self, manager, fake_runtime):
        fake_runtime.add_container("kai-qdrant", "running", "healthy")
        await manager.start("backend")
        assert "kai-qdrant" not in fake_runtime.started()

    @pytest.mark.asyncio
    async def test_start_twice_creates_one_container(self, manager, fake_runtime):
        await manager.start("qdrant")
        await manager.start("qdrant")
        assert fake_runtime.started().count("kai-qdrant") == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_container(self, manager, fake_runtime):
        await asyncio.gather(manager.start("qdrant"), manager.start("qdrant"))
        assert fake_runtime.started().count("kai-qdrant") == 1

    @pytest.mark.asyncio
    async def test_stale_container_removed_first(self, manager, fake_runtime):
        fake_runtime.add_container("kai-qdrant", "exited")
        await manager.start("qdrant")
        ops = [c[0] for c in fake_runtime.calls if c[0] in ("remove_container", "start_container")]
        assert ops == ["remove_container", "start_container"]
        assert ("remove_container", "kai-qdrant", True) in fake_runtime.calls

    @pytest.mark.asyncio
    async def test_dependency_failure_blocks_dependent(self, manager, fake_runtime):
        fake_runtime.fail_start.add("kai-neo4j")
        with pytest.raises(Exception):
            await manager.start("backend")
        assert "kai-backend" not in fake_runtime.started()

    @pytest.mark.asyncio
    async def test_publishes_statuses(self, manager, bus):
        sub = bus.subscribe()
        await manager.start("qdrant")
        events = sub.drain()
        assert isinstance(events[-1], StatusesChanged)


class TestImagePull:
    @pytest.mark.asyncio
    async def test_pull_after_permission(self, manager, fake_runtime, gate, bus):
        fake_runtime.all_images_present = False
        sub = bus.subscribe()
        await manager.start("qdrant")

        assert gate.requests == [("qdrant", "qdrant/qdrant:latest")]
        assert ("pull_image", "qdrant/qdrant:latest") in fake_runtime.calls
        types = [e.event_type for e in sub.drain() if isinstance(e, ServiceEvent)]
        assert types == ["image-pulling", "image-pulling-progress", "image-pulled"]

    @pytest.mark.asyncio
    async def test_denied_pull_creates_no_container(self, manager, fake_runtime, gate, bus):
        fake_runtime.all_images_present = False
        gate.allowed = False
        sub = bus.subscribe()

        with pytest.raises(ImagePullDeniedError):
            await manager.start("qdrant")

        assert fake_runtime.started() == []
        assert not any(c[0] == "pull_image" for c in fake_runtime.calls)
        types = [e.event_type for e in sub.drain() if isinstance(e, ServiceEvent)]
        assert types[-1] == "image-pull-error"

    @pytest.mark.asyncio
    async def test_permission_timeout_denies(self, fake_runtime, config_store):
        fake_runtime.all_images_present = False
        bus = EventBus()
        broker = PermissionBroker(bus, timeout_s=0.05)
        manager = ServiceManager(fake_runtime, config_store.get_config, bus, broker)

        with pytest.raises(ImagePullDeniedError):
            await manager.start("codeServer")
        assert fake_runtime.started() == []

    @pytest.mark.asyncio
    async def test_pull_failure(self, manager, fake_runtime):
        fake_runtime.all_images_present = False
        fake_runtime.fail_pull = True
        with pytest.raises(ImagePullFailedError):
            await manager.start("qdrant")
        assert fake_runtime.started() == []


class TestHealthWait:
    @pytest.mark.asyncio
    async def test_health_timeout(self, manager, fake_runtime):
        fake_runtime.health_on_start["kai-qdrant"] = "starting"
        with pytest.raises(HealthCheckTimeoutError):
            await manager.start("qdrant")

    @pytest.mark.asyncio
    async def test_exited_container_fails_start(self, manager, fake_runtime):
        fake_runtime.state_on_start["kai-qdrant"] = "exited"
        fake_runtime.health_on_start["kai-qdrant"] = None
        with pytest.raises(ServiceStartError):
            await manager.start("qdrant")

    @pytest.mark.asyncio
    async def test_health_none_counts_as_ready(self, manager, fake_runtime):
        fake_runtime.health_on_start["kai-qdrant"] = "none"
        await manager.start("qdrant")

    @pytest.mark.asyncio
    async def test_running_without_health_report_is_ready(self, manager, fake_runtime):
        fake_runtime.health_on_start["kai-qdrant"] = None
        await manager.start("qdrant")


class TestStopAndBatch:
    @pytest.mark.asyncio
    async def test_stop_without_container_is_noop(self, manager, fake_runtime):
        await manager.stop("qdrant")
        assert not any(c[0] == "stop_container" for c in fake_runtime.calls)

    @pytest.mark.asyncio
    async def test_stop_running(self, manager, fake_runtime):
        fake_runtime.add_container("kai-qdrant", "running")
        await manager.stop("qdrant")
        assert (await manager.get_status("qdrant")).status == "stopped"

    @pytest.mark.asyncio
    async def test_start_all_in_dependency_order(self, manager, fake_runtime):
        await manager.start_all()
        assert fake_runtime.started() == ["kai-qdrant", "kai-neo4j", "kai-backend", "kai-code-server"]

    @pytest.mark.asyncio
    async def test_start_all_aborts_on_first_failure(self, manager, fake_runtime):
        fake_runtime.fail_start.add("kai-qdrant")
        with pytest.raises(Exception):
            await manager.start_all()
        assert fake_runtime.started() == ["kai-qdrant"]

    @pytest.mark.asyncio
    async def test_stop_all_reverse_order_and_continues(self, manager, fake_runtime):
        await manager.start_all()
        original = fake_runtime.stop_container
        attempted = []

        async def flaky_stop(id, timeout=None):
            info = fake_runtime._by_id(id)
            attempted.append(info.name)
            if info.name == "kai-backend":
                raise RuntimeError("stop failed")
            await original(id, timeout)

        fake_runtime.stop_container = flaky_stop
        await manager.stop_all()

        assert attempted == ["kai-code-server", "kai-backend", "kai-neo4j", "kai-qdrant"]
        assert (await manager.get_status("qdrant")).status == "stopped"

    @pytest.mark.asyncio
    async def test_restart_resets_counter(self, manager, fake_runtime):
        fake_runtime.add_container("kai-qdrant", "running", "healthy")
        manager.restart_attempts.increment("qdrant")
        manager.restart_attempts.increment("qdrant")

        await manager.restart("qdrant")

        assert manager.restart_attempts.get("qdrant") == 0
        assert (await manager.get_status("qdrant")).status == "running"
