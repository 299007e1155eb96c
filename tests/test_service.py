from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import FAST
from warmpool.exceptions import RunNodesError
from warmpool.observability import LogConfig
from warmpool.providers.memory import InMemoryBackend, Memory
from warmpool.service import PooledComputeService
from warmpool.types import NodeStatus, Template

pytestmark = [pytest.mark.timeout(60)]


@pytest.fixture
def service(backend: InMemoryBackend):
    svc = PooledComputeService(backend, replace(FAST, min_size=2, max_size=4))
    svc.start_pool().result()
    yield svc
    svc.close(timeout=2.0)


class TestComputeServiceContract:
    def test_create_nodes_in_group_relabels(self, service: PooledComputeService):
        nodes = service.create_nodes_in_group("build-42", 2)
        assert len(nodes) == 2
        assert {n.group for n in nodes} == {"build-42"}
        assert service.ready() == 0

    def test_list_nodes_shows_handed_out_nodes(self, service: PooledComputeService):
        nodes = service.create_nodes_in_group("ci", 1)
        listed = service.list_nodes()
        assert [n.id for n in listed] == [nodes[0].id]
        assert listed[0].group == "ci"

    def test_get_node_prefers_pool_view(self, service: PooledComputeService):
        (node,) = service.create_nodes_in_group("ci", 1)
        assert service.get_node(node.id).group == "ci"

    def test_get_node_falls_back_to_backend(self, service: PooledComputeService, backend: InMemoryBackend):
        (idle,) = backend.live_nodes()[:1]
        assert service.get_node(idle.id).group == "test"
        assert service.get_node("node-9999") is None

    def test_destroy_node_returns_pool_node(self, service: PooledComputeService, backend: InMemoryBackend):
        (node,) = service.create_nodes_in_group("ci", 1)
        service.destroy_node(node.id)
        assert service.ready() == 2
        assert node.id not in backend.destroyed

    def test_destroy_node_idle_pool_node(
        self, service: PooledComputeService, backend: InMemoryBackend, eventually
    ):
        idle = backend.live_nodes()[0]
        service.destroy_node(idle.id)
        assert idle.id in backend.destroyed
        assert not service.pool.owns(idle.id)
        assert eventually(lambda: service.ready() == 2)

    def test_destroy_node_foreign(self, service: PooledComputeService, backend: InMemoryBackend):
        (foreign,) = backend.seed("elsewhere", 1)
        service.destroy_node(foreign.id)
        assert foreign.id in backend.destroyed

    def test_destroy_nodes(self, service: PooledComputeService):
        nodes = service.create_nodes_in_group("ci", 2)
        service.destroy_nodes([n.id for n in nodes])
        assert service.list_nodes() == []

    def test_shortfall_raises_run_nodes_error(self, service: PooledComputeService):
        with pytest.raises(RunNodesError) as exc_info:
            service.create_nodes_in_group("ci", 6)
        error = exc_info.value
        assert len(error.nodes) == 4
        assert error.requested == 6
        # nodes obtained stay allocated to the caller
        assert len(service.list_nodes()) == 4

    def test_ignores_foreign_template(self, service: PooledComputeService):
        nodes = service.create_nodes_in_group("ci", 1, Template(hardware="huge"))
        assert len(nodes) == 1

    def test_node_operations_delegate(self, service: PooledComputeService, backend: InMemoryBackend):
        (node,) = service.create_nodes_in_group("ci", 1)
        service.reboot_node(node.id)
        service.suspend_node(node.id)
        assert backend.get_node(node.id).status is NodeStatus.SUSPENDED
        service.resume_node(node.id)
        assert backend.get_node(node.id).status is NodeStatus.RUNNING
        assert backend.calls["reboot"] == 1


class TestPoolSurface:
    def test_introspection(self, service: PooledComputeService):
        assert service.is_started()
        assert service.size() == 2
        assert service.max_size() == 4
        stats = service.stats()
        assert stats.min_nodes == 2
        assert stats.max_nodes == 4

    def test_context_manager(self):
        backend = InMemoryBackend(Memory())
        with PooledComputeService(backend, replace(FAST, min_size=1)) as svc:
            assert svc.ready() == 1
        assert backend.live_nodes() == []

    def test_logging_enabled_while_running(self, backend: InMemoryBackend, capsys):
        svc = PooledComputeService(
            backend,
            replace(FAST, min_size=1),
            logging=LogConfig(level="DEBUG", file=None, console=True),
        )
        svc.start_pool().result()
        svc.close()
        assert "Pool test started" in capsys.readouterr().err

