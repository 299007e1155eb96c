import pytest

from warmpool.exceptions import NodeNotAllocatedError, PartialProvisioningError
from warmpool.types import AcquireResult, CloseReport, NodeHandle, NodeStatus, PoolStats, RegionAndName


class TestRegionAndName:
    def test_slash_encode(self):
        key = RegionAndName("us-east-1", "i-123")
        assert key.slash_encode() == "us-east-1/i-123"
        assert str(key) == "us-east-1/i-123"
        assert RegionAndName.from_slash_encoded("us-east-1/i-123") == key

    @pytest.mark.parametrize("encoded", ["i-123", "/i-123", "us-east-1/"])
    def test_malformed(self, encoded):
        with pytest.raises(ValueError):
            RegionAndName.from_slash_encoded(encoded)

    def test_hashable_key(self):
        assert len({RegionAndName("a", "b"), RegionAndName("a", "b")}) == 1


class TestValues:
    def test_node_status_dead(self):
        assert NodeStatus.TERMINATED.is_dead
        assert NodeStatus.ERROR.is_dead
        assert not NodeStatus.SUSPENDED.is_dead

    def test_node_handle_hashable(self):
        assert len({NodeHandle(id="n1", group="g"), NodeHandle(id="n1", group="g")}) == 1

    def test_pool_stats_size(self):
        stats = PoolStats(idle_nodes=2, used_nodes=3, max_nodes=10, min_nodes=5)
        assert stats.current_size == 5

    def test_acquire_result(self):
        result = AcquireResult(handles=(NodeHandle(id="n1", group="g"),), requested=2, capacity_exceeded=True)
        assert len(result) == 1
        assert not result.complete

    def test_close_report(self):
        assert CloseReport().clean
        assert not CloseReport(timed_out=("n1",)).clean


class TestExceptions:
    def test_partial_provisioning_carries_nodes(self):
        node = NodeHandle(id="n1", group="g")
        error = PartialProvisioningError([node], 3)
        assert error.nodes == (node,)
        assert error.requested == 3

    def test_not_allocated_message(self):
        error = NodeNotAllocatedError("Node n1 is not allocated")
        assert str(error) == "Node n1 is not allocated"
        assert isinstance(error, KeyError)
