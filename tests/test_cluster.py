import pytest
from unittest.mock import Mock

from pvesnap.cluster import discover, resolve
from pvesnap.errors import AmbiguousNameError, NotFoundError, ProxmoxAPIError, ProxmoxAuthError
from pvesnap.models import ClusterNode, ClusterTopology, Guest, GuestType


class TestDiscover:

    def test_nodes_and_guests(self, cluster):
        topology = discover(cluster)

        assert [n.name for n in topology.nodes] == ['pve1', 'pve2', 'pve3']
        assert [g.id for g in topology.guests] == [100, 101, 102, 200]
        proxy = topology.by_id(200)
        assert proxy.type is GuestType.LXC
        assert proxy.node.name == 'pve2'
        assert proxy.running is True
        assert topology.by_id(101).running is False
        assert topology.node('pve1').address == '10.0.0.1'

    def test_unreachable_node_is_marked_offline(self, cluster):
        topology = discover(cluster)

        assert topology.node('pve3').online is False
        assert topology.by_id(300) is None
        assert topology.node('pve1').online is True

    def test_offline_node_is_not_queried(self, cluster):
        cluster.nodes['pve2']['status'] = 'offline'

        topology = discover(cluster)

        assert topology.node('pve2').online is False
        assert topology.guests_on('pve2') == []
        assert not any(path.startswith('/nodes/pve2/') for _, path, _ in cluster.requests)

    def test_auth_error_aborts_discovery(self):
        client = Mock()
        client.call.side_effect = ProxmoxAuthError("Authentication failed (401)")

        with pytest.raises(ProxmoxAuthError):
            discover(client)

    def test_falls_back_to_cluster_status(self):
        responses = {
            '/cluster/status': [
                {'type': 'cluster', 'name': 'lab'},
                {'type': 'node', 'name': 'pve1', 'ip': '192.168.1.10', 'online': 1},
            ],
            '/qemu': [{'vmid': 100, 'name': 'web', 'status': 'running'}],
            '/lxc': [],
        }

        def call(node, method, path, data=None, params=None):
            if path == '/nodes':
                raise ProxmoxAPIError("Permission check failed", 500)
            return responses[path]

        client = Mock()
        client.call.side_effect = call

        topology = discover(client)

        assert topology.nodes == (ClusterNode(name='pve1', address='192.168.1.10', online=True),)
        assert topology.by_id(100).name == 'web'

    def test_each_discovery_is_fresh(self, cluster):
        first = discover(cluster)
        cluster.add_guest(103, 'pve2', name='new')
        second = discover(cluster)

        assert first.by_id(103) is None
        assert second.by_id(103).name == 'new'


class TestResolve:

    @pytest.fixture
    def topology(self, cluster):
        return discover(cluster)

    def test_by_id(self, topology):
        assert resolve(topology, '102').name == 'db'

    def test_id_wins_over_ambiguous_name(self, topology):
        for guest in topology.guests:
            assert resolve(topology, str(guest.id)) == guest
        assert resolve(topology, '100').name == 'web'

    def test_unknown_id(self, topology):
        with pytest.raises(NotFoundError):
            resolve(topology, '999')

    def test_by_unique_name(self, topology):
        assert resolve(topology, 'proxy').id == 200

    def test_name_is_case_sensitive(self, topology):
        with pytest.raises(NotFoundError):
            resolve(topology, 'Proxy')

    def test_ambiguous_name_lists_candidates(self, topology):
        with pytest.raises(AmbiguousNameError) as excinfo:
            resolve(topology, 'web')
        assert excinfo.value.candidates == [100, 101]
        assert '100, 101' in str(excinfo.value)

    def test_guest_on_unreachable_node_is_not_found(self, topology):
        with pytest.raises(NotFoundError):
            resolve(topology, 'hidden')

    def test_numeric_looking_name(self):
        node = ClusterNode(name='pve1')
        topology = ClusterTopology(nodes=(node,), guests=(
            Guest(id=100, name='web-01', type=GuestType.QEMU, node=node),
        ))
        with pytest.raises(NotFoundError):
            resolve(topology, '-1')
