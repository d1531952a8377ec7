import pytest

from blockchat_fleet.common import ConfigurationError, Role, Variant
from blockchat_fleet.scenario import Node, build_fleet, resolve


@pytest.mark.parametrize('size', [1, 2, 5, 10, 32])
@pytest.mark.parametrize('variant', list(Variant))
def test_one_binding_set_per_node(size, variant):
    config = resolve(build_fleet(size), variant)
    per_node = 2 if variant == Variant.DUAL_INSTANCE else 1

    assert len(config.nodes) == size
    assert len(config.instances) == size * per_node
    for node in config.nodes:
        assert len(config.instances_on(node)) == per_node
    addresses = [node.address for node in config.nodes]
    assert len(set(addresses)) == size
    endpoints = [instance.endpoint for instance in config.instances]
    assert len(set(endpoints)) == len(endpoints)
    assert config.topology.network_size >= len(config.instances)


def test_build_fleet():
    nodes = build_fleet(3)
    assert nodes == (Node(0, 'node0'), Node(1, 'node1'), Node(2, 'node2'))
    assert [node.name for node in nodes] == ['node0', 'node1', 'node2']

    nodes = build_fleet(2, hosts=['10.0.0.3', ' 10.0.0.4 '])
    assert [node.address for node in nodes] == ['10.0.0.3', '10.0.0.4']

    assert build_fleet(2, host_template='bc-{}.lab')[1].address == 'bc-1.lab'


@pytest.mark.parametrize('kwargs', [
    {'size': 0},
    {'size': -3},
    {'size': 'five'},
    {'size': 2, 'hosts': ['a']},
    {'size': 2, 'hosts': ['a', '']},
    {'size': 2, 'hosts': ['a', 'a']},
])
def test_build_fleet_rejects_bad_input(kwargs):
    with pytest.raises(ConfigurationError):
        build_fleet(**kwargs)


def test_standard_variant():
    config = resolve(build_fleet(5))

    assert config.topology.bootstrap_peer_socket == 'node0:27736'
    assert config.topology.network_size == 5
    assert config.scenario.input_folder == 'inputs/5nodes'
    for instance in config.instances:
        assert instance.role == Role.PRIMARY
        assert instance.name == 'block_chat'
        assert instance.bindings.staking == 10
        assert instance.bindings.helper_env() == {
            'DAEMON_SOCKET': '127.0.0.1:27737',
            'FIXED_STAKING': '10',
            'INPUT_FOLDER': 'inputs/5nodes',
        }
        assert instance.bindings.daemon_env() == {
            'BLOCK_CHAT_BOOTSTRAP_PEER_SOCKET': 'node0:27736',
            'BLOCK_CHAT_BOOTSTRAP_PORT': '27736',
            'BLOCK_CHAT_NETWORK_PORT': '27737',
            'BLOCK_CHAT_NETWORK_SIZE': '5',
        }


@pytest.mark.parametrize('size', [1, 3, 5, 10])
def test_unfair_variant_overrides_exactly_node_zero(size):
    config = resolve(build_fleet(size), 'unfair', staking=10,
                     elevated_staking=250)

    elevated = [i for i in config.instances if i.bindings.staking == 250]
    baseline = [i for i in config.instances if i.bindings.staking == 10]
    assert len(elevated) == 1
    assert elevated[0].node.id == 0
    assert len(baseline) == size - 1


def test_dual_instance_variant():
    config = resolve(build_fleet(5), Variant.DUAL_INSTANCE)

    assert config.topology.network_size == 10
    assert config.scenario.input_folder == 'inputs/10nodes'
    for node in config.nodes:
        primary, secondary = config.instances_on(node)
        assert primary.role == Role.PRIMARY
        assert secondary.role == Role.SECONDARY
        assert secondary.name == 'block_chat_2'
        assert primary.bindings.daemon_socket != \
            secondary.bindings.daemon_socket
        assert primary.bindings.bootstrap_port != \
            secondary.bindings.bootstrap_port
        assert primary.bindings.input_folder == \
            secondary.bindings.input_folder
        assert secondary.bindings.daemon_socket == '127.0.0.1:27739'
    # only ordinal 0's primary owns the bootstrap address
    assert {i.bindings.bootstrap_peer_socket for i in config.instances} == \
        {'node0:27736'}


def test_bootstrap_host_and_explicit_values():
    config = resolve(build_fleet(3), bootstrap_host='192.168.0.3',
                     input_folder='inputs/custom', network_size=4)
    assert config.topology.bootstrap_peer_socket == '192.168.0.3:27736'
    assert config.topology.network_size == 4
    assert all(i.bindings.input_folder == 'inputs/custom'
               for i in config.instances)


@pytest.mark.parametrize('kwargs', [
    {'variant': 'fair'},
    {'variant': 7},
    {'staking': 0},
    {'staking': 'lots'},
    {'elevated_staking': -1},
    {'network_size': 2},
    {'input_folder': ''},
])
def test_resolve_fails_fast(kwargs):
    with pytest.raises(ConfigurationError):
        resolve(build_fleet(3), **kwargs)


def test_resolve_rejects_malformed_fleets():
    with pytest.raises(ConfigurationError):
        resolve([])
    with pytest.raises(ConfigurationError):
        resolve([Node(0, 'a'), Node(2, 'b')])
    with pytest.raises(ConfigurationError):
        resolve([Node(0, 'a'), Node(1, 'a')])
    with pytest.raises(ConfigurationError):
        resolve([Node(0, '')])


def test_resolution_is_deterministic():
    nodes = build_fleet(4)
    assert resolve(nodes, 'unfair') == resolve(nodes, 'unfair')
