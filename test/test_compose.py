import pytest
import yaml

from blockchat_fleet.common import ConfigurationError
from blockchat_fleet.compose import dump_compose, render_compose


def test_render_compose_five_nodes():
    services = render_compose(5)['services']

    assert list(services) == ['node{}'.format(i) for i in range(5)] + \
        ['helper{}'.format(i) for i in range(5)]
    node0 = services['node0']
    assert node0['build'] == {'context': '.', 'dockerfile': 'Dockerfile.node'}
    assert 'depends_on' not in node0
    assert node0['environment'] == [
        'BLOCK_CHAT_BOOTSTRAP_PEER_SOCKET=node0:27736',
        'BLOCK_CHAT_NETWORK_SIZE=5']
    assert node0['ports'] == ['8080:27737']
    assert node0['expose'] == ['27736/tcp', '27737/tcp']

    node3 = services['node3']
    assert node3['depends_on'] == ['node0']
    assert node3['environment'] == [
        'BLOCK_CHAT_BOOTSTRAP_PEER_SOCKET=node0:27736']
    assert node3['ports'] == ['8083:27737']

    helper4 = services['helper4']
    assert helper4['depends_on'] == ['node4']
    assert 'BLOCK_CHAT_DAEMON_SOCKET=node4:27737' in helper4['environment']


def test_dump_compose_is_valid_yaml():
    document = yaml.safe_load(dump_compose(render_compose(2)))
    assert sorted(document['services']) == ['helper0', 'helper1', 'node0',
                                            'node1']
    assert document['services']['node1']['image'] == 'block_chat_node'


def test_render_compose_rejects_empty_network():
    with pytest.raises(ConfigurationError):
        render_compose(0)
