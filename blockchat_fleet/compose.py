"""
Container-based alternative to the bare-metal deployment.

Each node is a pair of containers: one daemon image and one helper image.
node0 owns the bootstrap address and starts first; every other daemon
declares a start-up dependency on it, and every helper depends on its own
daemon.
"""
from collections import OrderedDict
from logzero import logger

import yaml

from blockchat_fleet.common import ConfigurationError, \
    DEFAULT_FLEET_BOOTSTRAP_PORT, DEFAULT_FLEET_NETWORK_PORT

NODE_IMAGE = "block_chat_node"
HELPER_IMAGE = "block_chat_helper"


def render_compose(size: int, bootstrap_port: int = DEFAULT_FLEET_BOOTSTRAP_PORT,
                   network_port: int = DEFAULT_FLEET_NETWORK_PORT,
                   host_port_base: int = 8080) -> dict:
    """
    Build the compose document for a network of 'size' nodes.

    :param size: Number of daemon/helper pairs. Required.
    :type size: int
    :param bootstrap_port: Peer discovery port.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_BOOTSTRAP_PORT)
    :type bootstrap_port: int
    :param network_port: Daemon control port.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_NETWORK_PORT)
    :type network_port: int
    :param host_port_base: Host port published for node0's control port;
        node i publishes host_port_base + i.
        Optional. (Default: 8080)
    :type host_port_base: int
    :return: dict
    """
    if int(size) <= 0:
        raise ConfigurationError("Network size must be greater than 0, got "
                                 "{}".format(size))
    size = int(size)
    bootstrap = "node0:{}".format(bootstrap_port)
    exposed = ["{}/tcp".format(bootstrap_port), "{}/tcp".format(network_port)]

    services = OrderedDict()
    for i in range(size):
        node = OrderedDict()
        if i == 0:
            node['build'] = {'context': '.', 'dockerfile': 'Dockerfile.node'}
            node['image'] = NODE_IMAGE
            node['pull_policy'] = 'never'
        else:
            node['image'] = NODE_IMAGE
        node['expose'] = list(exposed)
        environment = ["BLOCK_CHAT_BOOTSTRAP_PEER_SOCKET={}".format(bootstrap)]
        if i == 0:
            environment.append("BLOCK_CHAT_NETWORK_SIZE={}".format(size))
        node['environment'] = environment
        node['ports'] = ["{}:{}".format(host_port_base + i, network_port)]
        if i != 0:
            node['depends_on'] = ['node0']
        services["node{}".format(i)] = node

    for i in range(size):
        helper = OrderedDict()
        if i == 0:
            helper['build'] = {'context': '.',
                               'dockerfile': 'Dockerfile.helper'}
        helper['image'] = HELPER_IMAGE
        helper['expose'] = ["{}/tcp".format(network_port)]
        helper['environment'] = [
            "BLOCK_CHAT_DAEMON_SOCKET=node{}:{}".format(i, network_port),
            "BLOCK_CHAT_NETWORK_SIZE={}".format(size),
        ]
        helper['depends_on'] = ["node{}".format(i)]
        services["helper{}".format(i)] = helper

    logger.debug("Rendered compose document for %d node(s)", size)
    return {'services': services}


def _plain(value):
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def dump_compose(document: dict) -> str:
    return yaml.safe_dump(_plain(document), sort_keys=False,
                          default_flow_style=False)
