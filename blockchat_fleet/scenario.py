"""
Scenario resolution.

Maps a requested experiment (fleet, variant, staking) to the concrete
environment bindings of every service instance in the fleet. Everything here
is pure: no disk or network access, and every structure returned is
immutable. The resulting FleetConfig is built once per invocation and handed
explicitly to the deployment pipeline and the lifecycle controller.
"""
from collections import namedtuple
from logzero import logger
from typing import Sequence, Tuple

from blockchat_fleet.common import *


class Node(namedtuple('Node', ['id', 'address'])):
    """
    A fleet member: ordinal id and the address used to reach it over ssh.
    """
    __slots__ = ()

    @property
    def name(self):
        return "node{}".format(self.id)


Topology = namedtuple('Topology', ['bootstrap_peer_socket', 'network_size'])

Scenario = namedtuple('Scenario', ['variant', 'staking', 'elevated_staking',
                                   'input_folder'])


class Bindings(namedtuple('Bindings', ['bootstrap_peer_socket', 'network_size',
                                       'bootstrap_port', 'network_port',
                                       'daemon_socket', 'staking',
                                       'input_folder'])):
    """
    Environment consumed by one daemon/helper pair.
    """
    __slots__ = ()

    def daemon_env(self):
        return {
            'BLOCK_CHAT_BOOTSTRAP_PEER_SOCKET': self.bootstrap_peer_socket,
            'BLOCK_CHAT_BOOTSTRAP_PORT': str(self.bootstrap_port),
            'BLOCK_CHAT_NETWORK_PORT': str(self.network_port),
            'BLOCK_CHAT_NETWORK_SIZE': str(self.network_size),
        }

    def helper_env(self):
        return {
            'DAEMON_SOCKET': self.daemon_socket,
            'FIXED_STAKING': str(self.staking),
            'INPUT_FOLDER': self.input_folder,
        }


class ServiceInstance(namedtuple('ServiceInstance', ['name', 'node', 'role',
                                                     'bindings'])):
    """
    One daemon/helper pair on a node, identified by its systemd unit name.
    """
    __slots__ = ()

    @property
    def key(self):
        return "{}/{}".format(self.node.name, self.name)

    @property
    def endpoint(self):
        return "{}:{}".format(self.node.address, self.bindings.network_port)


class FleetConfig(namedtuple('FleetConfig', ['nodes', 'topology', 'scenario',
                                             'instances'])):
    __slots__ = ()

    def instances_on(self, node: Node) -> Tuple[ServiceInstance, ...]:
        return tuple(i for i in self.instances if i.node == node)

    @property
    def unit_names(self) -> Tuple[str, ...]:
        """Every unit name a run of any variant may have installed."""
        return (DEFAULT_FLEET_SERVICE_NAME,
                DEFAULT_FLEET_SECONDARY_SERVICE_NAME)


def build_fleet(size: int = DEFAULT_FLEET_SIZE,
                host_template: str = DEFAULT_FLEET_HOST_TEMPLATE,
                hosts: Sequence[str] = None) -> Tuple[Node, ...]:
    """
    Create the nodes of a fleet with ordinals 0..size-1.

    :param size: Number of nodes. Required.
    :type size: int
    :param host_template: Format string turning an ordinal into the node's
        ssh host alias. Ignored when hosts is given.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_HOST_TEMPLATE)
    :type host_template: str
    :param hosts: Explicit host aliases, one per ordinal.
        Optional. (Default: None)
    :type hosts: Sequence[str]
    :return: Tuple[Node, ...]
    """
    try:
        size = int(size)
    except (TypeError, ValueError):
        raise ConfigurationError("Fleet size must be an integer, got "
                                 "{!r}".format(size))
    if size <= 0:
        raise ConfigurationError("Fleet size must be greater than 0, got "
                                 "{}".format(size))

    if hosts is None:
        addresses = [host_template.format(i) for i in range(size)]
    else:
        addresses = [h.strip() for h in hosts]
        if len(addresses) != size:
            raise ConfigurationError(
                "Fleet size is {} but {} hosts were given".format(
                    size, len(addresses)))

    if any(not address for address in addresses):
        raise ConfigurationError("Node addresses must not be empty")
    if len(set(addresses)) != len(addresses):
        raise ConfigurationError("Node addresses must be distinct: "
                                 "{}".format(addresses))

    return tuple(Node(i, address) for i, address in enumerate(addresses))


def _positive(value, what):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError("{} must be an integer, got {!r}".format(
            what, value))
    if number <= 0:
        raise ConfigurationError("{} must be positive, got {}".format(
            what, number))
    return number


def resolve(nodes: Sequence[Node], variant=Variant.STANDARD,
            staking: int = DEFAULT_FLEET_STAKING,
            elevated_staking: int = DEFAULT_FLEET_ELEVATED_STAKING,
            input_folder: str = None, bootstrap_host: str = None,
            network_size: int = None) -> FleetConfig:
    """
    Resolve the bindings of every service instance for a scenario.

    Node 0 owns the bootstrap address. In the unfair variant node 0's primary
    instance stakes elevated_staking and everybody else stakes staking. In the
    dual-instance variant every node runs a second instance on its own
    ports, sharing the node's input folder.

    :param nodes: The fleet, see build_fleet. Required.
    :type nodes: Sequence[Node]
    :param variant: A Variant or its value.
        Optional. (Default: Variant.STANDARD)
    :param staking: Baseline staking amount.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_STAKING)
    :type staking: int
    :param elevated_staking: Staking amount of the overridden node in the
        unfair variant.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_ELEVATED_STAKING)
    :type elevated_staking: int
    :param input_folder: Dataset folder, relative to the remote working
        directory. None resolves to inputs/<network size>nodes.
        Optional. (Default: None)
    :type input_folder: str
    :param bootstrap_host: Address the other daemons use to reach node 0,
        when it differs from node 0's ssh alias (e.g. a private network IP).
        Optional. (Default: None)
    :type bootstrap_host: str
    :param network_size: Network size announced to the bootstrap peer. None
        resolves to the number of started instances.
        Optional. (Default: None)
    :type network_size: int
    :return: FleetConfig
    """
    nodes = tuple(nodes)
    if not nodes:
        raise ConfigurationError("Fleet must contain at least one node")
    if [node.id for node in nodes] != list(range(len(nodes))):
        raise ConfigurationError("Node ordinals must be contiguous from 0")
    if any(not node.address for node in nodes):
        raise ConfigurationError("Node addresses must not be empty")
    if len({node.address for node in nodes}) != len(nodes):
        raise ConfigurationError("Node addresses must be distinct")

    variant = Variant.parse(variant)
    staking = _positive(staking, "Staking")
    elevated_staking = _positive(elevated_staking, "Elevated staking")

    per_node = 2 if variant == Variant.DUAL_INSTANCE else 1
    instance_count = per_node * len(nodes)
    if network_size is None:
        network_size = instance_count
    else:
        network_size = _positive(network_size, "Network size")
        if network_size < instance_count:
            raise ConfigurationError(
                "Network size {} is smaller than the {} instances to be "
                "started".format(network_size, instance_count))

    if input_folder is None:
        input_folder = "{}/{}nodes".format(DEFAULT_FLEET_INPUTS_DIR,
                                           network_size)
    elif not input_folder:
        raise ConfigurationError("Input folder must not be empty")

    bootstrap_socket = "{}:{}".format(bootstrap_host or nodes[0].address,
                                      DEFAULT_FLEET_BOOTSTRAP_PORT)
    topology = Topology(bootstrap_socket, network_size)
    scenario = Scenario(variant, staking, elevated_staking, input_folder)

    layout = [(DEFAULT_FLEET_SERVICE_NAME, Role.PRIMARY,
               DEFAULT_FLEET_BOOTSTRAP_PORT, DEFAULT_FLEET_NETWORK_PORT)]
    if variant == Variant.DUAL_INSTANCE:
        layout.append((DEFAULT_FLEET_SECONDARY_SERVICE_NAME, Role.SECONDARY,
                       DEFAULT_FLEET_SECONDARY_BOOTSTRAP_PORT,
                       DEFAULT_FLEET_SECONDARY_NETWORK_PORT))

    instances = []
    for node in nodes:
        for name, role, bootstrap_port, network_port in layout:
            stake = staking
            if (variant == Variant.UNFAIR and node.id == 0 and
                    role == Role.PRIMARY):
                stake = elevated_staking
            bindings = Bindings(bootstrap_socket, network_size, bootstrap_port,
                                network_port,
                                "127.0.0.1:{}".format(network_port), stake,
                                input_folder)
            instances.append(ServiceInstance(name, node, role, bindings))

    logger.debug("Resolved %s scenario: %d nodes, %d instances, bootstrap %s",
                 variant.value, len(nodes), len(instances), bootstrap_socket)
    return FleetConfig(nodes, topology, scenario, tuple(instances))
