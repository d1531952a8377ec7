import socket
from logzero import logger
from os.path import expanduser
from typing import Dict

from blockchat_fleet.common import DEFAULT_FLEET_SSH_CONFIG_FILE
from blockchat_fleet.execute.execute import FabricExecutor, Task
from blockchat_fleet.scenario import FleetConfig, Node
from blockchat_fleet.units import is_active_command


def service_is_active(node: Node, unit: str,
                      ssh_config_file: str = DEFAULT_FLEET_SSH_CONFIG_FILE,
                      user: str = None, identity_file: str = None,
                      timeout: int = 30) -> bool:
    """
    Is a unit active on a single node?

    :param node: The node to probe. Required.
    :type node: Node
    :param unit: The systemd unit name. Required.
    :type unit: str
    :param ssh_config_file: The relative or absolute path to the SSH config
        file. None leaves ssh settings to Fabric's defaults.
        Optional. (Default: blockchat_fleet.common.DEFAULT_FLEET_SSH_CONFIG_FILE)
    :type ssh_config_file: str
    :param user: Remote user. None takes it from the SSH config.
        Optional. (Default: None)
    :type user: str
    :param identity_file: Private key to authenticate with.
        Optional. (Default: None)
    :type identity_file: str
    :param timeout: Seconds to wait for the probe to complete.
        Optional. (Default: 30)
    :type timeout: int
    :return: bool
    """
    if ssh_config_file:
        ssh_config_file = expanduser(ssh_config_file)
    executor = FabricExecutor(ssh_config_file=ssh_config_file)
    result = executor.execute(node.address, is_active_command(unit),
                              user=user, identity_file=identity_file,
                              timeout=timeout)
    logger.debug("%s/%s is-active: rc %s stdout %s", node.name, unit,
                 result.return_code, result.stdout.strip())
    return result.return_code == 0 and result.stdout.strip() == "active"


def services_are_active(config: FleetConfig, executor) -> Dict[str, bool]:
    """
    Probe every service instance of the scenario in parallel.

    :param config: The resolved scenario. Required.
    :type config: FleetConfig
    :param executor: A ParallelFabricExecutor. Required.
    :return: {instance key: bool}
    """
    tasks = [Task(instance.key, instance.node.address,
                  is_active_command(instance.name))
             for instance in config.instances]
    results = executor.execute(tasks, label='status')
    status = {}
    for instance in config.instances:
        result = results[instance.key]
        status[instance.key] = result.return_code == 0 and \
            (result.stdout or '').strip() == "active"
        logger.info("%s: %s", instance.key,
                    "active" if status[instance.key] else "not active")
    return status


def bootstrap_peer_is_reachable(config: FleetConfig,
                                timeout: float = 5) -> bool:
    """
    Is the bootstrap peer accepting connections from this machine?

    :param config: The resolved scenario. Required.
    :type config: FleetConfig
    :param timeout: Connection timeout in seconds.
        Optional. (Default: 5)
    :type timeout: float
    :return: bool
    """
    host, port = config.topology.bootstrap_peer_socket.rsplit(":", 1)
    logger.debug("Check if bootstrap peer %s is reachable on port %s", host,
                 port)
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            pass
    except OSError as e:
        logger.debug("Bootstrap peer %s:%s is not reachable: %s", host, port, e)
        return False
    logger.debug("Bootstrap peer %s:%s is reachable", host, port)
    return True
