import os
import shutil
import tempfile
from enum import Enum
from logzero import logger
from os import makedirs


class ConfigurationError(Exception):
    """
    Malformed or missing scenario input.

    Raised before any remote action is taken.
    """


class RemoteExecutionError(Exception):
    """
    A remote command returned non-zero or its channel failed.

    Fan-outs never raise this from inside a stage. It is raised by callers
    that explicitly ask for a failed fleet report to become an exception.
    """
    def __init__(self, message, failures=None):
        super().__init__(message)
        self.failures = failures or []


class OrderingViolation(Exception):
    """
    A lifecycle transition was requested out of order.
    """


def get_fleet_temp_dir() -> str:
    """
    Create a temporary directory unique to this orchestrator process.

    The temporary directory will take the form <tempdir>/blockchat_fleet.<pid>

    :return: str
    """
    tempdir_path = "{}/blockchat_fleet.{}".format(tempfile.gettempdir(),
                                                 os.getpid())
    makedirs(tempdir_path, exist_ok=True)
    logger.debug("tempdir: %s", tempdir_path)
    return tempdir_path


def remove_fleet_temp_dir(cleanup: bool = True) -> bool:
    """
    Remove the temp directory created by get_fleet_temp_dir

    :param cleanup: Perform the cleanup task?
    :type cleanup: bool
        Optional. (Default: True)
    :return: bool
    """
    temp_dir = get_fleet_temp_dir()
    if cleanup:
        logger.debug("Recursively deleting %s", temp_dir)
        try:
            shutil.rmtree(temp_dir)
        except OSError as e:
            logger.error("Failed to recursively delete the contents of %s",
                         temp_dir)
            logger.exception(e)
            return False
    else:
        logger.info("Skip removal of %s.", temp_dir)
    return True


class Variant(Enum):
    """
    All supported experiment scenarios.
    """
    # One daemon/helper pair per node, same staking everywhere
    STANDARD = 'standard'
    # Node 0 stakes more than everybody else
    UNFAIR = 'unfair'
    # Two daemon/helper pairs per node
    DUAL_INSTANCE = 'dual-instance'

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if not cls.has_value(value):
            raise ConfigurationError(
                "Unknown scenario variant {!r}. Expected one of: {}".format(
                    value, ', '.join(item.value for item in cls)))
        return cls(value)


class Role(Enum):
    """
    Position of a service instance on its node.
    """
    PRIMARY = 'primary'
    SECONDARY = 'secondary'


# What to do with a node that failed a deployment stage.
# CONTINUE keeps it in later stages (it will most likely run on stale state).
# SKIP_FAILED drops it from every later stage of the same run.
class FailurePolicy(Enum):
    """
    All supported stage failure policies.
    """
    CONTINUE = 1
    SKIP_FAILED = 2

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)


# Useful for validating boolean user input
true_list = [
   'true', '1', 't', 'y', 'yes'
]
false_list = [
   'false', '0', 'f', 'n', 'no'
]


# Fleet defaults
# Please keep defaults in lexically acending order by name
DEFAULT_FLEET_BOOTSTRAP_PORT=27736
DEFAULT_FLEET_CONNECT_TIMEOUT=60
DEFAULT_FLEET_ELEVATED_STAKING=100
DEFAULT_FLEET_HOST_TEMPLATE="node{}"
DEFAULT_FLEET_INPUTS_DIR="inputs"
DEFAULT_FLEET_NETWORK_PORT=27737
DEFAULT_FLEET_REMOTE_DIR="~/block_chat"
DEFAULT_FLEET_SECONDARY_BOOTSTRAP_PORT=27738
DEFAULT_FLEET_SECONDARY_NETWORK_PORT=27739
DEFAULT_FLEET_SECONDARY_SERVICE_NAME="block_chat_2"
DEFAULT_FLEET_SERVICE_NAME="block_chat"
DEFAULT_FLEET_SIZE=5
DEFAULT_FLEET_SSH_CONFIG_FILE="~/.ssh/config"
DEFAULT_FLEET_STAGE_TIMEOUT=None
DEFAULT_FLEET_STAKING=10
DEFAULT_FLEET_SYSTEMD_DIR="/etc/systemd/system"
