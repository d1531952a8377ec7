from enum import Enum
from logzero import logger
from typing import Dict

from blockchat_fleet.common import *
from blockchat_fleet.execute.execute import DispatchHandle, ParallelResult, \
    RemoteCommand, Task
from blockchat_fleet.report import FleetReport
from blockchat_fleet.scenario import FleetConfig, ServiceInstance
from blockchat_fleet.units import export_prefix, reload_command, \
    start_command, stop_command

STOP = 'stop'
RELOAD_UNITS = 'reload-units'
START_HELPERS = 'start-helpers'
START_DAEMONS = 'start-daemons'


class LifecycleState(Enum):
    """
    Fleet-wide lifecycle states, in the only order they may be visited.
    """
    IDLE = 1
    STOPPING = 2
    STOPPED = 3
    RELOADING_UNITS = 4
    UNITS_RELOADED = 5
    STARTING_HELPERS = 6
    HELPERS_STARTED = 7
    STARTING_DAEMONS = 8
    RUNNING = 9


def helper_command(instance: ServiceInstance,
                   remote_dir: str = DEFAULT_FLEET_REMOTE_DIR) -> RemoteCommand:
    """
    Start the helper of a service instance in the foreground.

    The helper reads its bindings from the environment, exported inline since
    ssh servers rarely accept arbitrary environment variables.
    """
    return RemoteCommand("cd {} && {} && ./target/release/helper".format(
        remote_dir, export_prefix(instance.bindings.helper_env())))


class LifecycleController(object):
    """
    Drives the fleet from whatever it is running to a fresh scenario run.

    stop -> reload units (optional) -> start helpers -> start daemons

    Daemons contact their helper as soon as they start, so every helper of a
    run is issued before any daemon is. start_daemons() refuses to run until
    the helper fan-out has been fully issued. Issued, not finished: helpers
    are long running and the controller never waits for them to exit.
    """
    def __init__(self, config: FleetConfig, executor,
                 reload_units: bool = True, report: FleetReport = None,
                 remote_dir: str = DEFAULT_FLEET_REMOTE_DIR):
        self.config = config
        self.executor = executor
        self.reload = reload_units
        self.report = report if report is not None else FleetReport()
        self.remote_dir = remote_dir.rstrip("/")
        self.state = LifecycleState.IDLE
        self.helpers = None
        self.daemons = None

    def _enter(self, allowed, state):
        if self.state not in allowed:
            raise OrderingViolation(
                "Cannot move to {} from {}".format(state.name,
                                                   self.state.name))
        logger.debug("Lifecycle: %s -> %s", self.state.name, state.name)
        self.state = state

    def stop(self) -> Dict[str, ParallelResult]:
        """
        Stop every unit a previous run may have left running, on every node.

        Both the primary and the secondary unit are stopped regardless of the
        variant, since the previous run may have used another one.
        """
        self._enter((LifecycleState.IDLE, LifecycleState.STOPPED,
                     LifecycleState.RUNNING), LifecycleState.STOPPING)
        self.close()
        tasks = [Task("{}/{}".format(node.name, unit), node.address,
                      stop_command(unit))
                 for node in self.config.nodes
                 for unit in self.config.unit_names]
        logger.info("Stopping %d unit(s) on %d node(s)", len(tasks),
                    len(self.config.nodes))
        results = self.executor.execute(tasks, label=STOP)
        self.report.record(STOP, results)
        self.state = LifecycleState.STOPPED
        return results

    def reload_units(self) -> Dict[str, ParallelResult]:
        self._enter((LifecycleState.STOPPED,), LifecycleState.RELOADING_UNITS)
        logger.info("Reloading unit definitions on %d node(s)",
                    len(self.config.nodes))
        results = self.executor.run_on_fleet(self.config.nodes,
                                             lambda node: reload_command(),
                                             wait=True, label=RELOAD_UNITS)
        self.report.record(RELOAD_UNITS, results)
        self.state = LifecycleState.UNITS_RELOADED
        return results

    def start_helpers(self) -> DispatchHandle:
        allowed = (LifecycleState.UNITS_RELOADED,) if self.reload else \
            (LifecycleState.STOPPED, LifecycleState.UNITS_RELOADED)
        self._enter(allowed, LifecycleState.STARTING_HELPERS)
        tasks = [Task(instance.key, instance.node.address,
                      helper_command(instance, self.remote_dir))
                 for instance in self.config.instances]
        logger.info("Starting %d helper(s)", len(tasks))
        self.helpers = self.executor.dispatch(tasks, label=START_HELPERS)
        self.report.record_dispatch(START_HELPERS, self.helpers)
        self.state = LifecycleState.HELPERS_STARTED
        return self.helpers

    def start_daemons(self) -> DispatchHandle:
        if self.helpers is None or not self.helpers.all_issued():
            raise OrderingViolation("Daemons may only be started once every "
                                    "helper has been issued")
        self._enter((LifecycleState.HELPERS_STARTED,),
                    LifecycleState.STARTING_DAEMONS)
        tasks = [Task(instance.key, instance.node.address,
                      start_command(instance.name))
                 for instance in self.config.instances]
        logger.info("Starting %d daemon(s)", len(tasks))
        self.daemons = self.executor.dispatch(tasks, label=START_DAEMONS)
        self.report.record_dispatch(START_DAEMONS, self.daemons)
        self.state = LifecycleState.RUNNING
        return self.daemons

    def run(self) -> FleetReport:
        """
        Run the whole sequence and return the fleet report.

        The report lists helpers and daemons as 'dispatched'. Call
        supervise() to wait for them and record how they ended.
        """
        self.stop()
        if self.reload:
            self.reload_units()
        self.start_helpers()
        self.start_daemons()
        return self.report

    def supervise(self, timeout: float = None) -> FleetReport:
        """
        Wait up to timeout seconds per task for the started processes and
        record the outcome of those that have finished.
        """
        if self.daemons is not None:
            self.report.update_from(START_DAEMONS, self.daemons.join(timeout))
        if self.helpers is not None:
            self.report.update_from(START_HELPERS, self.helpers.join(timeout))
        return self.report

    def close(self):
        """
        Drop the channels of helpers and daemon starts still open. The
        remote processes are not guaranteed to stop.
        """
        for handle in (self.helpers, self.daemons):
            if handle is not None:
                handle.close()
