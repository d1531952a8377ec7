import atexit
import glob
import os
import shlex
import tarfile
from collections import namedtuple
from logzero import logger
from os.path import expanduser, join
from typing import List, Sequence

from blockchat_fleet.common import *
from blockchat_fleet.execute.execute import RemoteCommand, Upload, \
    remote_path
from blockchat_fleet.report import FleetReport
from blockchat_fleet.scenario import FleetConfig
from blockchat_fleet.units import LOGIN_ARGS, install_unit_script, \
    override_dir, reload_command, render_override, render_unit, unit_path

CLEAN = 'clean'
DISTRIBUTE_SOURCE = 'distribute-source'
BUILD = 'build'
DISTRIBUTE_INPUTS = 'distribute-inputs'
INSTALL_UNITS = 'install-units'
INSTALL_OVERRIDES = 'install-overrides'
RELOAD = 'reload'

SOURCE_ARCHIVE = "source.tar.gz"
INPUTS_ARCHIVE = "inputs.tar.gz"

# A pipeline stage. command_for(node) returns the RemoteCommand to run on the
# node (or None when there is nothing to do there). Skippable stages are left
# out of partial deployments.
Stage = namedtuple('Stage', ['name', 'command_for', 'depends_on', 'skippable'])
Stage.__new__.__defaults__ = ((), False)


def validate_stages(stages: Sequence[Stage]):
    """
    Every stage may only depend on stages that run before it.

    :raises ConfigurationError: on duplicate names or a dependency on an
        unknown or later stage.
    """
    seen = set()
    for stage in stages:
        if stage.name in seen:
            raise ConfigurationError("Duplicate stage {}".format(stage.name))
        for dependency in stage.depends_on:
            if dependency not in seen:
                raise ConfigurationError(
                    "Stage {} depends on {}, which does not run before "
                    "it".format(stage.name, dependency))
        seen.add(stage.name)


def _sudo_sh(command: str, args: str = "") -> RemoteCommand:
    # sudo only prefixes the first command of a compound command line
    return RemoteCommand("sh -c {}{}".format(shlex.quote(command), args),
                         as_sudo=True)


def _unpack(remote_dir: str, archive: str) -> str:
    path = "{}/{}".format(remote_dir, archive)
    return "tar -xzf {0} -C {1} && rm {0}".format(path, remote_dir)


class DeploymentPipeline(object):
    """
    Prepares every node of the fleet to run the scenario.

    Stages run in order, each one a full barrier over the fleet. A node that
    fails a stage never stops the other nodes; what happens to it in later
    stages is decided by the failure policy.
    """
    def __init__(self, config: FleetConfig, executor,
                 source_dir: str = ".", partial: bool = False,
                 failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
                 remote_dir: str = DEFAULT_FLEET_REMOTE_DIR,
                 stage_timeout: int = DEFAULT_FLEET_STAGE_TIMEOUT):
        if not FailurePolicy.has_value(getattr(failure_policy, 'value',
                                               failure_policy)):
            raise ConfigurationError("Unknown failure policy {!r}".format(
                failure_policy))
        self.config = config
        self.executor = executor
        self.source_dir = expanduser(source_dir)
        self.partial = partial
        self.failure_policy = FailurePolicy(getattr(failure_policy, 'value',
                                                    failure_policy))
        self.remote_dir = remote_dir.rstrip("/")
        self.stage_timeout = stage_timeout
        self.source_archive = None
        self.inputs_archive = None
        self._all_stages = self._build_stages()
        validate_stages(self._all_stages)

    def _build_stages(self) -> List[Stage]:
        return [
            Stage(CLEAN, self._clean),
            Stage(DISTRIBUTE_SOURCE, self._distribute_source, (CLEAN,)),
            Stage(BUILD, self._build, (DISTRIBUTE_SOURCE,)),
            Stage(DISTRIBUTE_INPUTS, self._distribute_inputs, (CLEAN,)),
            Stage(INSTALL_UNITS, self._install_units, (CLEAN,), True),
            Stage(INSTALL_OVERRIDES, self._install_overrides,
                  (INSTALL_UNITS,), True),
            Stage(RELOAD, self._reload, (INSTALL_OVERRIDES,), True),
        ]

    @property
    def stages(self) -> List[Stage]:
        return [stage for stage in self._all_stages
                if not (self.partial and stage.skippable)]

    def _command(self, command: str, uploads=()) -> RemoteCommand:
        return RemoteCommand(command, uploads=tuple(uploads),
                             timeout=self.stage_timeout)

    def _clean(self, node):
        return self._command("rm -rf {0} && mkdir {0}".format(self.remote_dir))

    def _distribute_source(self, node):
        upload = Upload("{}/{}".format(self.remote_dir, SOURCE_ARCHIVE),
                        local=self.source_archive)
        return self._command(_unpack(self.remote_dir, SOURCE_ARCHIVE),
                             [upload])

    def _build(self, node):
        return self._command(". ~/.cargo/env && cd {} && cargo build "
                             "--release".format(self.remote_dir))

    def _distribute_inputs(self, node):
        upload = Upload("{}/{}".format(self.remote_dir, INPUTS_ARCHIVE),
                        local=self.inputs_archive)
        return self._command(_unpack(self.remote_dir, INPUTS_ARCHIVE),
                             [upload])

    def _install_units(self, node):
        # sudo keeps the login directory, so copies read paths relative to it
        login_dir = remote_path(self.remote_dir)
        uploads = []
        copies = []
        for instance in self.config.instances_on(node):
            name = "{}.service".format(instance.name)
            content = render_unit(instance, self.remote_dir)
            uploads.append(Upload("{}/{}".format(self.remote_dir, name),
                                  content=content.encode('utf-8')))
            copies.append(install_unit_script(
                "{}/{}".format(login_dir, name), unit_path(instance.name)))
        if not copies:
            return None
        command = _sudo_sh(" && ".join(copies), LOGIN_ARGS)
        return command._replace(uploads=tuple(uploads),
                                timeout=self.stage_timeout)

    def _install_overrides(self, node):
        login_dir = remote_path(self.remote_dir)
        uploads = []
        copies = []
        for instance in self.config.instances_on(node):
            name = "{}.override.conf".format(instance.name)
            content = render_override(instance)
            uploads.append(Upload("{}/{}".format(self.remote_dir, name),
                                  content=content.encode('utf-8')))
            target = override_dir(instance.name)
            copies.append("mkdir -p {0} && cp {1}/{2} {0}/override.conf".format(
                target, login_dir, name))
        if not copies:
            return None
        command = _sudo_sh(" && ".join(copies))
        return command._replace(uploads=tuple(uploads),
                                timeout=self.stage_timeout)

    def _reload(self, node):
        return reload_command()._replace(timeout=self.stage_timeout)

    def prepare(self, work_dir: str):
        """
        Build the source and inputs archives shipped to every node.

        Runs locally before any remote action so that a missing source tree
        fails the deployment early.

        :param work_dir: Directory in which to place the archives. Required.
        :type work_dir: str
        :raises ConfigurationError: if src/, Cargo.toml or inputs/ is missing
            from source_dir.
        """
        src = join(self.source_dir, "src")
        inputs = join(self.source_dir, DEFAULT_FLEET_INPUTS_DIR)
        manifests = sorted(glob.glob(join(self.source_dir, "Cargo.*")))
        if not os.path.isdir(src):
            raise ConfigurationError("Source directory {} does not "
                                     "exist".format(src))
        if join(self.source_dir, "Cargo.toml") not in manifests:
            raise ConfigurationError("No Cargo.toml in {}".format(
                self.source_dir))
        if not os.path.isdir(inputs):
            raise ConfigurationError("Inputs directory {} does not "
                                     "exist".format(inputs))

        os.makedirs(work_dir, exist_ok=True)
        self.source_archive = join(work_dir, SOURCE_ARCHIVE)
        with tarfile.open(self.source_archive, "w:gz") as archive:
            archive.add(src, arcname="src")
            for manifest in manifests:
                archive.add(manifest, arcname=os.path.basename(manifest))
        logger.debug("Source archive: %s", self.source_archive)

        self.inputs_archive = join(work_dir, INPUTS_ARCHIVE)
        with tarfile.open(self.inputs_archive, "w:gz") as archive:
            archive.add(inputs, arcname=DEFAULT_FLEET_INPUTS_DIR)
        logger.debug("Inputs archive: %s", self.inputs_archive)

    def run(self, work_dir: str = None,
            report: FleetReport = None) -> FleetReport:
        """
        Run every active stage over the fleet, in order.

        :param work_dir: Where to build the archives when prepare() has not
            been called yet.
            Optional. (Default: blockchat_fleet.common.get_fleet_temp_dir())
        :type work_dir: str
        :param report: Report to append to.
            Optional. (Default: a new FleetReport)
        :type report: FleetReport
        :return: FleetReport
        """
        if self.source_archive is None or self.inputs_archive is None:
            if work_dir is None:
                work_dir = get_fleet_temp_dir()
                atexit.register(remove_fleet_temp_dir)
            self.prepare(work_dir)

        report = report if report is not None else FleetReport()
        nodes = self.config.nodes
        excluded = set()

        for stage in self.stages:
            active = [node for node in nodes if node.name not in excluded]
            skipped = [node.name for node in nodes if node.name in excluded]
            if skipped:
                logger.info("%s: skipping nodes that failed an earlier stage:"
                            " %s", stage.name, ', '.join(skipped))
                report.record_skipped(stage.name, skipped,
                                      "failed an earlier stage")
            logger.info("%s: running on %d node(s)", stage.name, len(active))
            results = self.executor.run_on_fleet(active, stage.command_for,
                                                 wait=True, label=stage.name)
            report.record(stage.name, results)

            failed = sorted(key for key, result in results.items()
                            if not result.ok)
            if failed:
                logger.error("%s: failed on %s", stage.name, ', '.join(failed))
                if self.failure_policy == FailurePolicy.SKIP_FAILED:
                    excluded.update(failed)

        return report
