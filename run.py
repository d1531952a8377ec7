#!/usr/bin/env python3

import sys
import os
import argparse
import logging
import datetime
import tempfile
import atexit
import shutil

# Uploading reports to S3 needs aws configuration on the orchestrator:
# ~/.aws/credentials
#[default]
#aws_access_key_id = YOUR_ACCESS_KEY
#aws_secret_access_key = YOUR_SECRET_KEY
# ~/.aws/config
#[default]
#region=us-west-2
# https://boto3.amazonaws.com/v1/documentation/api/latest/guide/quickstart.html
import boto3
import logzero

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from logzero import logger
from os.path import expanduser

from blockchat_fleet.actions.deploy import DeploymentPipeline
from blockchat_fleet.actions.lifecycle import LifecycleController
from blockchat_fleet.common import *
from blockchat_fleet.compose import dump_compose, render_compose
from blockchat_fleet.execute.execute import ParallelFabricExecutor, \
    ParallelResult
from blockchat_fleet.probes.service import bootstrap_peer_is_reachable, \
    service_is_active, services_are_active
from blockchat_fleet.report import FleetReport
from blockchat_fleet.scenario import build_fleet, resolve

ACTIONS = ['deploy', 'start', 'stop', 'status', 'compose']


# Command-line Argument Parsing
def str2bool(v):
    if v.lower() in true_list:
        return True
    elif v.lower() in false_list:
        return False
    else:
        raise argparse.ArgumentTypeError(
            'Boolean value (yes, no, true, false, y, n, 1, or 0) expected.')


LOG_LEVEL_HELP = """Logging level.
                      [LOG-LEVEL]: notset, debug, info, warning, error, critical
                      Default: info"""
levels = {
    'notset': logging.NOTSET,
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL
}


def log_level(v):
    if v.lower() in levels.keys():
        return levels[v.lower()]
    else:
        raise argparse.ArgumentTypeError(
            'Expected one of the following: {}.'.format(
                 ', '.join(levels.keys())))


def host_list(v):
    hosts = [h.strip() for h in v.split(',')]
    if not all(hosts):
        raise argparse.ArgumentTypeError(
            'Invalid host list {!r}. Expected comma separated host '
            'aliases.'.format(v))
    return hosts


def program_args():
    parser = argparse.ArgumentParser(
        description='Deploy and drive a block_chat fleet.')

    parser.add_argument('action', nargs='?', choices=ACTIONS,
                        help='deploy: clean, ship, build and install on every' \
                        ' node. start: stop whatever runs, then start helpers' \
                        ' and daemons. stop: stop every daemon. status: probe' \
                        ' every daemon. compose: print a container manifest ' \
                        'for the same topology.')

    parser.add_argument('-n', '--fleet-size', type=int,
                        default=DEFAULT_FLEET_SIZE,
                        help='Number of nodes. Default: {}'.format(
                            DEFAULT_FLEET_SIZE))

    parser.add_argument('--hosts', type=host_list, default=None,
                        help='Comma separated ssh host aliases, one per node.' \
                        ' Overrides --host-template. Default: None')

    parser.add_argument('--host-template', default=DEFAULT_FLEET_HOST_TEMPLATE,
                        help='Format string turning a node ordinal into its ' \
                        'ssh host alias. Default: {}'.format(
                            DEFAULT_FLEET_HOST_TEMPLATE))

    parser.add_argument('--10', dest='ten_nodes', action='store_true',
                        default=False, help='Run two daemon/helper pairs per ' \
                        'node (a network of twice the fleet size).')

    parser.add_argument('--unfair', action='store_true', default=False,
                        help='Node 0 stakes --elevated-staking instead of ' \
                        '--staking.')

    parser.add_argument('--partial', action='store_true', default=False,
                        help='deploy: skip installing unit files, override ' \
                        'files and reloading unit definitions.')

    parser.add_argument('--skip-failed', action='store_true', default=False,
                        help='deploy: leave a node out of the remaining ' \
                        'stages once it fails one.')

    parser.add_argument('--no-reload', dest='reload_units',
                        action='store_false', default=True,
                        help='start: do not reload unit definitions between ' \
                        'stopping and starting.')

    parser.add_argument('--detach', action='store_true', default=False,
                        help='start: return once helpers and daemons are ' \
                        'issued instead of waiting for them to exit. Their ' \
                        'ssh channels close when this script exits, so ' \
                        'foreground helpers may be killed (SIGHUP/SIGPIPE). ' \
                        'Run detached starts from nohup, screen or tmux.')

    parser.add_argument('--node', type=int, default=None,
                        help='status: probe only the node with this ordinal,' \
                        ' over a single ssh connection. Default: every node')

    parser.add_argument('--bootstrap-host', default=None,
                        help='Address other daemons use to reach node 0. ' \
                        'Default: node 0\'s host alias')

    parser.add_argument('--staking', type=int, default=DEFAULT_FLEET_STAKING,
                        help='Default: {}'.format(DEFAULT_FLEET_STAKING))

    parser.add_argument('--elevated-staking', type=int,
                        default=DEFAULT_FLEET_ELEVATED_STAKING,
                        help='Default: {}'.format(
                            DEFAULT_FLEET_ELEVATED_STAKING))

    parser.add_argument('--input-folder', default=None,
                        help='Dataset folder relative to the remote working ' \
                        'directory. Default: inputs/<network size>nodes')

    parser.add_argument('--source-dir', default='.',
                        help='Local directory containing src/, Cargo.toml and' \
                        ' inputs/. Default: .')

    parser.add_argument('--remote-dir', default=DEFAULT_FLEET_REMOTE_DIR,
                        help='Default: {}'.format(DEFAULT_FLEET_REMOTE_DIR))

    parser.add_argument('--ssh-config-file',
                        default=DEFAULT_FLEET_SSH_CONFIG_FILE,
                        help='Default: {}'.format(
                            DEFAULT_FLEET_SSH_CONFIG_FILE))

    parser.add_argument('--user', default=None,
                        help='Remote user. Default: the User of each host in' \
                        ' the ssh config file')

    parser.add_argument('--identity-file', default=None,
                        help='Private key used for every node. Default: None')

    parser.add_argument('--output', default=None,
                        help='compose: file to write the manifest to. ' \
                        'Default: stdout')

    parser.add_argument('--report', default=None,
                        help='Also write the JSON fleet report to this file.')

    parser.add_argument('--job-id', default='blockchat',
                        help='Prefix of the job directory holding archives ' \
                        'and the fleet report. Default: blockchat')

    parser.add_argument('--s3bucket', help='The name of the S3 bucket in ' \
                        'which to store the fleet report. Default: None',
                        nargs='?', const=None, default=None)

    parser.add_argument('-c', '--cleanup', type=str2bool, help='Delete the ' \
                        'job directory when this script exits? Only honoured' \
                        ' when --s3bucket is given. Default: Y',
                        nargs='?', const='Y', default='Y')

    parser.add_argument('-l', '--log-level', type=log_level, nargs='?',
                        const=logging.INFO, default=logging.INFO,
                        help=LOG_LEVEL_HELP)

    parser.add_argument('--log-file', default=None,
                        help='Also log to this file. Default: None')

    return parser


def parse_args(argv=None, parser=None):
    parser = parser or program_args()
    return parser.parse_args(args=argv)


# Clean up anything that is created by this script
def clean_up(job_dir):
    logger.info("Deleting job dir %s...", job_dir)
    shutil.rmtree(job_dir, ignore_errors=True)


def init(args):
    logzero.loglevel(args.log_level)
    if args.log_file:
        logzero.logfile(args.log_file, loglevel=args.log_level)
    logger.debug("Initializing...")
    logger.debug("args: %s", args)


def create_job_dir(job_id):
    # Get ISO 8601 formatted datetime and create a job dirname
    job_dirname = "{}-{}".format(job_id, datetime.datetime.now().isoformat())
    job_dir_path = tempfile.mkdtemp(prefix=job_dirname)
    logger.debug("Temporary Job Dir: %s", job_dir_path)
    return job_dir_path


def scenario_from_args(args):
    if args.ten_nodes and args.unfair:
        raise ConfigurationError("--10 and --unfair select different "
                                 "scenarios and cannot be combined")
    variant = Variant.STANDARD
    if args.ten_nodes:
        variant = Variant.DUAL_INSTANCE
    elif args.unfair:
        variant = Variant.UNFAIR

    nodes = build_fleet(args.fleet_size, host_template=args.host_template,
                        hosts=args.hosts)
    return resolve(nodes, variant, staking=args.staking,
                   elevated_staking=args.elevated_staking,
                   input_folder=args.input_folder,
                   bootstrap_host=args.bootstrap_host)


def ssh_config_from_args(args):
    ssh_config_file = expanduser(args.ssh_config_file)
    if not os.path.exists(ssh_config_file):
        logger.info("SSH config file %s does not exist. Using defaults.",
                    ssh_config_file)
        return None
    return ssh_config_file


def identity_file_from_args(args):
    return expanduser(args.identity_file) if args.identity_file else None


def executor_from_args(args):
    try:
        return ParallelFabricExecutor(
            ssh_config_file=ssh_config_from_args(args), user=args.user,
            identity_file=identity_file_from_args(args),
            connect_timeout=DEFAULT_FLEET_CONNECT_TIMEOUT)
    except (OSError, ValueError) as e:
        raise ConfigurationError(str(e))


def deploy(args, config, executor, job_dir):
    pipeline = DeploymentPipeline(config, executor,
                                  source_dir=args.source_dir,
                                  partial=args.partial,
                                  failure_policy=FailurePolicy.SKIP_FAILED
                                  if args.skip_failed
                                  else FailurePolicy.CONTINUE,
                                  remote_dir=args.remote_dir)
    logger.info("Deploying to %d node(s): %s", len(config.nodes),
                ', '.join(stage.name for stage in pipeline.stages))
    return pipeline.run(work_dir=job_dir)


def start(args, config, executor):
    controller = LifecycleController(config, executor,
                                     reload_units=args.reload_units,
                                     remote_dir=args.remote_dir)
    report = controller.run()
    if args.detach:
        logger.warning("Helpers and daemons issued. Not waiting for them; "
                       "their channels close when this process exits.")
        return report
    try:
        logger.info("Waiting for helpers and daemon starts to finish. "
                    "Ctrl-C to stop waiting.")
        report = controller.supervise()
    except KeyboardInterrupt:
        logger.warning("Interrupted. Closing channels; remote processes may "
                       "keep running.")
        controller.close()
    return report


def stop(args, config, executor):
    controller = LifecycleController(config, executor,
                                     remote_dir=args.remote_dir)
    controller.stop()
    return controller.report


def node_status(args, config):
    if not 0 <= args.node < len(config.nodes):
        raise ConfigurationError("--node {} is not an ordinal of a {} node "
                                 "fleet".format(args.node, len(config.nodes)))
    node = config.nodes[args.node]
    active = {}
    for instance in config.instances_on(node):
        try:
            active[instance.key] = service_is_active(
                node, instance.name, ssh_config_file=ssh_config_from_args(args),
                user=args.user, identity_file=identity_file_from_args(args))
        except (OSError, RuntimeError) as e:
            logger.error("%s: probe failed: %s", instance.key, e)
            active[instance.key] = False
    return active


def status(args, config, executor):
    report = FleetReport()
    if args.node is not None:
        active = node_status(args, config)
    else:
        active = services_are_active(config, executor)
    instances = [instance for instance in config.instances
                 if instance.key in active]
    report.record('status', {
        instance.key: ParallelResult(
            instance.key, instance.node.address,
            0 if active[instance.key] else 3, '', '',
            None if active[instance.key] else 'not active')
        for instance in instances})
    if not bootstrap_peer_is_reachable(config):
        logger.info("Bootstrap peer %s is not reachable from here",
                    config.topology.bootstrap_peer_socket)
    return report


def compose(args, config):
    document = dump_compose(render_compose(config.topology.network_size))
    if args.output:
        with open(args.output, 'w') as outfile:
            outfile.write(document)
        logger.info("Compose manifest written to %s", args.output)
    else:
        sys.stdout.write(document)


def upload(report_file, s3bucket, job_dir):
    # Upload results to S3
    key = "{}/{}".format(os.path.basename(job_dir),
                         os.path.basename(report_file))
    boto3.client('s3').upload_file(report_file, s3bucket, key)
    return key


def process_results(report, job_dir, args):
    report.log_summary()
    report_file = os.path.join(job_dir, "report.json")
    report.write(report_file)
    if args.report:
        report.write(args.report)

    if args.s3bucket:
        try:
            key = upload(report_file, args.s3bucket, job_dir)
            logger.info("Fleet report uploaded to s3://%s/%s", args.s3bucket,
                        key)
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            logger.error("Failed to upload fleet report to %s", args.s3bucket)
            logger.exception(e)
    else:
        logger.info("Fleet report can be found in %s", report_file)


def main(argv=None):
    parser = program_args()
    args = parse_args(argv, parser)

    if not args.action:
        parser.print_usage(sys.stderr)
        sys.stderr.write("{}: error: an action is required\n".format(
            parser.prog))
        return 1

    try:
        init(args)
    except Exception:
        logger.error('Unable to initialize script')
        raise

    try:
        config = scenario_from_args(args)
    except ConfigurationError as e:
        logger.error("Invalid scenario: %s", e)
        return 1

    if args.action == 'compose':
        compose(args, config)
        return 0

    job_dir = create_job_dir(args.job_id)

    # The cleanup argument is overriden to False if an s3bucket argument is not
    # given. Doing so preserves the fleet report.
    if not args.s3bucket and args.cleanup:
        args.cleanup = False
    if args.cleanup:
        atexit.register(clean_up, job_dir)

    try:
        executor = executor_from_args(args)
        if args.action == 'deploy':
            report = deploy(args, config, executor, job_dir)
        elif args.action == 'start':
            report = start(args, config, executor)
        elif args.action == 'stop':
            report = stop(args, config, executor)
        else:
            report = status(args, config, executor)
    except (ConfigurationError, OrderingViolation) as e:
        logger.error("%s aborted: %s", args.action, e)
        return 1

    process_results(report, job_dir, args)
    try:
        report.raise_for_failures()
    except RemoteExecutionError as e:
        logger.error("%s finished with failures: %s", args.action, e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
