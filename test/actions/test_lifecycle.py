import pytest

from blockchat_fleet.actions.lifecycle import *
from blockchat_fleet.common import OrderingViolation, Variant
from blockchat_fleet.report import DISPATCHED, FAILED, OK
from blockchat_fleet.scenario import build_fleet, resolve
from test import RecordingExecutor


def controller_for(executor, size=5, variant=Variant.STANDARD, **kwargs):
    return LifecycleController(resolve(build_fleet(size), variant), executor,
                               **kwargs)


@pytest.mark.parametrize('size', [1, 3, 5])
@pytest.mark.parametrize('variant', list(Variant))
def test_every_helper_is_issued_before_any_daemon(size, variant):
    executor = RecordingExecutor()
    controller = controller_for(executor, size, variant)
    controller.run()

    helpers = executor.sequence('issue', START_HELPERS)
    daemons = executor.sequence('issue', START_DAEMONS)
    assert len(helpers) == len(controller.config.instances)
    assert len(daemons) == len(controller.config.instances)
    assert max(helpers) < min(daemons)


def test_end_to_end_standard_five_nodes():
    executor = RecordingExecutor(delay=0.005)
    controller = controller_for(executor)
    report = controller.run()

    assert report.stages == [STOP, RELOAD_UNITS, START_HELPERS, START_DAEMONS]
    assert controller.state == LifecycleState.RUNNING
    # stop and reload are barriers
    assert max(executor.sequence('end', STOP)) < \
        min(executor.sequence('start', RELOAD_UNITS))
    assert max(executor.sequence('end', RELOAD_UNITS)) < \
        min(executor.sequence('issue', START_HELPERS))

    expected = ['node{}/block_chat'.format(i) for i in range(5)]
    assert sorted(executor.keys('issue', START_HELPERS)) == expected
    assert sorted(executor.keys('issue', START_DAEMONS)) == expected
    assert all(o.status == DISPATCHED
               for o in report.outcomes(START_DAEMONS))


def test_stop_targets_both_units_on_every_node():
    executor = RecordingExecutor()
    controller = controller_for(executor, size=2)
    controller.stop()

    assert sorted(executor.keys('start', STOP)) == [
        'node0/block_chat', 'node0/block_chat_2',
        'node1/block_chat', 'node1/block_chat_2']
    command = executor.commands[(STOP, 'node1/block_chat_2')]
    assert command.as_sudo
    assert 'systemctl stop block_chat_2' in command.command
    assert controller.state == LifecycleState.STOPPED


def test_dual_instance_interleaves_instances():
    executor = RecordingExecutor()
    controller = controller_for(executor, size=2,
                                variant=Variant.DUAL_INSTANCE)
    controller.run()

    assert sorted(executor.keys('issue', START_DAEMONS)) == [
        'node0/block_chat', 'node0/block_chat_2',
        'node1/block_chat', 'node1/block_chat_2']
    helper = executor.commands[(START_HELPERS, 'node1/block_chat_2')].command
    assert 'export DAEMON_SOCKET=127.0.0.1:27739' in helper
    assert 'export INPUT_FOLDER=inputs/4nodes' in helper
    daemon = executor.commands[(START_DAEMONS, 'node1/block_chat_2')]
    assert daemon.command == 'systemctl start block_chat_2'


def test_unfair_helper_stakes_more_on_node_zero():
    executor = RecordingExecutor()
    controller = LifecycleController(
        resolve(build_fleet(3), Variant.UNFAIR, elevated_staking=100),
        executor)
    controller.run()

    def helper(key):
        return executor.commands[(START_HELPERS, key)].command

    assert 'export FIXED_STAKING=100' in helper('node0/block_chat')
    assert 'export FIXED_STAKING=10 ' in helper('node1/block_chat')
    assert helper('node2/block_chat').startswith('cd ~/block_chat && ')
    assert helper('node2/block_chat').endswith('./target/release/helper')


def test_daemons_cannot_start_before_helpers():
    executor = RecordingExecutor()
    controller = controller_for(executor)
    with pytest.raises(OrderingViolation):
        controller.start_daemons()

    controller.stop()
    controller.reload_units()
    with pytest.raises(OrderingViolation):
        controller.start_daemons()
    assert executor.keys('issue', START_DAEMONS) == []


def test_illegal_transitions():
    executor = RecordingExecutor()
    controller = controller_for(executor)
    with pytest.raises(OrderingViolation):
        controller.start_helpers()
    with pytest.raises(OrderingViolation):
        controller.reload_units()

    controller.stop()
    # reload is required unless disabled
    with pytest.raises(OrderingViolation):
        controller.start_helpers()


def test_run_without_reload():
    executor = RecordingExecutor()
    controller = controller_for(executor, reload_units=False)
    report = controller.run()
    assert report.stages == [STOP, START_HELPERS, START_DAEMONS]
    assert executor.keys('start', RELOAD_UNITS) == []


def test_failed_helper_issue_does_not_hold_back_the_run():
    executor = RecordingExecutor(unreachable=['node3/block_chat'])
    controller = controller_for(executor)
    report = controller.run()

    assert controller.state == LifecycleState.RUNNING
    assert 'node3/block_chat' in report.failed_keys(START_HELPERS)
    assert len(executor.keys('issue', START_DAEMONS)) == 4


def test_supervise_records_how_processes_ended():
    executor = RecordingExecutor(
        hold=True, fails=lambda label, key: label == START_HELPERS and
        key == 'node1/block_chat')
    controller = controller_for(executor, size=2)
    controller.run()
    assert controller.helpers.is_done() is False

    executor.release.set()
    report = controller.supervise(timeout=5)
    outcomes = {o.key: o.status for o in report.outcomes(START_HELPERS)}
    assert outcomes == {'node0/block_chat': OK, 'node1/block_chat': FAILED}


def test_restart_closes_previous_channels():
    executor = RecordingExecutor(hold=True)
    controller = controller_for(executor, size=1)
    controller.run()
    helpers = controller.helpers

    controller.stop()
    assert helpers.join(timeout=0.01)['node0/block_chat'].error == \
        'channel closed'
    executor.release.set()
