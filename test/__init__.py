import os
import threading
import time
from contextlib import contextmanager

from blockchat_fleet.execute.execute import ParallelFabricExecutor, \
    ParallelResult, Result


@contextmanager
def patch(owner, attr, value):
    """Monkey patch context manager.

    with patch(os, 'open', myopen):
        ...
    """
    old = getattr(owner, attr)
    setattr(owner, attr, value)
    try:
        yield getattr(owner, attr)
    finally:
        setattr(owner, attr, old)


class FakePromise(object):
    def __init__(self, result, release=None):
        self.result = result
        self.release = release

    def join(self):
        if self.release is not None:
            self.release.wait()
        return self.result


class RecordingExecutor(ParallelFabricExecutor):
    """
    A ParallelFabricExecutor that never reaches a host.

    Every task is recorded in 'events' as (sequence, kind, label, key):
    'start' and 'end' around barrier tasks, 'issue' for dispatched ones.

    fails(label, key) decides which tasks exit with 1. Keys in 'unreachable'
    fail as if the connection could not be opened. With hold=True dispatched
    tasks keep running until 'release' is set.
    """
    def __init__(self, fails=None, unreachable=(), delay=0.0, hold=False):
        super().__init__()
        self.fails = fails or (lambda label, key: False)
        self.unreachable = set(unreachable)
        self.delay = delay
        self.release = threading.Event()
        if not hold:
            self.release.set()
        self.events = []
        self.commands = {}
        self.label = None
        self._seq = 0
        self._record_lock = threading.Lock()

    def _record(self, kind, task):
        with self._record_lock:
            self._seq += 1
            self.events.append((self._seq, kind, self.label, task.key))
            self.commands[(self.label, task.key)] = task.command

    def execute(self, tasks, label=None):
        self.label = label
        return super().execute(tasks, label=label)

    def dispatch(self, tasks, label=None):
        self.label = label
        return super().dispatch(tasks, label=label)

    def _run_task(self, task):
        self._record('start', task)
        if self.delay:
            time.sleep(self.delay)
        if task.key in self.unreachable:
            result = ParallelResult(task.key, task.host, None, '', '',
                                    'connection refused')
        elif self.fails(self.label, task.key):
            result = ParallelResult(task.key, task.host, 1, '', 'boom\n', None)
        else:
            result = ParallelResult(task.key, task.host, 0, '', '', None)
        self._record('end', task)
        return result

    def _start_task(self, task):
        if task.key in self.unreachable:
            raise OSError('connection refused')
        self._record('issue', task)
        rc = 1 if self.fails(self.label, task.key) else 0
        return None, FakePromise(Result(rc, '', ''), self.release)

    def keys(self, kind, label):
        return [key for _, k, l, key in self.events if k == kind and l == label]

    def sequence(self, kind, label):
        return [seq for seq, k, l, _ in self.events if k == kind and l == label]


def make_source_tree(root):
    """A minimal block_chat checkout: src/, Cargo.* and inputs/."""
    os.makedirs(os.path.join(root, 'src', 'bin'))
    with open(os.path.join(root, 'src', 'lib.rs'), 'w') as f:
        f.write('pub mod protocol;\n')
    with open(os.path.join(root, 'Cargo.toml'), 'w') as f:
        f.write('[package]\nname = "block_chat"\n')
    with open(os.path.join(root, 'Cargo.lock'), 'w') as f:
        f.write('version = 3\n')
    for count in (5, 10):
        folder = os.path.join(root, 'inputs', '{}nodes'.format(count))
        os.makedirs(folder)
        with open(os.path.join(folder, 'trans0.txt'), 'w') as f:
            f.write('id1 hello\n')
    return root
