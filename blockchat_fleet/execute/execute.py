import abc
import io
import os
import threading

from collections import namedtuple

from logzero import logger
from multiprocessing import Process, Queue
from queue import Empty

from fabric import Connection, Config
from paramiko import AuthenticationException

from typing import Callable, Dict, Iterable, List, Union

Result = namedtuple('Result', ['return_code', 'stdout', 'stderr'])


class ParallelResult(namedtuple('ParallelResult', ['key', 'host', 'return_code',
                                                   'stdout', 'stderr',
                                                   'error'])):
    """
    Outcome of one task of a fleet fan-out.

    return_code is None when the command never completed (channel failure,
    connection refused, channel closed before the remote process exited).
    """
    __slots__ = ()

    @property
    def ok(self):
        return self.error is None and self.return_code == 0


# A file placed on the remote host before the command runs. Either 'local'
# (a path on this machine) or 'content' (bytes) must be given. 'remote' is
# relative to the remote user's home directory unless absolute.
Upload = namedtuple('Upload', ['remote', 'local', 'content'])
Upload.__new__.__defaults__ = (None, None)

RemoteCommand = namedtuple('RemoteCommand', ['command', 'as_sudo', 'uploads',
                                             'timeout'])
RemoteCommand.__new__.__defaults__ = (False, (), None)

# One unit of work in a fan-out: run 'command' on 'host' and report it under
# 'key'. Keys are unique within a fan-out, hosts need not be.
Task = namedtuple('Task', ['key', 'host', 'command'])


def as_remote_command(command: Union[str, RemoteCommand]) -> RemoteCommand:
    if isinstance(command, RemoteCommand):
        return command
    if isinstance(command, str):
        return RemoteCommand(command)
    raise ValueError("command must be a string or a RemoteCommand")


def remote_path(path: str) -> str:
    """
    SFTP does not expand '~'. Paths under the home directory are sent
    relative to it.
    """
    if path.startswith("~/"):
        return path[2:]
    return path


class RemoteExecutor(metaclass=abc.ABCMeta):

    def execute(self, host: str, action: Union[str, RemoteCommand],
                user: str = None, **kwargs):
        rtn = self._execute_on_host(host, as_remote_command(action),
                                    user=user, **kwargs)
        return rtn

    @abc.abstractmethod
    def _execute_on_host(self, host: str, action: RemoteCommand,
                         user: str = None) -> Result:
        raise NotImplementedError('users must define _execute_on_host to use this base class')


def _put_uploads(c, action: RemoteCommand):
    for upload in action.uploads:
        logger.debug("%s: uploading %s", c.host, upload.remote)
        if upload.content is not None:
            c.put(io.BytesIO(upload.content), remote=remote_path(upload.remote))
        elif upload.local is not None:
            c.put(upload.local, remote=remote_path(upload.remote))
        else:
            raise ValueError("upload to {} has neither a local path nor "
                             "content".format(upload.remote))


def _invoke(c, action: RemoteCommand, **kwargs):
    if action.timeout is not None and not kwargs.get('asynchronous'):
        kwargs['timeout'] = action.timeout
    if action.as_sudo:
        return c.sudo(action.command, hide=True, warn=True, **kwargs)
    return c.run(action.command, hide=True, warn=True, **kwargs)


class FabricExecutor(RemoteExecutor):
    @staticmethod
    def _multiprocess_execute_on_host(q, host, action, ssh_config_file=None,
                                      user=None, connect_kwargs=None):
        config = FabricExecutor._create_config(ssh_config_file=ssh_config_file)
        with Connection(host, config=config, user=user,
                        connect_kwargs=connect_kwargs) as c:
            _put_uploads(c, action)
            rtn = _invoke(c, action)
            q.put(Result(rtn.return_code, rtn.stdout, rtn.stderr))

    config = None
    ssh_config_file = None

    def __init__(self, ssh_config_file=None):
        self.ssh_config_file = ssh_config_file
        self.config = FabricExecutor._create_config(ssh_config_file=ssh_config_file)

    @staticmethod
    def _create_config(ssh_config_file=None):
        if ssh_config_file:
            FabricExecutor._is_readable_file(ssh_config_file, 'ssh_config')
        return Config(runtime_ssh_path=ssh_config_file)

    @staticmethod
    def _is_readable_file(path, file_kind):
        if not isinstance(path, str):
            raise ValueError("path to file must be a string")

        if os.access(path, os.R_OK):
            if os.path.isfile(path):
                return
            else:
                raise OSError("Path is not to a file -- '%s'" % str(path))
        else:
            raise OSError("Unable to access the file (not readable) -- %s -- '%s'" % (file_kind, path))

    @staticmethod
    def _collect_connect_kwargs(identity_file):
        connect_kwargs = {}

        if identity_file:
            FabricExecutor._is_readable_file(identity_file, 'identity_file')
            connect_kwargs['key_filename'] = identity_file

        if not connect_kwargs:
            connect_kwargs = None

        return connect_kwargs

    def _execute_on_host(self, host: str, action: RemoteCommand,
                         user: str = None, identity_file=None,
                         timeout=10) -> Result:
        connect_kwargs = self._collect_connect_kwargs(identity_file)

        p = None
        q = Queue()
        try:
            # Running execution in a subprocess - Did this to avoid errors in paramiko clean up.
            p = Process(target=FabricExecutor._multiprocess_execute_on_host,
                        args=(q, host, action, self.ssh_config_file),
                        kwargs={'user': user,
                                "connect_kwargs": connect_kwargs})
            p.start()
            p.join(timeout=timeout)
            if p.is_alive():
                raise RuntimeError("Remote execution has exceeded timeout")
            rtn = q.get(timeout=0.1)
        except AuthenticationException as e:
            raise e
        except Empty:
            raise RuntimeError("Remote execution did not provide results")
        finally:
            if p:
                p.terminate()

        return rtn


class DispatchHandle(object):
    """
    Supervision handle for a fire-and-forget fan-out.

    The handle is returned once every command has been issued to its remote
    channel. Issued is not exited: the remote processes are expected to be
    long running. Each task keeps its channel open in a daemon thread until
    the remote process exits, so results can be inspected later with
    is_done() and join().

    Dropping the channels (close(), or the orchestrator going away) does not
    guarantee that the remote process terminates.
    """
    def __init__(self, tasks: List[Task]):
        self.tasks = list(tasks)
        self._issued = {task.key: threading.Event() for task in self.tasks}
        self._issue_errors = {}
        self._results = {}
        self._connections = {}
        self._threads = {}
        self._lock = threading.Lock()

    def _mark_issued(self, key, connection=None):
        with self._lock:
            if connection is not None:
                self._connections[key] = connection
        self._issued[key].set()

    def _mark_issue_failed(self, result: ParallelResult):
        with self._lock:
            self._issue_errors[result.key] = result
            self._results.setdefault(result.key, result)
        self._issued[result.key].set()

    def _complete(self, result: ParallelResult):
        with self._lock:
            self._results.setdefault(result.key, result)

    def wait_issued(self):
        for event in self._issued.values():
            event.wait()

    def all_issued(self) -> bool:
        """True once every task was issued or failed to be issued."""
        return all(event.is_set() for event in self._issued.values())

    @property
    def dispatched(self) -> List[str]:
        """Keys whose command reached its remote channel."""
        return [task.key for task in self.tasks
                if self._issued[task.key].is_set() and
                task.key not in self._issue_errors]

    @property
    def failed(self) -> Dict[str, ParallelResult]:
        """Tasks that could not be issued or that finished unsuccessfully."""
        with self._lock:
            return {key: result for key, result in self._results.items()
                    if not result.ok}

    def is_done(self) -> bool:
        return not any(thread.is_alive() for thread in self._threads.values())

    def join(self, timeout: float = None) -> Dict[str, ParallelResult]:
        """
        Wait up to 'timeout' seconds per task for remote processes to exit.

        :return: Results of the tasks that have finished so far.
        """
        for thread in self._threads.values():
            thread.join(timeout)
        with self._lock:
            return dict(self._results)

    def close(self):
        """
        Drop every channel still open. Unfinished tasks are reported with
        error 'channel closed'.
        """
        with self._lock:
            for task in self.tasks:
                if task.key not in self._results:
                    self._results[task.key] = ParallelResult(
                        task.key, task.host, None, '', '', 'channel closed')
            connections = list(self._connections.values())
        for c in connections:
            try:
                c.close()
            except Exception as e:
                logger.debug("Error while closing channel: %s", e)


class ParallelFabricExecutor(FabricExecutor):
    """
    Runs a set of tasks concurrently, one thread per task.

    A failed task never cancels or blocks the others, and nothing is
    retried.
    """
    def __init__(self, ssh_config_file=None, user: str = None,
                 identity_file: str = None, connect_timeout: int = 60):
        super().__init__(ssh_config_file=ssh_config_file)
        self.user = user
        self.connect_timeout = connect_timeout
        self.connect_kwargs = self._collect_connect_kwargs(identity_file)

    def _connect(self, host: str) -> Connection:
        return Connection(host, config=self.config, user=self.user,
                          connect_timeout=self.connect_timeout,
                          connect_kwargs=self.connect_kwargs)

    def _run_task(self, task: Task) -> ParallelResult:
        action = as_remote_command(task.command)
        try:
            with self._connect(task.host) as c:
                _put_uploads(c, action)
                rtn = _invoke(c, action)
        except Exception as e:
            logger.error("%s: remote execution failed: %s", task.key, e)
            return ParallelResult(task.key, task.host, None, '', '', str(e))
        return ParallelResult(task.key, task.host, rtn.return_code, rtn.stdout,
                              rtn.stderr, None)

    def _start_task(self, task: Task):
        """
        Open a connection and start the command without waiting for it.

        :return: (connection, promise)
        """
        action = as_remote_command(task.command)
        c = self._connect(task.host)
        try:
            _put_uploads(c, action)
            promise = _invoke(c, action, asynchronous=True)
        except Exception:
            c.close()
            raise
        return c, promise

    def _supervise(self, handle: DispatchHandle, task: Task):
        try:
            c, promise = self._start_task(task)
        except Exception as e:
            logger.error("%s: failed to issue command: %s", task.key, e)
            handle._mark_issue_failed(
                ParallelResult(task.key, task.host, None, '', '', str(e)))
            return
        handle._mark_issued(task.key, c)
        logger.debug("%s: command issued", task.key)
        try:
            rtn = promise.join()
            handle._complete(ParallelResult(task.key, task.host,
                                            rtn.return_code, rtn.stdout,
                                            rtn.stderr, None))
        except Exception as e:
            handle._complete(ParallelResult(task.key, task.host, None, '', '',
                                            str(e)))
        finally:
            if c is not None:
                c.close()

    def execute(self, tasks: Iterable[Task],
                label: str = None) -> Dict[str, ParallelResult]:
        """
        Run every task to completion (a barrier).

        label only names the fan-out in log messages.

        :return: {task key: ParallelResult}
        """
        tasks = list(tasks)
        logger.debug('%s: execute on hosts: %s', label or 'fleet',
                     [task.host for task in tasks])
        results = {}
        lock = threading.Lock()

        def work(task):
            result = self._run_task(task)
            with lock:
                results[task.key] = result

        threads = [threading.Thread(target=work, args=(task,),
                                    name="task-{}".format(task.key))
                   for task in tasks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for task in tasks:
            result = results[task.key]
            if not result.ok:
                logger.error("%s: rc: %s error: %s stderr: %s", task.key,
                             result.return_code, result.error,
                             result.stderr.strip())
        return results

    def dispatch(self, tasks: Iterable[Task],
                 label: str = None) -> DispatchHandle:
        """
        Issue every task without waiting for the remote processes to exit.

        Returns once each command is issued to its channel, or failed to be.
        """
        handle = DispatchHandle(tasks)
        logger.debug('%s: dispatch on hosts: %s', label or 'fleet',
                     [task.host for task in handle.tasks])
        for task in handle.tasks:
            thread = threading.Thread(target=self._supervise,
                                      args=(handle, task),
                                      name="dispatch-{}".format(task.key),
                                      daemon=True)
            handle._threads[task.key] = thread
            thread.start()
        handle.wait_issued()
        return handle

    def run_on_fleet(self, nodes, command_for: Callable, wait: bool = True,
                     label: str = None):
        """
        Render command_for(node) for every node and run it on the fleet.

        command_for may return None for nodes with nothing to do.

        :return: {node name: ParallelResult} when wait is True, otherwise a
            DispatchHandle.
        """
        tasks = []
        for node in nodes:
            command = command_for(node)
            if command is None:
                continue
            tasks.append(Task(node.name, node.address,
                              as_remote_command(command)))
        if wait:
            return self.execute(tasks, label=label)
        return self.dispatch(tasks, label=label)
