"""
Fleet report: the outcome of every task of every stage of a run.

Remote failures are isolated to their node and never abort a stage, so this
report is the only place a partial failure becomes visible.
"""
import json
from collections import OrderedDict, namedtuple
from logzero import logger
from typing import Dict, Iterable, List

from blockchat_fleet.common import RemoteExecutionError
from blockchat_fleet.execute.execute import DispatchHandle, ParallelResult

OK = 'ok'
FAILED = 'failed'
DISPATCHED = 'dispatched'
SKIPPED = 'skipped'

StageOutcome = namedtuple('StageOutcome', ['stage', 'key', 'host', 'status',
                                           'return_code', 'error'])


def _outcome(stage: str, result: ParallelResult) -> StageOutcome:
    status = OK if result.ok else FAILED
    error = result.error
    if error is None and not result.ok:
        error = (result.stderr or '').strip() or \
                "exited with {}".format(result.return_code)
    return StageOutcome(stage, result.key, result.host, status,
                        result.return_code, error)


class FleetReport(object):
    def __init__(self):
        self._stages = OrderedDict()

    @property
    def stages(self) -> List[str]:
        return list(self._stages.keys())

    def outcomes(self, stage: str = None) -> List[StageOutcome]:
        if stage is not None:
            return list(self._stages.get(stage, {}).values())
        return [o for entries in self._stages.values()
                for o in entries.values()]

    def _entries(self, stage):
        return self._stages.setdefault(stage, OrderedDict())

    def record(self, stage: str, results: Dict[str, ParallelResult]):
        entries = self._entries(stage)
        for key in sorted(results):
            entries[key] = _outcome(stage, results[key])

    def record_dispatch(self, stage: str, handle: DispatchHandle):
        entries = self._entries(stage)
        failed = handle.failed
        for task in handle.tasks:
            if task.key in failed:
                entries[task.key] = _outcome(stage, failed[task.key])
            else:
                entries[task.key] = StageOutcome(stage, task.key, task.host,
                                                 DISPATCHED, None, None)

    def record_skipped(self, stage: str, keys: Iterable[str], reason: str):
        entries = self._entries(stage)
        for key in keys:
            entries[key] = StageOutcome(stage, key, None, SKIPPED, None,
                                        reason)

    def update_from(self, stage: str, results: Dict[str, ParallelResult]):
        """
        Replace 'dispatched' entries with the final results of supervised
        long-running tasks.
        """
        entries = self._entries(stage)
        for key, result in results.items():
            if key in entries and entries[key].status == DISPATCHED:
                entries[key] = _outcome(stage, result)

    def failures(self, stage: str = None) -> List[StageOutcome]:
        return [o for o in self.outcomes(stage) if o.status == FAILED]

    def failed_keys(self, stage: str = None) -> List[str]:
        return sorted({o.key for o in self.failures(stage)})

    @property
    def ok(self) -> bool:
        return not self.failures()

    def raise_for_failures(self):
        """
        :raises RemoteExecutionError: if any task of any stage failed.
        """
        failures = self.failures()
        if failures:
            raise RemoteExecutionError(
                "{} task(s) failed on {}".format(
                    len(failures), ', '.join(self.failed_keys())),
                failures)

    def as_dict(self):
        return OrderedDict(
            (stage, [o._asdict() for o in entries.values()])
            for stage, entries in self._stages.items())

    def write(self, path: str):
        with open(path, 'w') as outfile:
            json.dump(self.as_dict(), outfile, indent=2)
        logger.debug("Fleet report written to %s", path)

    def log_summary(self):
        for stage, entries in self._stages.items():
            counts = OrderedDict()
            for o in entries.values():
                counts[o.status] = counts.get(o.status, 0) + 1
            logger.info("%s: %s", stage, ', '.join(
                "{} {}".format(n, status) for status, n in counts.items()))
            for o in entries.values():
                if o.status == FAILED:
                    logger.error("%s: %s failed (rc: %s): %s", stage, o.key,
                                 o.return_code, o.error)
