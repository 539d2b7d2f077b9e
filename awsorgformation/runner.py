"""
Run a set of dependent tasks with bounded concurrency.

A task runner works in passes.  Each pass splits the remaining tasks
into ready and deferred ones, launches at most 'max_concurrent_tasks'
ready tasks on their own threads and waits for all of them before the
next pass starts.  Tasks only need 'is_dependency(other)' and 'run()'
plus the runtime flags done/failed/running/skipped.
"""

import threading

from awsorgformation.errors import (
    CircularDependencyError,
    DependencyOnSelfError,
    FailureToleranceExceededError,
)
from awsorgformation.utils import perform_and_retry_if_needed


class TaskRunnerDelegate(object):
    """Callbacks used by run_tasks().  Subclasses format the log lines."""

    def __init__(self, log, max_concurrent_tasks=1, failed_tasks_tolerance=0):
        self.log = log
        self.max_concurrent_tasks = max(1, max_concurrent_tasks)
        self.failed_tasks_tolerance = failed_tasks_tolerance

    def perform(self, task):
        self.log.debug("start executing {}".format(self.describe(task)))
        return perform_and_retry_if_needed(task.run, self.log)

    def describe(self, task):
        return repr(task)

    def on_task_ran_successfully(self, task):
        self.log.info("{} done".format(self.describe(task)))

    def on_task_ran_failed(self, task, err):
        self.log.error("failed executing {}. Reason: {}".format(self.describe(task), err))

    def on_task_skipped_because_dependency_failed(self, task):
        self.log.error("skip executing {}. Reason: dependency has failed.".format(
                self.describe(task)))

    def throw_dependency_on_self(self, task):
        raise DependencyOnSelfError(
                "{} has a dependency on itself".format(self.describe(task)), task)

    def throw_circular_dependency(self, tasks):
        raise CircularDependencyError("circular dependency between tasks: {}".format(
                ', '.join(self.describe(t) for t in tasks)), tasks)

    def on_failure_tolerance_exceeded(self, failed, tolerance):
        raise FailureToleranceExceededError(failed, tolerance)


def perform_task(task, delegate):
    task.running = True
    try:
        delegate.perform(task)
    except Exception as e:
        task.done = True
        task.failed = True
        task.running = False
        delegate.on_task_ran_failed(task, e)
        return
    task.done = True
    task.failed = False
    task.running = False
    delegate.on_task_ran_successfully(task)


def run_tasks(tasks, delegate):
    """
    Run 'tasks' to completion.  Return the number of failed tasks, which
    never exceeds the delegate's failed_tasks_tolerance.
    """
    tasks = list(tasks)
    for task in tasks:
        if task.is_dependency(task):
            delegate.throw_dependency_on_self(task)
    remaining = tasks
    failed = 0
    while remaining:
        deferred = []
        launched = []
        skipped = 0
        for task in remaining:
            if any(task.is_dependency(other) for other in remaining):
                deferred.append(task)
                continue
            if any(other.failed and task.is_dependency(other) for other in tasks):
                task.done = True
                task.failed = True
                task.skipped = True
                skipped += 1
                delegate.on_task_skipped_because_dependency_failed(task)
                continue
            if len(launched) >= delegate.max_concurrent_tasks:
                deferred.append(task)
                continue
            thread = threading.Thread(target=perform_task, args=(task, delegate))
            thread.daemon = True
            launched.append(thread)
            thread.start()

        if not launched and not skipped and deferred:
            delegate.throw_circular_dependency(deferred)

        for thread in launched:
            thread.join()

        failed = len([t for t in tasks if t.failed])
        if failed > delegate.failed_tasks_tolerance:
            delegate.on_failure_tolerance_exceeded(failed, delegate.failed_tasks_tolerance)
        remaining = deferred
    return failed


class OrganizationTaskRunner(TaskRunnerDelegate):

    def describe(self, task):
        return "{} {} {}".format(task.type, task.logical_id, task.action)

    def on_task_ran_successfully(self, task):
        line = "{:<29} | {:<29} | {}".format(task.type, task.logical_id, task.action)
        if task.result:
            line += " ({})".format(task.result)
        self.log.info(line)

    def on_task_ran_failed(self, task, err):
        self.log.error("failed executing task: {} {} {}. Reason: {}".format(
                task.action, task.type, task.logical_id, err))

    @classmethod
    def run_tasks(cls, log, graph, max_concurrent_tasks=1, failed_tasks_tolerance=0):
        delegate = cls(log, max_concurrent_tasks, failed_tasks_tolerance)
        return run_tasks(graph, delegate)


class CfnTaskRunner(TaskRunnerDelegate):

    def __init__(self, log, stack_name, max_concurrent_tasks=1, failed_tasks_tolerance=0):
        super().__init__(log, max_concurrent_tasks, failed_tasks_tolerance)
        self.stack_name = stack_name

    def describe(self, task):
        return "stack {} in account {} ({})".format(task.stack_name, task.account_id, task.region)

    def on_task_ran_successfully(self, task):
        what = 'deleted from' if task.action == 'Delete' else 'updated in'
        self.log.info("stack {} successfully {} {}/{}.".format(
                task.stack_name, what, task.account_id, task.region))

    def throw_circular_dependency(self, tasks):
        targets = ['{}/{}'.format(t.account_id, t.region) for t in tasks]
        raise CircularDependencyError("circular dependency on stack {} for targets {}".format(
                self.stack_name, ', '.join(targets)), tasks)

    @classmethod
    def run_tasks(cls, log, tasks, stack_name, max_concurrent_tasks=1, failed_tasks_tolerance=0):
        delegate = cls(log, stack_name, max_concurrent_tasks, failed_tasks_tolerance)
        return run_tasks(tasks, delegate)
