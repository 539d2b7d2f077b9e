import threading
import time

import pytest

from awsorgformation.errors import (
    CircularDependencyError,
    DependencyOnSelfError,
    FailureToleranceExceededError,
)
from awsorgformation.runner import TaskRunnerDelegate, run_tasks


class FakeTask(object):

    def __init__(self, name, depends_on=None, fail=False, delay=0, tracker=None):
        self.name = name
        self.depends_on = depends_on or []
        self.fail = fail
        self.delay = delay
        self.tracker = tracker
        self.calls = 0
        self.done = False
        self.failed = False
        self.running = False
        self.skipped = False

    def is_dependency(self, other):
        return other in self.depends_on

    def run(self):
        self.calls += 1
        if self.tracker:
            self.tracker.enter()
        try:
            time.sleep(self.delay)
            if self.fail:
                raise RuntimeError('{} failed'.format(self.name))
        finally:
            if self.tracker:
                self.tracker.leave()

    def __repr__(self):
        return self.name


class ConcurrencyTracker(object):

    def __init__(self):
        self.lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def enter(self):
        with self.lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def leave(self):
        with self.lock:
            self.current -= 1


@pytest.fixture
def delegate(log):
    def make(max_concurrent_tasks=1, failed_tasks_tolerance=0):
        return TaskRunnerDelegate(log, max_concurrent_tasks, failed_tasks_tolerance)
    return make


def test_runs_independent_tasks(delegate):
    tasks = [FakeTask(str(n)) for n in range(3)]
    assert run_tasks(tasks, delegate()) == 0
    assert all(t.done and not t.failed for t in tasks)
    assert [t.calls for t in tasks] == [1, 1, 1]


def test_concurrency_is_bounded(delegate):
    tracker = ConcurrencyTracker()
    tasks = [FakeTask(str(n), delay=0.05, tracker=tracker) for n in range(5)]
    assert run_tasks(tasks, delegate(max_concurrent_tasks=2)) == 0
    assert tracker.peak == 2
    assert all(t.done for t in tasks)


def test_dependency_runs_first(delegate):
    order = []
    first = FakeTask('first')
    second = FakeTask('second', depends_on=[first])
    first.run = lambda: order.append('first')
    second.run = lambda: order.append('second')
    run_tasks([second, first], delegate(max_concurrent_tasks=5))
    assert order == ['first', 'second']


def test_failed_dependency_skips_dependents(delegate):
    a = FakeTask('a', fail=True)
    b = FakeTask('b', depends_on=[a])
    c = FakeTask('c', depends_on=[b])
    assert run_tasks([a, b, c], delegate(failed_tasks_tolerance=10)) == 3
    assert b.skipped and c.skipped
    assert b.calls == 0 and c.calls == 0
    assert not a.skipped


def test_failure_within_tolerance(delegate):
    tasks = [FakeTask('a', fail=True), FakeTask('b')]
    assert run_tasks(tasks, delegate(failed_tasks_tolerance=1)) == 1
    assert tasks[1].done and not tasks[1].failed


def test_failure_tolerance_exceeded(delegate):
    tasks = [FakeTask('a', fail=True), FakeTask('b', fail=True)]
    with pytest.raises(FailureToleranceExceededError) as e:
        run_tasks(tasks, delegate(max_concurrent_tasks=2, failed_tasks_tolerance=1))
    assert e.value.failed == 2
    assert e.value.tolerance == 1


def test_tolerance_checked_after_each_pass(delegate):
    a = FakeTask('a', fail=True)
    b = FakeTask('b')
    with pytest.raises(FailureToleranceExceededError):
        run_tasks([a, b], delegate())
    assert b.calls == 0


def test_dependency_on_self(delegate):
    task = FakeTask('a')
    task.depends_on = [task]
    with pytest.raises(DependencyOnSelfError) as e:
        run_tasks([task], delegate())
    assert e.value.task is task
    assert task.calls == 0


def test_circular_dependency(delegate):
    a = FakeTask('a')
    b = FakeTask('b', depends_on=[a])
    a.depends_on = [b]
    with pytest.raises(CircularDependencyError) as e:
        run_tasks([a, b], delegate())
    assert set(e.value.tasks) == {a, b}
    assert a.calls == 0 and b.calls == 0


def test_empty_task_list(delegate):
    assert run_tasks([], delegate()) == 0


def three_tasks_two_failing():
    return [FakeTask('a', fail=True), FakeTask('b', fail=True), FakeTask('c')]


def test_two_of_three_failures_exceed_tolerance_one(delegate):
    with pytest.raises(FailureToleranceExceededError):
        run_tasks(three_tasks_two_failing(),
                delegate(max_concurrent_tasks=3, failed_tasks_tolerance=1))


def test_two_of_three_failures_within_tolerance_two(delegate):
    tasks = three_tasks_two_failing()
    assert run_tasks(tasks, delegate(max_concurrent_tasks=3, failed_tasks_tolerance=2)) == 2
    assert tasks[2].done and not tasks[2].failed


def test_dependency_on_self_launches_nothing(delegate):
    independent = FakeTask('independent')
    task = FakeTask('self')
    task.depends_on = [task]
    with pytest.raises(DependencyOnSelfError):
        run_tasks([independent, task], delegate(max_concurrent_tasks=5))
    assert independent.calls == 0
