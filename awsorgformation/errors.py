"""Exceptions raised by awsorgformation"""


class OrgFormationError(RuntimeError):
    """Configuration or consistency error.  Nothing is executed."""


class DependencyOnSelfError(OrgFormationError):

    def __init__(self, message, task):
        super().__init__(message)
        self.task = task


class CircularDependencyError(OrgFormationError):

    def __init__(self, message, tasks):
        super().__init__(message)
        self.tasks = tasks


class FailureToleranceExceededError(OrgFormationError):

    def __init__(self, failed, tolerance):
        super().__init__(
            "number failed tasks %s exceeded tolerance for failed tasks %s" %
            (failed, tolerance))
        self.failed = failed
        self.tolerance = tolerance
