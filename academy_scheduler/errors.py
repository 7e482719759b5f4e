class SchedulerError(Exception):
    """Base class for every error raised by the scheduling engine."""

    category = 'algorithm'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulerError):
    """Bad input. Raised before any work is done, so nothing partial exists."""

    category = 'validation'


class AlgorithmError(SchedulerError):
    """Internal failure in scoring or optimization. Returned as success=False."""

    category = 'algorithm'


class ConfigurationError(SchedulerError):
    """Invalid configuration (e.g. weights that do not sum to 1.0)."""

    category = 'configuration'


class CommitConflictError(SchedulerError):
    """The store rejected a commit because the slot or teacher was taken."""

    category = 'commit'

    def __init__(self, message: str, class_id: str):
        super().__init__(message)
        self.class_id = class_id


class DataStoreError(SchedulerError):
    """A read from the external store failed."""

    category = 'store'


class RequestAborted(SchedulerError):
    """Request stopped before completion because it was cancelled or timed out."""

    def __init__(self, message: str, category: str):
        super().__init__(message)
        self.category = category
