"""Exception types shared across the pipeline."""


class QueueNotFoundError(KeyError):
    """No queue with the requested name is configured."""
    pass


class JobTimeoutError(Exception):
    """A job ran longer than its queue's timeout."""
    pass


class PermanentJobError(Exception):
    """Job can never succeed (unknown lead, unknown job type); fail without retry."""
    pass


class ScoringConfigError(ValueError):
    """Scoring weights or thresholds are invalid."""
    pass
