class UnknownRecordError(KeyError):
    """Raised when an operation references a resource, job or assignment id that does not exist."""

    pass


class RuleConfigurationError(ValueError):
    """Raised when a rule set fails validation at load time."""

    pass


class PersistenceError(RuntimeError):
    """Raised by a backing store when a write is rejected, fails or times out."""

    pass
