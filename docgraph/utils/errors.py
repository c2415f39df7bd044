"""Typed errors raised by the extraction engine."""


class ValidationError(ValueError):
    """Hard-stop error naming the state that prevents an operation from continuing.

    Raised for missing input artifacts, field-coverage failures, malformed planning
    responses and invalid configuration values reaching the engine.
    """
