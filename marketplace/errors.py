"""
Request-level errors raised by the visual search service.
"""


class BadRequestError(Exception):
    """The request is malformed: missing image, missing product ID, bad upload."""


class InternalError(Exception):
    """An unexpected failure while processing an otherwise valid request."""
