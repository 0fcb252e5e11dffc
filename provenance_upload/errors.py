"""
Exceptions raised by the upload pipeline.
"""


class HashingError(Exception):
    """Reading the source failed while computing its fingerprint."""


class ProofError(Exception):
    """A timestamp proof could not be created, parsed or checked."""


class AuthError(Exception):
    """The server rejected the authentication probe."""


class InvalidTransition(ValueError):
    """An upload entity was asked to make a state change it does not allow."""
