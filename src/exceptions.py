"""
Error types raised by the governance engine.

Most degenerate conditions (too little data, empty inputs) resolve to a
conservative default and are only logged. The types below are the ones that
must reach the caller.
"""


class InvariantViolation(RuntimeError):
    """
    A safety invariant failed after the engine's own clamp/normalize step.

    This is a programming fault. It is raised, never re-clamped and shipped.
    """


class UpstreamFetchFailure(Exception):
    """Reading the trade ledger failed before the compute stage began."""


class UpstreamTimeout(UpstreamFetchFailure):
    """The ledger fetch deadline expired between pages."""
