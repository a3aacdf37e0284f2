from __future__ import annotations


class RestarterError(Exception):
    pass


class ConfigError(RestarterError):
    """Invalid startup configuration. The process must not start."""


class InfraError(RestarterError):
    """Something outside the replica prevented a verdict or an action.

    Non-fatal: the current reconcile is abandoned and retried later.
    """


class UnitNotFound(RestarterError):
    """The replica no longer exists (or was replaced under the same name)."""


class ExecStreamError(RestarterError):
    """The exec stream into a container failed before producing a result."""
