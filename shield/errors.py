"""Error taxonomy shared by every engine component.

Each error carries a ``context`` dict (subject, operation, rule, ...) so a
caller or operator can act on it without digging through logs.  Denied
admissions are NOT errors; they are Decisions with a machine-readable
reason.  Only genuinely exceptional outcomes live here.
"""


class ShieldError(Exception):
    """Base class.  ``str(err)`` includes the context for CLI output."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class StoreUnavailable(ShieldError):
    """The durable store could not be reached within the operation timeout."""


class InvalidSubject(ShieldError):
    """Malformed IP address, network or API key."""


class ConfigurationError(ShieldError):
    """Missing or invalid threshold / window / duration."""


class ConcurrencyConflict(ShieldError):
    """Lost a compare-and-swap race.  Retried internally before surfacing."""


class NotFound(ShieldError):
    """Operation on an alert or record that does not exist."""


class PolicyConflict(ShieldError):
    """Operation contradicts existing state (e.g. whitelisting a blacklisted IP)."""
