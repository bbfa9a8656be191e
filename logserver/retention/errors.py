"""Error types raised by the backup/retention subsystem.

Plain I/O failures are reported as the built-in ``OSError``.
"""


class ConfigError(ValueError):
    """Invalid configuration value (interval, size, path)."""


class PartialFailure(OSError):
    """A multi-item operation where some items failed.

    ``failures`` holds ``(path, exception)`` pairs for each item that could
    not be processed.
    """

    def __init__(self, message: str, failures: list[tuple[str, OSError]]):
        super().__init__(message)
        self.failures = failures

    def __str__(self):
        details = ", ".join(f"{path}: {exc}" for path, exc in self.failures)
        return f"{self.args[0]} ({details})" if details else self.args[0]
