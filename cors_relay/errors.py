class StartupError(Exception):
    """Raised when the relay cannot start serving (bind failure, bad TLS material)."""


class ConfigError(StartupError):
    """Raised when an environment setting cannot be parsed or validated."""
