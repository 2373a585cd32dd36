class HealingError(RuntimeError):
    """Raised when a heal cannot be carried out."""


class OracleResponseError(HealingError):
    """Raised when the oracle returns an unusable decision."""


class ConfigurationError(HealingError):
    """Raised when the healer configuration is invalid."""
