class UnificationError(Exception):
    """Base exception for all unification layer errors"""


class ConfigError(UnificationError):
    """Raised when the configuration file cannot be read or validated"""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.message = message
        self.path = path
