from csrfblock.core.config import CSRFBlockSettings
from csrfblock.core.exceptions import ConfigurationError
from csrfblock.middleware.csrf import CSRFBlockMiddleware

__all__ = ["CSRFBlockMiddleware", "CSRFBlockSettings", "ConfigurationError"]
