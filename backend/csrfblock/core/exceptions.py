class ConfigurationError(RuntimeError):
    """Deployment error: the middleware stack is missing a collaborator."""
