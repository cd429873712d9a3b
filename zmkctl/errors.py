class ToolNotFoundError(RuntimeError):
    """An external executable could not be started."""
