"""Error types shared by the dispatcher and the WPPConnect client."""


class ModeratorError(Exception):
    """Base class for bot errors."""


class TransportError(ModeratorError):
    """A call to the WhatsApp gateway failed (network, HTTP status, permissions)."""


class ValidationError(ModeratorError):
    """A command was missing its target or content. The message is the usage reply."""


class AuthorizationError(ModeratorError):
    """The sender is not allowed to run the command. The message is the denial reply."""
