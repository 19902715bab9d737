CANCELLED_MESSAGE = "Cancelled by user."
MISSING_SOURCE_MESSAGE = "Missing source image."
API_KEY_ERROR_MESSAGE = "API key error. Please select your API key again."


class GenerationError(Exception):
    """A generation call failed; the message is shown on the item as-is."""


class AuthorizationError(GenerationError):
    """The API rejected the credentials. Items fail and the credential flag is cleared."""


class GenerationCancelled(GenerationError):
    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


class MissingSourceImage(GenerationError):
    def __init__(self, message: str = MISSING_SOURCE_MESSAGE):
        super().__init__(message)


class InvalidTransition(ValueError):
    def __init__(self, item_id: int, current: str, target: str):
        super().__init__(f"item {item_id}: illegal status change {current} -> {target}")
        self.item_id = item_id
        self.current = current
        self.target = target
