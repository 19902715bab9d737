import logging
from typing import Optional

from .errors import API_KEY_ERROR_MESSAGE
from .model import CredentialStatus

logger = logging.getLogger(__name__)


class CredentialState:
    """
    Cached "has valid credentials" flag. The scheduler only clears it; whoever
    manages keys decides when it becomes valid again.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.has_valid_credentials = bool(api_key)
        self.error_message: Optional[str] = None

    def invalidate(self, reason: str = API_KEY_ERROR_MESSAGE) -> None:
        if self.has_valid_credentials:
            logger.warning("[Credentials] invalidated: %s", reason)
        self.has_valid_credentials = False
        self.error_message = reason

    def restore(self) -> None:
        if not self.has_valid_credentials:
            logger.info("[Credentials] restored")
        self.has_valid_credentials = True
        self.error_message = None

    def status(self) -> CredentialStatus:
        return CredentialStatus(
            has_valid_credentials=self.has_valid_credentials,
            error_message=self.error_message,
        )
