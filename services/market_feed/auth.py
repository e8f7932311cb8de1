# smart_feed/services/market_feed/auth.py

from core.config.settings import Settings
from core.logging import get_api_logger_safe

from .exceptions import CredentialError
from .models import SessionCredentials


class BrokerAuthenticator:
    """
    Supplies the session credentials the feed needs. The login flow that
    mints them (password + TOTP) runs elsewhere and lands its tokens in
    settings, e.g. ANGEL__JWT_TOKEN / ANGEL__FEED_TOKEN.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self.logger = get_api_logger_safe("market_feed_auth")

    def get_credentials(self) -> SessionCredentials:
        """
        Returns validated session credentials, raising CredentialError when
        any field is missing.
        """
        angel = self._settings.angel
        credentials = SessionCredentials(
            session_token=angel.jwt_token,
            feed_token=angel.feed_token,
            api_key=angel.api_key,
            client_code=angel.client_code,
        )

        missing = credentials.missing_fields()
        if missing:
            self.logger.error("Broker session credentials incomplete", missing_fields=list(missing))
            raise CredentialError(missing)

        self.logger.info("BrokerAuthenticator loaded session credentials", client_code=credentials.client_code)
        return credentials
