"""
Google OAuth2 credentials for Drive uploads and Sheets audit logging.

Tokens are stored encrypted in GoogleSettings. The access token is refreshed
proactively when it expires within TOKEN_REFRESH_MARGIN seconds.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import requests
from flask import current_app

from dumpwarden import db
from dumpwarden.models import GoogleSettings
from dumpwarden.backup.errors import CredentialExpiredError, TransportError, ConfigurationError
from dumpwarden.utils.crypto import encrypt_optional, decrypt_optional

logger = logging.getLogger(__name__)

AUTH_URL = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URL = 'https://oauth2.googleapis.com/token'
SCOPES = (
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/spreadsheets',
)

_refresh_lock = threading.Lock()


def get_google_settings() -> Optional[GoogleSettings]:
    return GoogleSettings.query.first()


class GoogleOAuthClient:
    """Authorization-code flow and token refresh against Google's OAuth endpoints."""

    def __init__(self, settings: Optional[GoogleSettings] = None, redirect_uri: Optional[str] = None,
                 timeout: Optional[int] = None, refresh_margin: Optional[int] = None):
        self.settings = settings or get_google_settings()
        if self.settings is None or not self.settings.is_configured:
            raise ConfigurationError("Google credentials not configured")

        config = current_app.config
        self.redirect_uri = redirect_uri or config['GOOGLE_REDIRECT_URI']
        self.timeout = timeout or config.get('AUDIT_TIMEOUT', 30)
        self.refresh_margin = timedelta(seconds=refresh_margin or config.get('TOKEN_REFRESH_MARGIN', 300))

    @property
    def client_secret(self) -> Optional[str]:
        return decrypt_optional(self.settings.client_secret_encrypted)

    @property
    def token_expiry(self) -> Optional[datetime]:
        """Access token expiry as an aware UTC datetime."""
        if self.settings.token_expiry is None:
            return None
        return self.settings.token_expiry.replace(tzinfo=timezone.utc)

    def get_auth_url(self) -> str:
        params = {
            'client_id': self.settings.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': ' '.join(SCOPES),
            'response_type': 'code',
            'access_type': 'offline',
            'prompt': 'consent',
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str):
        """
        Exchange an authorization code for access and refresh tokens and store them.

        Raises:
            CredentialExpiredError: If Google rejects the code
            TransportError: On network failure
        """
        logger.info("Exchanging Google OAuth authorization code")
        token_data = self._token_request({
            'client_id': self.settings.client_id,
            'client_secret': self.client_secret,
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': self.redirect_uri,
        })

        self._store_tokens(token_data)
        logger.info("Google OAuth tokens saved")

    def refresh_token(self):
        """
        Obtain a new access token from the stored refresh token.

        Raises:
            CredentialExpiredError: No refresh token, or the refresh was rejected
            TransportError: On network failure
        """
        refresh = decrypt_optional(self.settings.refresh_token_encrypted)
        if not refresh:
            raise CredentialExpiredError("No refresh token available")

        logger.info("Refreshing Google access token")
        token_data = self._token_request({
            'client_id': self.settings.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh,
            'grant_type': 'refresh_token',
        })

        self._store_tokens(token_data)
        logger.info("Google access token refreshed")

    def ensure_valid_token(self):
        """Refresh the access token if it is missing or expires within the margin."""
        with _refresh_lock:
            # Another thread may have refreshed while we waited
            db.session.refresh(self.settings)

            if not self.settings.access_token_encrypted:
                self.refresh_token()
                return

            expiry = self.token_expiry
            if expiry is None:
                return

            if expiry - datetime.now(timezone.utc) < self.refresh_margin:
                self.refresh_token()

    def access_token(self) -> str:
        token = decrypt_optional(self.settings.access_token_encrypted)
        if not token:
            raise CredentialExpiredError("No Google access token available")
        return token

    def _token_request(self, data: dict) -> dict:
        try:
            response = requests.post(TOKEN_URL, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Google token request failed: {e}")

        if response.status_code in (400, 401, 403):
            logger.error(f"Google token request rejected ({response.status_code}): {response.text}")
            raise CredentialExpiredError(f"Google token request rejected with status {response.status_code}")
        if response.status_code != 200:
            raise TransportError(f"Google token request failed with status {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid token response from Google: {e}")

    def _store_tokens(self, token_data: dict):
        settings = self.settings
        settings.access_token_encrypted = encrypt_optional(token_data.get('access_token'))

        # Google only returns a refresh token on the first consent
        if token_data.get('refresh_token'):
            settings.refresh_token_encrypted = encrypt_optional(token_data['refresh_token'])

        expires_in = int(token_data.get('expires_in') or 0)
        if expires_in:
            settings.token_expiry = datetime.utcnow() + timedelta(seconds=expires_in)
        else:
            settings.token_expiry = None

        db.session.commit()
