"""Tidal authorization: client credentials and the device-code flow."""

import asyncio
import time
from typing import Callable, Dict, Optional

import requests

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.exceptions import AuthenticationError
from playlist_mirror.utils.logger import get_logger


logger = get_logger()


AUTH_URL = "https://auth.tidal.com/v1/oauth2"
SESSIONS_URL = "https://api.tidal.com/v1/sessions"

AWAITING_USER = 'awaiting_user'
AUTHORIZED = 'authorized'
EXPIRED = 'expired'


class DeviceAuthorization:
    """
    Device-code authorization as a bounded state machine.

    Starts in AWAITING_USER and moves to AUTHORIZED once the user approves
    the code, or to EXPIRED when Tidal says so or the code's lifetime runs
    out. Polling waits go through the cancellation token.
    """

    GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

    def __init__(
        self,
        session: requests.Session,
        client_id: str,
        device_code: Dict,
        scope: str,
        cancel_token: CancellationToken,
        clock: Callable[[], float] = time.monotonic
    ):
        self._session = session
        self.client_id = client_id
        self.device_code = device_code['deviceCode']
        self.verification_uri = device_code.get('verificationUriComplete') or device_code.get('verificationUri')
        self.interval = max(1, int(device_code.get('interval', 5)))
        self.scope = scope
        self.cancel_token = cancel_token
        self._clock = clock
        self._deadline = clock() + int(device_code.get('expiresIn', 300))
        self.state = AWAITING_USER
        self.tokens: Optional[Dict] = None

    def poll_once(self) -> str:
        """Ask Tidal once whether the user has approved; returns the new state."""
        if self.state != AWAITING_USER:
            return self.state

        if self._clock() >= self._deadline:
            self.state = EXPIRED
            return self.state

        response = self._session.post(
            f"{AUTH_URL}/token",
            data={
                'client_id': self.client_id,
                'device_code': self.device_code,
                'grant_type': self.GRANT_TYPE,
                'scope': self.scope,
            },
            timeout=10
        )

        if response.status_code == 200:
            self.tokens = response.json()
            self.state = AUTHORIZED
            return self.state

        try:
            error = response.json().get('error')
        except ValueError:
            error = None

        if error == 'expired_token':
            self.state = EXPIRED
        elif error not in ('authorization_pending', 'slow_down', None):
            raise AuthenticationError(f"Tidal device authorization failed: {error}")
        elif error == 'slow_down':
            self.interval += 1

        return self.state

    async def wait(self) -> Dict:
        """
        Poll until the user approves or the code expires.

        Returns:
            Token response (access_token, refresh_token, user)

        Raises:
            AuthenticationError: If the device code expires
            SyncCancelled: If the run is cancelled while waiting
        """
        while True:
            try:
                state = await asyncio.get_running_loop().run_in_executor(None, self.poll_once)
            except requests.exceptions.RequestException as e:
                logger.debug(f"Tidal token poll failed, will retry: {e}")
                state = self.state

            if state == AUTHORIZED:
                return self.tokens
            if state == EXPIRED:
                raise AuthenticationError("Tidal auth failed - device code expired")

            logger.debug(f"Waiting {self.interval} seconds before trying again.")
            await self.cancel_token.sleep(self.interval)


class TidalAuth:
    """Obtains the two Tidal tokens: the application token and the user token."""

    SCOPE = "r_usr w_usr"

    def __init__(self, client_id: str, client_secret: str, cancel_token: CancellationToken = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.cancel_token = cancel_token or CancellationToken()
        self._session = requests.Session()

    def client_credentials(self) -> str:
        """
        Get an application token for catalog (non-user) resources.

        Raises:
            AuthenticationError: If Tidal rejects the client credentials
        """
        try:
            response = self._session.post(
                f"{AUTH_URL}/token",
                data={'grant_type': 'client_credentials'},
                auth=(self.client_id, self.client_secret),
                timeout=10
            )
            response.raise_for_status()
            return response.json()['access_token']
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            raise AuthenticationError(f"Tidal client authentication failed: {e}")

    def start_device_authorization(self) -> DeviceAuthorization:
        try:
            response = self._session.post(
                f"{AUTH_URL}/device_authorization",
                data={'client_id': self.client_id, 'scope': self.SCOPE},
                timeout=10
            )
            response.raise_for_status()
            device_code = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise AuthenticationError(f"Could not start Tidal device authorization: {e}")

        authorization = DeviceAuthorization(
            self._session, self.client_id, device_code, self.SCOPE, self.cancel_token
        )
        logger.info(
            f"Please visit the following URL to authorize this application: "
            f"https://{authorization.verification_uri}"
        )
        return authorization

    def check_session(self, access_token: str) -> Optional[Dict]:
        """
        Validate a user token.

        Returns:
            Session info (userId, countryCode) or None if the token is rejected
        """
        response = self._session.get(
            SESSIONS_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=10
        )
        if response.status_code in (401, 403):
            return None
        response.raise_for_status()
        return response.json()

    def refresh(self, refresh_token: str) -> Dict:
        try:
            response = self._session.post(
                f"{AUTH_URL}/token",
                data={
                    'client_id': self.client_id,
                    'refresh_token': refresh_token,
                    'grant_type': 'refresh_token',
                    'scope': self.SCOPE,
                },
                timeout=10
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise AuthenticationError(f"Tidal token refresh failed: {e}")

    async def user_tokens(self, stored: Optional[Dict]) -> Dict:
        """
        Return valid user tokens, reusing, refreshing or re-authorizing as needed.

        Args:
            stored: Previously saved {'access_token', 'refresh_token', 'user_id'} or None

        Returns:
            {'access_token', 'refresh_token', 'user_id', 'country_code'}
        """
        # Token endpoints are blocking requests calls; keep them off the event loop
        loop = asyncio.get_running_loop()
        if stored and stored.get('access_token') and stored.get('refresh_token'):
            logger.debug("Tidal access token found")
            tokens = dict(stored)
            try:
                session_info = await loop.run_in_executor(None, self.check_session, tokens['access_token'])
                if session_info is None:
                    logger.debug("Tidal access token expired")
                    refreshed = await loop.run_in_executor(None, self.refresh, tokens['refresh_token'])
                    tokens['access_token'] = refreshed['access_token']
                    session_info = await loop.run_in_executor(None, self.check_session, tokens['access_token'])
            except requests.exceptions.RequestException as e:
                raise AuthenticationError(f"Could not validate Tidal session: {e}")

            if session_info is None:
                raise AuthenticationError("Refreshed Tidal token was rejected")
            logger.debug("Tidal access token valid")

            tokens['user_id'] = str(session_info.get('userId') or tokens.get('user_id'))
            tokens['country_code'] = session_info.get('countryCode')
            return tokens

        logger.debug("No Tidal access token found")
        authorization = await loop.run_in_executor(None, self.start_device_authorization)
        login = await authorization.wait()
        return {
            'access_token': login['access_token'],
            'refresh_token': login.get('refresh_token'),
            'user_id': str((login.get('user') or {}).get('userId') or login.get('user_id')),
            'country_code': (login.get('user') or {}).get('countryCode'),
        }
