"""
Portainer REST API client.

Only the handful of calls needed to capture, recreate and drive stacks are
implemented. Every call carries the bearer token from ``login()``; a single
401 triggers exactly one re-login and retry.
"""
import time

import requests

from stackbackup.errors import AuthenticationError, ControlPlaneError
from stackbackup.utils import get_logger

logger = get_logger(__name__)

# Portainer stack type for docker-compose (standalone) stacks
STACK_TYPE_COMPOSE = 2
LOGIN_ATTEMPTS = 3


class PortainerClient:
    """Thin wrapper around a ``requests.Session`` speaking the Portainer API."""

    def __init__(self, base_url, username, password, endpoint_id=1, timeout=15, session=None, sleep=time.sleep):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.endpoint_id = endpoint_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep
        self._token = None

    @classmethod
    def from_config(cls, config, session=None):
        return cls(
            config.portainer_api_url,
            config.portainer_username,
            config.portainer_password,
            endpoint_id=config.endpoint_id,
            timeout=config.http_timeout,
            session=session,
        )

    def _url(self, path):
        return f"{self.base_url}/{path.lstrip('/')}"

    def login(self):
        """Authenticate and store the JWT.

        Transport errors are retried; a rejected login raises AuthenticationError.
        """
        if not self.username or not self.password:
            raise AuthenticationError("Portainer credentials are not configured")

        last_error = None
        for attempt in range(1, LOGIN_ATTEMPTS + 1):
            try:
                resp = self.session.post(
                    self._url('/auth'),
                    json={'Username': self.username, 'Password': self.password},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = e
                logger.warning("Portainer login attempt %s/%s failed: %s", attempt, LOGIN_ATTEMPTS, e)
                if attempt < LOGIN_ATTEMPTS:
                    self._sleep(2)
                continue

            if resp.status_code in (401, 403, 422):
                raise AuthenticationError("Portainer rejected the configured credentials", status_code=resp.status_code)
            if resp.status_code >= 400:
                raise ControlPlaneError(f"Portainer login failed: HTTP {resp.status_code}", status_code=resp.status_code)
            try:
                token = resp.json().get('jwt')
            except ValueError:
                token = None
            if not token:
                raise AuthenticationError("Portainer login response did not contain a token")
            self._token = token
            logger.debug("Authenticated with Portainer at %s", self.base_url)
            return token

        raise ControlPlaneError(f"Portainer is unreachable at {self.base_url}: {last_error}")

    def _request(self, method, path, params=None, json=None):
        if self._token is None:
            self.login()

        relogged = False
        while True:
            try:
                resp = self.session.request(
                    method,
                    self._url(path),
                    params=params,
                    json=json,
                    headers={'Authorization': f'Bearer {self._token}'},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise ControlPlaneError(f"{method} {path} failed: {e}") from e

            if resp.status_code == 401 and not relogged:
                logger.debug("Token rejected on %s %s; logging in again", method, path)
                relogged = True
                self.login()
                continue
            break

        if resp.status_code >= 400:
            detail = ''
            try:
                body = resp.json()
                detail = body.get('message') or body.get('details') or ''
            except ValueError:
                detail = (resp.text or '')[:200]
            raise ControlPlaneError(f"{method} {path} returned HTTP {resp.status_code}: {detail}".rstrip(': '),
                                    status_code=resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def is_ready(self):
        """True when the unauthenticated status endpoint answers."""
        try:
            resp = self.session.get(self._url('/status'), timeout=min(self.timeout, 5))
            return resp.status_code < 400
        except requests.RequestException:
            return False

    def wait_until_ready(self, timeout=120, interval=5):
        deadline = time.monotonic() + timeout
        while True:
            if self.is_ready():
                return True
            if time.monotonic() >= deadline:
                return False
            self._sleep(interval)

    # Stacks

    def list_stacks(self):
        return self._request('GET', '/stacks') or []

    def get_stack(self, stack_id):
        return self._request('GET', f'/stacks/{stack_id}')

    def get_stack_file(self, stack_id):
        data = self._request('GET', f'/stacks/{stack_id}/file')
        if isinstance(data, dict):
            return data.get('StackFileContent') or ''
        return data or ''

    def create_stack(self, name, compose_content, env=None):
        payload = {
            'name': name,
            'stackFileContent': compose_content,
            'env': list(env or []),
            'fromAppTemplate': False,
        }
        return self._request(
            'POST', '/stacks',
            params={'type': STACK_TYPE_COMPOSE, 'method': 'string', 'endpointId': self.endpoint_id},
            json=payload,
        )

    def update_stack(self, stack_id, compose_content, env=None, prune=False):
        payload = {'stackFileContent': compose_content, 'env': list(env or []), 'prune': prune}
        return self._request('PUT', f'/stacks/{stack_id}', params={'endpointId': self.endpoint_id}, json=payload)

    def start_stack(self, stack_id):
        return self._request('POST', f'/stacks/{stack_id}/start', params={'endpointId': self.endpoint_id})

    def stop_stack(self, stack_id):
        return self._request('POST', f'/stacks/{stack_id}/stop', params={'endpointId': self.endpoint_id})

    def delete_stack(self, stack_id):
        return self._request('DELETE', f'/stacks/{stack_id}', params={'endpointId': self.endpoint_id})
