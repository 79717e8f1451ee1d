# horizon.py - VDI Power Horizon Maintenance Mode Operations
# Version 1.0 - October 2026
# Author - VDI Operations Team
# Horizon Connection Server REST API integration for maintenance mode

"""
Horizon REST API Integration Module

Puts the desktop record matching a VM into (or out of) maintenance mode so
the broker stops (or resumes) assigning sessions to it.

API used:
    - Auth: POST /rest/login -> JWT access/refresh tokens (Bearer auth)
    - Lookup: GET /rest/inventory/v1/machines?filter={"type":"Equals",...}
    - Action: POST /rest/inventory/v1/machines/action/enter-maintenance-mode
              POST /rest/inventory/v1/machines/action/exit-maintenance-mode
    - Logout: POST /rest/logout

One requests.Session is kept for the whole run.
"""

import json
import logging
import requests
import urllib3

# Disable SSL warnings for self-signed Connection Server certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

SSL_VERIFY = False
REQUEST_TIMEOUT = 30  # seconds for API requests

MACHINES_PATH = '/rest/inventory/v1/machines'
ENTER_MAINTENANCE = 'enter-maintenance-mode'
EXIT_MAINTENANCE = 'exit-maintenance-mode'


class HorizonError(Exception):
    """Raised when a Horizon API call fails or a desktop record is missing"""

#==============================================================================
# CLIENT
#==============================================================================

class HorizonClient:
    """Authenticated Horizon Connection Server session"""

    def __init__(self, server: str, user: str, password: str, domain: str = '',
                 verify: bool = SSL_VERIFY, session=None):
        self.server = server
        self.user = user
        self.password = password
        self.domain = domain
        self.verify = verify
        self.session = session if session is not None else requests.Session()
        self.session.verify = verify
        self.access_token = None
        self.refresh_token = None

    @property
    def base_url(self) -> str:
        return f'https://{self.server}'

    #--------------------------------------------------------------------------
    # API helpers
    #--------------------------------------------------------------------------

    def _make_request(self, method: str, path: str, payload=None, params=None):
        """
        Make an API request to the Connection Server.

        :param method: HTTP method (GET or POST)
        :param path: Path below the server URL
        :param payload: Optional JSON body
        :param params: Optional query parameters
        :return: Decoded JSON response ({} for an empty body)
        :raises HorizonError: on any request failure
        """
        url = f'{self.base_url}{path}'
        try:
            if method.upper() == 'GET':
                response = self.session.get(url, params=params,
                                            timeout=REQUEST_TIMEOUT)
            elif method.upper() == 'POST':
                response = self.session.post(url, json=payload, params=params,
                                             timeout=REQUEST_TIMEOUT)
            else:
                raise ValueError(f'Unsupported HTTP method: {method}')

            response.raise_for_status()
            return response.json() if response.text else {}

        except requests.exceptions.HTTPError as e:
            logger.error(f'HTTP Error: {e}')
            body = e.response.text if e.response is not None else 'N/A'
            logger.debug(f'Response: {body}')
            raise HorizonError(f'{method} {path} failed: {e}') from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f'Connection Error: {e}')
            raise HorizonError(f'Cannot reach {self.server}: {e}') from e
        except requests.exceptions.Timeout as e:
            logger.error(f'Timeout Error: {e}')
            raise HorizonError(f'{method} {path} timed out') from e
        except requests.exceptions.RequestException as e:
            logger.error(f'Request Error: {e}')
            raise HorizonError(f'{method} {path} failed: {e}') from e

    #--------------------------------------------------------------------------
    # Session management
    #--------------------------------------------------------------------------

    def connect(self):
        """
        Log in to the Connection Server.

        A previous session is logged out first, ignoring errors.
        :raises HorizonError: if the login fails
        """
        self.disconnect()
        payload = {
            'domain': self.domain,
            'username': self.user,
            'password': self.password,
        }
        tokens = self._make_request('POST', '/rest/login', payload=payload)
        self.access_token = tokens.get('access_token')
        self.refresh_token = tokens.get('refresh_token')
        if not self.access_token:
            raise HorizonError(f'Login to {self.server} returned no access token')
        self.session.headers.update({'Authorization': f'Bearer {self.access_token}'})
        logger.debug(f'Logged in to {self.server} as {self.user}')

    def disconnect(self):
        """Log out (best effort)"""
        if not self.refresh_token:
            return
        try:
            response = self.session.post(f'{self.base_url}/rest/logout',
                                         json={'refresh_token': self.refresh_token},
                                         timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            # Token may have expired already; the session is discarded either way
            logger.debug(f'Ignoring logout error from {self.server}: {e}')
        self.session.headers.pop('Authorization', None)
        self.access_token = None
        self.refresh_token = None

    #--------------------------------------------------------------------------
    # Machines
    #--------------------------------------------------------------------------

    def find_machine_ids(self, vm_name: str) -> list:
        """
        Find the desktop records whose machine name matches a VM name.

        :param vm_name: VM name as shown in vSphere
        :return: List of machine ids (may be empty)
        """
        query = json.dumps({'type': 'Equals', 'name': 'name', 'value': vm_name})
        machines = self._make_request('GET', MACHINES_PATH, params={'filter': query})
        return [m['id'] for m in machines or [] if m.get('name') == vm_name]

    def set_maintenance(self, vm_name: str, enabled: bool):
        """
        Enter or exit maintenance mode for the desktop backed by a VM.

        :param vm_name: VM name
        :param enabled: True to enter maintenance mode, False to exit
        :raises HorizonError: if no desktop matches or Horizon rejects the action
        """
        machine_ids = self.find_machine_ids(vm_name)
        if not machine_ids:
            raise HorizonError(f'No Horizon machine found for {vm_name}')

        action = ENTER_MAINTENANCE if enabled else EXIT_MAINTENANCE
        results = self._make_request('POST', f'{MACHINES_PATH}/action/{action}',
                                     payload=machine_ids)

        failures = []
        for result in results or []:
            if result.get('status_code', 200) >= 400:
                messages = [err.get('error_message', '') for err in result.get('errors', [])]
                failures.append(f"{result.get('id')}: {'; '.join(messages) or result['status_code']}")
        if failures:
            raise HorizonError(f'{action} failed for {vm_name}: {", ".join(failures)}')
