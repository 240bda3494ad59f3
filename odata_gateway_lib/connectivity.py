"""
Backend connectivity: destination broker, connectivity proxy and HTTP transport.

A service is reached either directly (base URL + basic auth, for local
development) or through a BTP destination. OnPremise destinations are routed
through the connectivity proxy, which authenticates with its own bearer token
sent as Proxy-Authorization, separately from the backend Authorization header.
"""

import base64
import json
import os
import re
import sys
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from .constants import (
    DATA_REQUEST_TIMEOUT,
    DEFAULT_CONNECTIVITY_PROXY_URL,
    DEFAULT_TOKEN_LIFETIME,
    TOKEN_EXPIRY_MARGIN,
    SAP_CLIENT_PARAM,
    TOKEN_REQUEST_TIMEOUT,
    USER_AGENT,
)
from .errors import ConfigurationError, ODataTransportError
from .models import BackendConnection
from .query_builder import encode_query_params


def _log(component: str, verbose: bool, message: str):
    if verbose:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        print(f"[{timestamp} {component} VERBOSE] {message}", file=sys.stderr)


def normalize_token_url(token_url: str) -> str:
    """XSUAA token endpoints are configured with or without the /oauth/token suffix."""
    token_url = token_url.rstrip('/')
    if token_url.endswith('/oauth/token'):
        return token_url
    return f"{token_url}/oauth/token"


def basic_auth_header(username: str, password: str) -> str:
    credentials = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return f"Basic {credentials}"


def extract_sap_error(response: requests.Response) -> str:
    """Attempt to extract a meaningful error message from an OData error response."""
    try:
        data = response.json()
    except ValueError:
        text = (response.text or "").strip()
        if not text:
            return f"HTTP {response.status_code}: {response.reason}"
        if text.startswith('<'):
            # SAP Gateway XML error: <error><code/><message xml:lang="en">...</message></error>
            match = re.search(r'<(?:\w+:)?message[^>]*>([^<]+)</(?:\w+:)?message>', text)
            if match:
                return match.group(1).strip()
        return text[:500]

    if isinstance(data, dict) and isinstance(data.get('error'), dict):
        error_obj = data['error']
        msg = error_obj.get('message')
        if isinstance(msg, dict) and 'value' in msg:
            return str(msg['value'])
        if isinstance(msg, str):
            return msg
        inner = error_obj.get('innererror')
        if isinstance(inner, dict) and isinstance(inner.get('errordetails'), list):
            details = [str(d.get('message')) for d in inner['errordetails'] if isinstance(d, dict) and d.get('message')]
            if details:
                return "; ".join(details)
        return json.dumps(error_obj)[:500]
    return f"HTTP {response.status_code}: {response.reason}"


class OAuthTokenCache:
    """
    Client-credentials token, cached until TOKEN_EXPIRY_MARGIN seconds before it expires.
    """

    def __init__(self, token_url: str, client_id: str, client_secret: str,
                 component: str = "Token", verbose: bool = False,
                 session: Optional[requests.Session] = None):
        self.token_url = normalize_token_url(token_url)
        self.client_id = client_id
        self.client_secret = client_secret
        self.component = component
        self.verbose = verbose
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def _log_verbose(self, message: str):
        _log(self.component, self.verbose, message)

    def is_valid(self) -> bool:
        return self._token is not None and time.time() < self._expires_at

    def invalidate(self):
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def get_token(self) -> str:
        with self._lock:
            if self.is_valid():
                return self._token
            self._log_verbose(f"Fetching OAuth token from {self.token_url}...")
            try:
                response = self.session.post(
                    self.token_url,
                    data={
                        'grant_type': 'client_credentials',
                        'client_id': self.client_id,
                        'client_secret': self.client_secret,
                    },
                    headers={'Content-Type': 'application/x-www-form-urlencoded'},
                    timeout=TOKEN_REQUEST_TIMEOUT,
                )
            except requests.exceptions.RequestException as e:
                print(f"ERROR: {self.component}: token request failed: {e}", file=sys.stderr)
                raise ODataTransportError(f"Failed to authenticate with {self.component}: {e}",
                                          url=self.token_url) from e

            if not response.ok:
                print(f"ERROR: {self.component}: token request returned {response.status_code}", file=sys.stderr)
                raise ODataTransportError(f"Failed to authenticate with {self.component}: {extract_sap_error(response)}",
                                          url=self.token_url, status=response.status_code, body=response.text)

            try:
                payload = response.json()
            except ValueError as e:
                print(f"ERROR: {self.component}: token response is not JSON", file=sys.stderr)
                raise ODataTransportError(f"Failed to authenticate with {self.component}: non-JSON token response",
                                          url=self.token_url, status=response.status_code,
                                          body=response.text[:500]) from e
            token = payload.get('access_token')
            if not token:
                raise ODataTransportError(f"Failed to authenticate with {self.component}: no access_token in response",
                                          url=self.token_url, status=response.status_code)
            expires_in = payload.get('expires_in') or DEFAULT_TOKEN_LIFETIME
            self._token = token
            self._expires_at = time.time() + int(expires_in) - TOKEN_EXPIRY_MARGIN
            self._log_verbose(f"OAuth token obtained, valid for {int(expires_in) - TOKEN_EXPIRY_MARGIN}s")
            return token


class DestinationServiceClient:
    """Reads destination configurations from the BTP Destination service."""

    def __init__(self, service_url: str, client_id: str, client_secret: str, token_url: str,
                 verbose: bool = False, session: Optional[requests.Session] = None):
        self.service_url = service_url.rstrip('/')
        self.verbose = verbose
        self.session = session or requests.Session()
        self.tokens = OAuthTokenCache(token_url, client_id, client_secret,
                                      component="Destination", verbose=verbose, session=self.session)

    @classmethod
    def from_env(cls, verbose: bool = False) -> Optional["DestinationServiceClient"]:
        """Build from BTP_DESTINATION_* variables, or None when any is missing."""
        url = os.getenv("BTP_DESTINATION_SERVICE_URL")
        client_id = os.getenv("BTP_DESTINATION_CLIENT_ID")
        client_secret = os.getenv("BTP_DESTINATION_CLIENT_SECRET")
        token_url = os.getenv("BTP_DESTINATION_TOKEN_URL")
        if not (url and client_id and client_secret and token_url):
            return None
        return cls(url, client_id, client_secret, token_url, verbose=verbose)

    def _log_verbose(self, message: str):
        _log("Destination", self.verbose, message)

    def get_destination(self, name: str) -> Dict:
        """Fetch the full destination document (destinationConfiguration + authTokens)."""
        token = self.tokens.get_token()
        url = f"{self.service_url}/destination-configuration/v1/destinations/{name}"
        self._log_verbose(f"Fetching destination: {name}")
        try:
            response = self.session.get(url, headers={'Authorization': f"Bearer {token}"},
                                        timeout=TOKEN_REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            print(f"ERROR: Failed to retrieve destination {name}: {e}", file=sys.stderr)
            raise ODataTransportError(f"Failed to retrieve destination {name}: {e}", url=url) from e
        if not response.ok:
            if response.status_code == 401:
                self.tokens.invalidate()
            print(f"ERROR: Failed to retrieve destination {name}: HTTP {response.status_code}", file=sys.stderr)
            raise ODataTransportError(f"Failed to retrieve destination {name}: {extract_sap_error(response)}",
                                      url=url, status=response.status_code, body=response.text)
        try:
            document = response.json()
        except ValueError as e:
            print(f"ERROR: Destination {name} response is not JSON", file=sys.stderr)
            raise ODataTransportError(f"Failed to retrieve destination {name}: non-JSON response",
                                      url=url, status=response.status_code, body=response.text[:500]) from e
        config = document.get('destinationConfiguration') or {}
        self._log_verbose(f"Destination URL: {config.get('URL')}, auth: {config.get('Authentication')}")
        return document


class ConnectivityServiceClient:
    """Bearer token for the connectivity proxy."""

    def __init__(self, client_id: str, client_secret: str, token_url: str,
                 proxy_url: str = DEFAULT_CONNECTIVITY_PROXY_URL, verbose: bool = False,
                 session: Optional[requests.Session] = None):
        self.proxy_url = proxy_url
        self.tokens = OAuthTokenCache(token_url, client_id, client_secret,
                                      component="Connectivity", verbose=verbose, session=session)

    @classmethod
    def from_env(cls, verbose: bool = False) -> Optional["ConnectivityServiceClient"]:
        client_id = os.getenv("CONNECTIVITY_CLIENT_ID")
        client_secret = os.getenv("CONNECTIVITY_CLIENT_SECRET")
        token_url = os.getenv("CONNECTIVITY_TOKEN_URL")
        if not (client_id and client_secret and token_url and os.getenv("CONNECTIVITY_SERVICE_URL")):
            return None
        proxy_url = os.getenv("CONNECTIVITY_PROXY_URL") or DEFAULT_CONNECTIVITY_PROXY_URL
        return cls(client_id, client_secret, token_url, proxy_url=proxy_url, verbose=verbose)

    def get_proxy_token(self) -> str:
        return self.tokens.get_token()


class DestinationConnectionProvider:
    """Resolves backend connections from a BTP destination."""

    def __init__(self, destinations: DestinationServiceClient, destination_name: str,
                 connectivity: Optional[ConnectivityServiceClient] = None, verbose: bool = False):
        self.destinations = destinations
        self.destination_name = destination_name
        self.connectivity = connectivity
        self.verbose = verbose

    def describe(self) -> str:
        return f"destination '{self.destination_name}'"

    def get_backend_connection(self, service_name: Optional[str] = None) -> BackendConnection:
        document = self.destinations.get_destination(self.destination_name)
        config = document.get('destinationConfiguration') or {}
        base_url = config.get('URL')
        if not base_url:
            raise ConfigurationError(f"Destination '{self.destination_name}' has no URL")

        auth_headers: Dict[str, str] = {}
        # Tokens minted by the destination service take precedence over raw credentials
        for token in document.get('authTokens') or []:
            header = token.get('http_header') if isinstance(token, dict) else None
            if isinstance(header, dict) and header.get('key') and header.get('value'):
                auth_headers[header['key']] = header['value']
                break
        if not auth_headers and config.get('Authentication') == 'BasicAuthentication':
            auth_headers['Authorization'] = basic_auth_header(config.get('User', ''), config.get('Password', ''))

        proxy_required = config.get('ProxyType') == 'OnPremise'
        proxy_headers: Dict[str, str] = {}
        if proxy_required:
            if self.connectivity is None:
                raise ConfigurationError(
                    f"Destination '{self.destination_name}' is OnPremise but no connectivity service is configured")
            proxy_headers['Proxy-Authorization'] = f"Bearer {self.connectivity.get_proxy_token()}"

        _log("Destination", self.verbose,
             f"Resolved {service_name or 'backend'}: {base_url} (proxy: {proxy_required}, "
             f"sap-client: {config.get('sap-client') or '-'})")
        return BackendConnection(
            base_url=base_url.rstrip('/'),
            auth_headers=auth_headers,
            proxy_required=proxy_required,
            proxy_headers=proxy_headers,
            tenant_param=config.get('sap-client') or None,
        )


class DirectConnectionProvider:
    """Plain base URL with optional basic auth. No proxy."""

    def __init__(self, base_url: str, username: Optional[str] = None, password: Optional[str] = None,
                 sap_client: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.password = password
        self.sap_client = sap_client

    @classmethod
    def from_env(cls) -> Optional["DirectConnectionProvider"]:
        url = os.getenv("ODATA_URL")
        if not url:
            return None
        return cls(url, os.getenv("ODATA_USER"), os.getenv("ODATA_PASS"), os.getenv("ODATA_SAP_CLIENT"))

    def describe(self) -> str:
        return f"direct {self.base_url}"

    def get_backend_connection(self, service_name: Optional[str] = None) -> BackendConnection:
        auth_headers = {}
        if self.username:
            auth_headers['Authorization'] = basic_auth_header(self.username, self.password or '')
        return BackendConnection(base_url=self.base_url, auth_headers=auth_headers,
                                 tenant_param=self.sap_client or None)


def connection_provider_from_env(verbose: bool = False):
    """
    Pick the connection provider configured in the environment.

    A complete BTP_DESTINATION_* set wins over ODATA_URL. Returns None when
    neither is configured.
    """
    destination_name = os.getenv("BTP_DESTINATION_NAME")
    destinations = DestinationServiceClient.from_env(verbose=verbose)
    if destinations and destination_name:
        return DestinationConnectionProvider(destinations, destination_name,
                                             connectivity=ConnectivityServiceClient.from_env(verbose=verbose),
                                             verbose=verbose)
    return DirectConnectionProvider.from_env()


class ODataHttpTransport:
    """GET requests against the backend, optionally through the connectivity proxy."""

    def __init__(self, proxy_url: str = DEFAULT_CONNECTIVITY_PROXY_URL, verbose: bool = False,
                 session: Optional[requests.Session] = None):
        self.proxy_url = proxy_url
        self.verbose = verbose
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

    def _log_verbose(self, message: str):
        _log("Transport", self.verbose, message)

    def http_get(self, url: str, headers: Dict[str, str], proxy_required: bool = False,
                 proxy_headers: Optional[Dict[str, str]] = None,
                 timeout: int = DATA_REQUEST_TIMEOUT) -> requests.Response:
        request_headers = dict(headers)
        kwargs = {'headers': request_headers, 'timeout': timeout}
        if proxy_required:
            request_headers.update(proxy_headers or {})
            kwargs['proxies'] = {'http': self.proxy_url, 'https': self.proxy_url}
            self._log_verbose(f"GET {url} via {self.proxy_url}")
        else:
            self._log_verbose(f"GET {url}")

        try:
            response = self.session.request('GET', url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise ODataTransportError(f"Request failed: {e}", url=url) from e

        if not response.ok:
            message = extract_sap_error(response)
            if response.status_code in (401, 403):
                message = f"{message} (authentication might be required or incorrect)"
            raise ODataTransportError(message, url=url, status=response.status_code, body=response.text)
        return response


class ServiceEndpoint:
    """One backend service: its connection provider, transport and service path."""

    def __init__(self, service_name: str, service_path: str, provider, transport: ODataHttpTransport):
        self.service_name = service_name
        self.service_path = '/' + service_path.strip('/')
        self.provider = provider
        self.transport = transport

    def resolve(self) -> BackendConnection:
        return self.provider.get_backend_connection(self.service_name)

    def service_url(self, connection: BackendConnection) -> str:
        return f"{connection.base_url}{self.service_path}"

    def get(self, connection: BackendConnection, relative_path: str,
            params: Sequence[Tuple[str, str]] = (), accept: str = 'application/json',
            timeout: int = DATA_REQUEST_TIMEOUT) -> Tuple[requests.Response, str]:
        """GET service_url/relative_path?params, returning the response and the URL used."""
        url = f"{self.service_url(connection)}/{relative_path.lstrip('/')}"
        query = encode_query_params(list(params)) if params else ""
        if query:
            url = f"{url}?{query}"
        headers = {'Accept': accept}
        headers.update(connection.auth_headers)
        response = self.transport.http_get(url, headers, proxy_required=connection.proxy_required,
                                           proxy_headers=connection.proxy_headers, timeout=timeout)
        return response, url


def tenant_pairs(connection: BackendConnection) -> List[Tuple[str, str]]:
    """The sap-client query parameter, when the connection carries a tenant."""
    return [(SAP_CLIENT_PARAM, connection.tenant_param)] if connection.tenant_param else []
