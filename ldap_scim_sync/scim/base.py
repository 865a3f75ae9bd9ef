"""
HTTP transport for SCIM 2.0 service providers.

This module provides the connection, TLS and bearer-token handling shared by
every SCIM request, along with the error types raised for failed requests.
"""

import json
import ssl
import logging
import tempfile
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from ldap_scim_sync.retry import retry_call, is_retryable_error, create_retry_callback

logger = logging.getLogger(__name__)

SCIM_CONTENT_TYPE = 'application/scim+json'


class SCIMError(Exception):
    """Base exception for SCIM API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SCIMAuthenticationError(SCIMError):
    """Raised when the SCIM endpoint rejects the access token."""
    pass


class SCIMTransport:
    """
    JSON-over-HTTP client for a SCIM base URL.

    Holds a single persistent connection that is reopened after any
    transport failure. Requests are retried only for transient failures and
    only when max_retries is configured above zero.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the SCIM transport.

        Args:
            config: SCIM configuration dictionary
        """
        self.config = config
        self.endpoint = config['endpoint']
        self.access_token = config['access_token']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.max_retries = config.get('max_retries', 0)
        self.retry_wait = config.get('retry_wait_seconds', 5)

        self.parsed_url = urlparse(self.endpoint)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {'Authorization': f"Bearer {self.access_token}"}

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(keystore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
            else:
                raise SCIMError(f"Unsupported truststore type: {truststore_type}")

            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise SCIMError(f"Truststore loading failed: {e}")

    def _load_client_cert(self, keystore_file: str):
        """Load a client certificate for mutual TLS."""
        keystore_type = self.config.get('keystore_type', 'PEM').upper()
        keystore_password = self.config.get('keystore_password')

        try:
            if keystore_type == 'PEM':
                self.ssl_context.load_cert_chain(keystore_file, password=keystore_password)
            elif keystore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(keystore_file, 'rb') as f:
                    p12_data = f.read()

                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    p12_data, keystore_password.encode() if keystore_password else None
                )

                if not (private_key and certificate):
                    raise SCIMError(f"Keystore {keystore_file} has no key and certificate pair")

                # ssl only loads client chains from files
                with tempfile.NamedTemporaryFile(mode='wb', suffix='.pem') as chain_file:
                    chain_file.write(certificate.public_bytes(serialization.Encoding.PEM))
                    chain_file.write(private_key.private_bytes(
                        encoding=serialization.Encoding.PEM,
                        format=serialization.PrivateFormat.PKCS8,
                        encryption_algorithm=serialization.NoEncryption()
                    ))
                    chain_file.flush()
                    self.ssl_context.load_cert_chain(chain_file.name)
            else:
                raise SCIMError(f"Unsupported keystore type: {keystore_type}")

            logger.info(f"Loaded {keystore_type} client certificate: {keystore_file}")

        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load client certificate {keystore_file}: {e}")
            raise SCIMError(f"Client certificate loading failed: {e}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make a SCIM request, retrying transient failures when configured.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: Resource path relative to the endpoint, e.g. '/Users'
            body: JSON request body
            params: Query string parameters

        Returns:
            Parsed JSON response, or an empty dict for empty responses

        Raises:
            SCIMError: If the request fails
        """
        return retry_call(
            self._request_once,
            args=(method, path, body, params),
            max_attempts=self.max_retries + 1,
            delay=self.retry_wait,
            exceptions=(SCIMError,),
            should_retry=is_retryable_error,
            on_retry=create_retry_callback(f"SCIM {method} {path}")
        )

    def _request_once(self, method: str, path: str, body: Optional[Dict] = None,
                      params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params)

        headers = dict(self.auth_headers)
        headers['Accept'] = SCIM_CONTENT_TYPE

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = SCIM_CONTENT_TYPE

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            self.close_connection()
            raise SCIMError(f"Connection error to {self.host}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status in (401, 403):
            raise SCIMAuthenticationError(
                f"Authentication failed for {self.host}: HTTP {response.status}",
                status_code=response.status
            )

        if response.status >= 400:
            detail = self._error_detail(response_data)
            message = f"HTTP {response.status} {response.reason} for {method} {path}"
            if detail:
                message += f": {detail}"
            raise SCIMError(message, status_code=response.status, detail=detail)

        if not response_data:
            return {}

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise SCIMError(f"Invalid JSON response from {self.host}: {e}", status_code=response.status)

    @staticmethod
    def _error_detail(response_data: str) -> Optional[str]:
        """Extract the 'detail' member of a SCIM error response, if any."""
        if not response_data:
            return None
        try:
            return json.loads(response_data).get('detail')
        except (json.JSONDecodeError, AttributeError):
            return response_data[:200]

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
