"""
LDAP source directory.

This module implements the SourceDirectory interface on top of an LDAP or
Active Directory server: active and deleted users, groups, and group members,
all read with paged searches.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from ldap_scim_sync.directory import SourceDirectory, SourceGroup, SourceMember, SourceUser

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Active Directory userAccountControl ACCOUNTDISABLE bit
AD_DISABLED_FILTER = '(userAccountControl:1.2.840.113556.1.4.803:=2)'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPDirectory(SourceDirectory):
    """
    LDAP implementation of the source directory.

    Active users are those matching user_filter and active_user_filter,
    deleted users those matching user_filter and deleted_user_filter. With
    the Active Directory defaults, a disabled account counts as deleted.
    Group members are resolved either by memberOf reverse lookup or by
    reading the group's member attribute.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP directory with configuration.

        Args:
            config: LDAP configuration dictionary, with bind_password already
                resolved to the password itself
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(&(objectClass=person)(mail=*))')
        self.active_user_filter = config.get('active_user_filter', f'(!{AD_DISABLED_FILTER})')
        self.deleted_user_filter = config.get('deleted_user_filter', AD_DISABLED_FILTER)

        self.group_base_dn = config.get('group_base_dn', '')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.group_name_attribute = config.get('group_name_attribute', 'cn')
        self.use_memberof = config.get('use_memberof', True)

        self.email_attribute = config.get('email_attribute', 'mail')
        self.given_name_attribute = config.get('given_name_attribute', 'givenName')
        self.family_name_attribute = config.get('family_name_attribute', 'sn')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def user_attributes(self) -> List[str]:
        return [self.email_attribute, self.given_name_attribute, self.family_name_attribute]

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                # Raises LDAPException on failure, returns nothing
                self.connection.open()

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding LDAP connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def close(self):
        self.disconnect()

    def _ensure_connected(self):
        if not self._connected:
            self.connect()

    def list_active_users(self) -> List[SourceUser]:
        search_filter = f"(&{self.user_filter}{self.active_user_filter})"
        users = self._search_users(search_filter)
        logger.info(f"Retrieved {len(users)} active users")
        return users

    def list_deleted_users(self) -> List[SourceUser]:
        search_filter = f"(&{self.user_filter}{self.deleted_user_filter})"
        users = self._search_users(search_filter)
        logger.info(f"Retrieved {len(users)} deleted users")
        return users

    def _search_users(self, search_filter: str) -> List[SourceUser]:
        entries = self._paged_search(self._user_base(), search_filter, self.user_attributes)
        users = []
        for entry in entries:
            user = self._entry_to_user(entry)
            if user is not None:
                users.append(user)
        return users

    def list_groups(self) -> List[SourceGroup]:
        search_base = self.group_base_dn or self._get_domain_base()
        entries = self._paged_search(search_base, self.group_filter, [self.group_name_attribute])

        groups = []
        for entry in entries:
            name = self._first_value(entry, self.group_name_attribute)
            if not name:
                logger.warning(f"Group entry has no {self.group_name_attribute}: {entry.entry_dn}")
                continue
            groups.append(SourceGroup(name=name, dn=str(entry.entry_dn)))

        logger.info(f"Retrieved {len(groups)} groups")
        return groups

    def list_group_members(self, group: SourceGroup) -> List[SourceMember]:
        """
        Retrieve the members of a group that carry an email address.

        Raises:
            LDAPQueryError: If any query fails
        """
        logger.debug(f"Retrieving members of group: {group.dn}")

        if self.use_memberof:
            members = self._get_members_by_memberof(group.dn)
        else:
            members = self._get_members_by_group_attribute(group.dn)

        logger.debug(f"Group {group.name} has {len(members)} members with email")
        return members

    def _get_members_by_memberof(self, group_dn: str) -> List[SourceMember]:
        """Get group members using memberOf reverse lookup (Active Directory style)."""
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        entries = self._paged_search(self._user_base(), search_filter, [self.email_attribute])
        return self._entries_to_members(entries)

    def _get_members_by_group_attribute(self, group_dn: str) -> List[SourceMember]:
        """Get group members by reading the group's member attribute."""
        entries = self._search(group_dn, '(objectClass=*)', ['member'], scope=BASE)
        if not entries:
            raise LDAPQueryError(f"Group not found: {group_dn}")

        member_dns = entries[0].entry_attributes_as_dict.get('member', [])

        members = []
        for member_dn in member_dns:
            member_entries = self._search(member_dn, '(objectClass=*)', [self.email_attribute], scope=BASE)
            members.extend(self._entries_to_members(member_entries))
        return members

    def _entries_to_members(self, entries) -> List[SourceMember]:
        members = []
        for entry in entries:
            email = self._first_value(entry, self.email_attribute)
            if email:
                members.append(SourceMember(email=email, dn=str(entry.entry_dn)))
        return members

    def _entry_to_user(self, entry) -> Optional[SourceUser]:
        """Map an LDAP entry to a SourceUser; entries without email are skipped."""
        email = self._first_value(entry, self.email_attribute)
        if not email:
            logger.warning(f"User entry has no {self.email_attribute}: {entry.entry_dn}")
            return None

        return SourceUser(
            primary_email=email,
            given_name=self._first_value(entry, self.given_name_attribute) or '',
            family_name=self._first_value(entry, self.family_name_attribute) or '',
            dn=str(entry.entry_dn)
        )

    @staticmethod
    def _first_value(entry, attribute: str) -> Optional[str]:
        values = entry.entry_attributes_as_dict.get(attribute) or []
        if not values:
            return None
        value = values[0]
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        return str(value)

    def _search(self, search_base: str, search_filter: str, attributes: List[str], scope=SUBTREE) -> list:
        """Run a single non-paged search and return its entries."""
        self._ensure_connected()
        try:
            self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        result = self.connection.result or {}
        # noSuchObject on a BASE search simply means the entry is gone
        if result.get('result') not in (0, 32):
            raise LDAPQueryError(f"Search failed: {result}")
        return list(self.connection.entries)

    def _paged_search(self, search_base: str, search_filter: str, attributes: List[str]) -> list:
        """
        Run a subtree search using the simple paged results control.

        Returns:
            Entries from every page
        """
        self._ensure_connected()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0

        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                if not success and (self.connection.result or {}).get('result') != 0:
                    raise LDAPQueryError(f"Search failed: {self.connection.result}")

                page_count += 1
                entries.extend(self.connection.entries)

                cookie = self._paged_cookie()
                if not cookie:
                    break
        except LDAPException as e:
            raise LDAPQueryError(f"Paginated search failed: {e}")

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def _paged_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        return controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')

    def _user_base(self) -> str:
        return self.user_base_dn or self._get_domain_base()

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")
