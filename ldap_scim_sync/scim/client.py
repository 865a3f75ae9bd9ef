"""
SCIM 2.0 target directory.

This module implements the TargetDirectory interface against a SCIM 2.0
service provider (RFC 7643/7644), such as the SCIM endpoint of AWS IAM
Identity Center. Users are created with their primary email as userName.
"""

import logging
from typing import Dict, List, Any

from ldap_scim_sync.directory import LookupOutcome, TargetDirectory, TargetGroup, TargetUser
from .base import SCIMTransport, SCIMError

logger = logging.getLogger(__name__)

USER_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:User'
GROUP_SCHEMA = 'urn:ietf:params:scim:schemas:core:2.0:Group'
PATCH_OP_SCHEMA = 'urn:ietf:params:scim:api:messages:2.0:PatchOp'


def quote_filter_value(value: str) -> str:
    """Quote a string for use as a SCIM filter comparison value."""
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


class SCIMDirectory(SCIMTransport, TargetDirectory):
    """
    SCIM 2.0 client implementation of the target directory.

    Every method except find_user_by_email() raises SCIMError on failure.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SCIM directory client.

        Args:
            config: SCIM configuration dictionary
        """
        super().__init__(config)
        self.page_size = config.get('page_size', 100)

        logger.info(f"Initialized SCIM directory client for {self.host}")

    def find_user_by_email(self, email: str) -> LookupOutcome:
        """
        Find a user whose userName equals the given email.

        Returns:
            LookupOutcome.found(user), LookupOutcome.not_found(), or
            LookupOutcome.failed(error) when the request itself failed
        """
        try:
            response = self.request('GET', '/Users', params={
                'filter': f"userName eq {quote_filter_value(email)}"
            })
        except SCIMError as e:
            if e.status_code == 404:
                return LookupOutcome.not_found()
            logger.debug(f"Error searching for user '{email}': {e}")
            return LookupOutcome.failed(e)

        for resource in response.get('Resources', []):
            if resource.get('userName') == email:
                return LookupOutcome.found(self._parse_user(resource))

        return LookupOutcome.not_found()

    def create_user(self, given_name: str, family_name: str, email: str) -> TargetUser:
        display_name = ' '.join(part for part in (given_name, family_name) if part) or email
        payload = {
            'schemas': [USER_SCHEMA],
            'userName': email,
            'name': {
                'givenName': given_name,
                'familyName': family_name,
            },
            'displayName': display_name,
            'active': True,
            'emails': [
                {'value': email, 'type': 'work', 'primary': True}
            ],
        }

        response = self.request('POST', '/Users', body=payload)
        if not response.get('id'):
            raise SCIMError(f"User creation response missing id for '{email}'")

        user = self._parse_user(response)
        logger.debug(f"Created user '{email}' with id {user.id}")
        return user

    def delete_user(self, user: TargetUser) -> None:
        self.request('DELETE', f'/Users/{user.id}')

    def get_groups(self) -> Dict[str, TargetGroup]:
        """
        List every group, following SCIM pagination.

        Returns:
            Mapping of displayName to group
        """
        groups = {}
        start_index = 1

        while True:
            response = self.request('GET', '/Groups', params={
                'startIndex': start_index,
                'count': self.page_size
            })
            resources = response.get('Resources', [])

            for resource in resources:
                group = self._parse_group(resource)
                groups[group.display_name] = group

            start_index += len(resources)
            total = response.get('totalResults', 0)
            if not resources or start_index > total:
                break

        logger.info(f"Retrieved {len(groups)} groups from {self.host}")
        return groups

    def create_group(self, display_name: str) -> TargetGroup:
        payload = {
            'schemas': [GROUP_SCHEMA],
            'displayName': display_name,
            'members': [],
        }

        response = self.request('POST', '/Groups', body=payload)
        if not response.get('id'):
            raise SCIMError(f"Group creation response missing id for '{display_name}'")

        return self._parse_group(response)

    def delete_group(self, group: TargetGroup) -> None:
        self.request('DELETE', f'/Groups/{group.id}')

    def is_user_in_group(self, user: TargetUser, group: TargetGroup) -> bool:
        response = self.request('GET', '/Groups', params={
            'filter': f"id eq {quote_filter_value(group.id)} and members eq {quote_filter_value(user.id)}"
        })

        total = response.get('totalResults')
        if total is not None:
            return total > 0
        return bool(response.get('Resources'))

    def add_user_to_group(self, user: TargetUser, group: TargetGroup) -> None:
        self._patch_members(group, {
            'op': 'add',
            'path': 'members',
            'value': [{'value': user.id}],
        })

    def remove_user_from_group(self, user: TargetUser, group: TargetGroup) -> None:
        self._patch_members(group, {
            'op': 'remove',
            'path': f"members[value eq {quote_filter_value(user.id)}]",
        })

    def _patch_members(self, group: TargetGroup, operation: Dict[str, Any]):
        payload = {
            'schemas': [PATCH_OP_SCHEMA],
            'Operations': [operation],
        }
        self.request('PATCH', f'/Groups/{group.id}', body=payload)

    def service_provider_config(self) -> Dict[str, Any]:
        """Fetch /ServiceProviderConfig, used to verify reachability and credentials."""
        return self.request('GET', '/ServiceProviderConfig')

    def close(self):
        self.close_connection()

    @staticmethod
    def _parse_user(resource: Dict[str, Any]) -> TargetUser:
        name = resource.get('name') or {}
        emails: List[Dict[str, Any]] = resource.get('emails') or []

        primary_email = ''
        for entry in emails:
            if entry.get('primary'):
                primary_email = entry.get('value', '')
                break
        if not primary_email and emails:
            primary_email = emails[0].get('value', '')

        return TargetUser(
            id=str(resource['id']),
            user_name=resource.get('userName', ''),
            given_name=name.get('givenName', ''),
            family_name=name.get('familyName', ''),
            primary_email=primary_email,
            active=resource.get('active', True),
        )

    @staticmethod
    def _parse_group(resource: Dict[str, Any]) -> TargetGroup:
        return TargetGroup(id=str(resource['id']), display_name=resource.get('displayName', ''))
