"""
Reconciliation of users, groups and group memberships from the source
directory into the target directory.

A DirectorySync instance lives for exactly one run. It first reconciles users,
building a correlation table of target users keyed by username, and then
reconciles groups and memberships against that table.
"""

import logging
from typing import Dict, Optional

from ldap_scim_sync.directory import (
    LookupOutcome,
    SourceDirectory,
    SourceUser,
    TargetDirectory,
    TargetGroup,
    TargetUser,
)
from ldap_scim_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)

LOOKUP_ERRORS_TREAT_AS_MISSING = 'treat_as_missing'
LOOKUP_ERRORS_RAISE = 'raise'
LOOKUP_ERROR_POLICIES = (LOOKUP_ERRORS_TREAT_AS_MISSING, LOOKUP_ERRORS_RAISE)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncCancelled(SyncError):
    """Raised when a run is cancelled between reconciliation passes."""
    pass


class DirectorySync:
    """
    Reconciles a target directory against a source directory.

    sync_users() must complete before sync_groups() is called: membership
    reconciliation only considers users present in the correlation table.
    Port exceptions are never caught or wrapped here, so the first failing
    fetch or mutation ends the run with the original exception.
    """

    def __init__(self, source: SourceDirectory, target: TargetDirectory,
                 lookup_errors: str = LOOKUP_ERRORS_TREAT_AS_MISSING):
        """
        Initialize the reconciler.

        Args:
            source: Source directory port
            target: Target directory port
            lookup_errors: 'treat_as_missing' to handle failed user lookups like
                a miss, or 'raise' to abort the run on them
        """
        if lookup_errors not in LOOKUP_ERROR_POLICIES:
            raise ValueError(f"Unknown lookup error policy: {lookup_errors}")

        self.source = source
        self.target = target
        self.lookup_errors = lookup_errors

        # Target username -> target user, rebuilt on every run
        self.users: Dict[str, TargetUser] = {}

        self.stats = {
            'users_created': 0,
            'users_deleted': 0,
            'users_correlated': 0,
            'lookup_errors': 0,
            'groups_created': 0,
            'groups_deleted': 0,
            'groups_correlated': 0,
            'memberships_added': 0,
            'memberships_removed': 0,
            'membership_checks': 0,
        }

    def sync_users(self):
        """
        Delete users the source reports as deleted, then correlate or create
        every active source user.
        """
        logger.debug("Fetching deleted users from source")
        deleted_users = self.source.list_deleted_users()

        for user in deleted_users:
            existing = self._lookup(user)
            if existing is None:
                continue

            logger.info(f"Deleting user {user.primary_email}")
            self.target.delete_user(existing)
            audit_logger.log_user_operation('delete', user.primary_email)
            self.stats['users_deleted'] += 1

        logger.debug("Fetching active users from source")
        active_users = self.source.list_active_users()

        for user in active_users:
            logger.debug(f"Finding user {user.primary_email}")
            existing = self._lookup(user)
            if existing is not None:
                self.users[existing.user_name] = existing
                self.stats['users_correlated'] += 1
                continue

            logger.info(f"Creating user {user.primary_email}")
            created = self.target.create_user(user.given_name, user.family_name, user.primary_email)
            audit_logger.log_user_operation('create', user.primary_email)
            self.stats['users_created'] += 1

            self.users[created.user_name] = created

        logger.info(f"User sync complete: {len(self.users)} users correlated, "
                    f"{self.stats['users_created']} created, {self.stats['users_deleted']} deleted")

    def _lookup(self, user: SourceUser) -> Optional[TargetUser]:
        """Resolve the target counterpart of a source user, applying the lookup error policy."""
        outcome = self.target.find_user_by_email(user.primary_email)

        if outcome.status == LookupOutcome.FOUND:
            return outcome.user

        if outcome.status == LookupOutcome.ERROR:
            self.stats['lookup_errors'] += 1
            if self.lookup_errors == LOOKUP_ERRORS_RAISE:
                raise outcome.error
            logger.warning(f"Lookup of {user.primary_email} failed, treating as not found: {outcome.error}")

        return None

    def sync_groups(self):
        """
        Correlate or create every source group, converge its membership over
        all correlated users, then delete target groups left uncorrelated.

        Membership is checked for every correlated user in every group, so a
        run makes (users x groups) membership checks against the target.
        """
        logger.debug("Fetching target groups")
        target_groups = self.target.get_groups()

        logger.debug("Fetching source groups")
        source_groups = self.source.list_groups()

        correlated: Dict[str, TargetGroup] = {}

        for source_group in source_groups:
            name = source_group.name
            logger.debug(f"Checking group {name}")

            group = target_groups.get(name)
            if group is not None:
                logger.debug(f"Found group {name}")
                self.stats['groups_correlated'] += 1
            else:
                logger.info(f"Creating group {name}")
                group = self.target.create_group(name)
                audit_logger.log_group_operation('create', name)
                self.stats['groups_created'] += 1
            correlated[group.display_name] = group

            members = self.source.list_group_members(source_group)
            wanted = {m.email for m in members if m.email in self.users}

            logger.info(f"Syncing members of group {name}")
            self._sync_members(group, wanted)

        logger.info("Cleaning up target groups")
        for group in target_groups.values():
            if group.display_name in correlated:
                continue
            logger.info(f"Deleting group {group.display_name}")
            self.target.delete_group(group)
            audit_logger.log_group_operation('delete', group.display_name)
            self.stats['groups_deleted'] += 1

    def _sync_members(self, group: TargetGroup, wanted: set):
        """Add or remove every correlated user so the group matches the wanted usernames."""
        for user_name, user in self.users.items():
            logger.debug(f"Checking whether {user_name} is in group {group.display_name}")
            is_member = self.target.is_user_in_group(user, group)
            self.stats['membership_checks'] += 1

            if user_name in wanted:
                if not is_member:
                    logger.info(f"Adding {user_name} to group {group.display_name}")
                    self.target.add_user_to_group(user, group)
                    audit_logger.log_membership_operation('add', user_name, group.display_name)
                    self.stats['memberships_added'] += 1
            elif is_member:
                logger.info(f"Removing {user_name} from group {group.display_name}")
                self.target.remove_user_from_group(user, group)
                audit_logger.log_membership_operation('remove', user_name, group.display_name)
                self.stats['memberships_removed'] += 1
