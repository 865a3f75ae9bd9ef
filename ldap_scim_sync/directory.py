"""
Directory data model and port interfaces.

This module defines the value types exchanged between the reconciler and the
two directory systems, along with the abstract interfaces that the LDAP source
and the SCIM target must implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class SourceUser:
    """A user as reported by the source directory."""
    primary_email: str
    given_name: str = ''
    family_name: str = ''
    dn: str = ''


@dataclass(frozen=True)
class SourceGroup:
    """A group as reported by the source directory, keyed by display name."""
    name: str
    dn: str = ''


@dataclass(frozen=True)
class SourceMember:
    """A member entry of a source group."""
    email: str
    dn: str = ''


@dataclass(frozen=True)
class TargetUser:
    """A user that exists in the target directory."""
    id: str
    user_name: str
    given_name: str = ''
    family_name: str = ''
    primary_email: str = ''
    active: bool = True


@dataclass(frozen=True)
class TargetGroup:
    """A group that exists in the target directory."""
    id: str
    display_name: str


class LookupOutcome:
    """
    Result of looking up a target user by email.

    A lookup either found the user, found nothing, or failed. A failure keeps
    the exception so the caller can decide whether to treat it as a miss or
    surface it.
    """

    FOUND = 'found'
    NOT_FOUND = 'not_found'
    ERROR = 'error'

    def __init__(self, status: str, user: Optional[TargetUser] = None,
                 error: Optional[Exception] = None):
        self.status = status
        self.user = user
        self.error = error

    @classmethod
    def found(cls, user: TargetUser) -> 'LookupOutcome':
        return cls(cls.FOUND, user=user)

    @classmethod
    def not_found(cls) -> 'LookupOutcome':
        return cls(cls.NOT_FOUND)

    @classmethod
    def failed(cls, error: Exception) -> 'LookupOutcome':
        return cls(cls.ERROR, error=error)

    @property
    def is_found(self) -> bool:
        return self.status == self.FOUND

    @property
    def is_error(self) -> bool:
        return self.status == self.ERROR

    def __eq__(self, other):
        if not isinstance(other, LookupOutcome):
            return NotImplemented
        return (self.status, self.user, self.error) == (other.status, other.user, other.error)

    def __repr__(self):
        if self.status == self.FOUND:
            return f"LookupOutcome.found({self.user!r})"
        if self.status == self.ERROR:
            return f"LookupOutcome.failed({self.error!r})"
        return "LookupOutcome.not_found()"


class SourceDirectory(ABC):
    """
    Read-only interface to the source-of-truth directory.

    Every listing method raises on failure; the reconciler treats any such
    failure as fatal for the run.
    """

    @abstractmethod
    def list_deleted_users(self) -> List[SourceUser]:
        """
        List users the source reports as deleted.

        Returns:
            Users whose target counterparts should be removed
        """
        pass

    @abstractmethod
    def list_active_users(self) -> List[SourceUser]:
        """
        List users that are currently active in the source.

        Returns:
            Users with given name, family name and primary email populated
        """
        pass

    @abstractmethod
    def list_groups(self) -> List[SourceGroup]:
        """
        List all groups in the source, in source order.
        """
        pass

    @abstractmethod
    def list_group_members(self, group: SourceGroup) -> List[SourceMember]:
        """
        List the members of a source group.

        Args:
            group: Group previously returned by list_groups()

        Returns:
            Member descriptors carrying an email address
        """
        pass

    def close(self):
        """Release any connection held by the directory."""
        pass


class TargetDirectory(ABC):
    """
    Read/write interface to the target directory.

    Only find_user_by_email() reports failure through its return value.
    Every other method raises, and the reconciler aborts on the first raise.
    """

    @abstractmethod
    def find_user_by_email(self, email: str) -> LookupOutcome:
        """
        Look up a user by primary email.

        Args:
            email: Primary email, compared exactly

        Returns:
            LookupOutcome describing whether the user was found
        """
        pass

    @abstractmethod
    def create_user(self, given_name: str, family_name: str, email: str) -> TargetUser:
        """
        Create a user in the target directory.

        Returns:
            The created user with its assigned id and username
        """
        pass

    @abstractmethod
    def delete_user(self, user: TargetUser) -> None:
        pass

    @abstractmethod
    def get_groups(self) -> Dict[str, TargetGroup]:
        """
        List all target groups.

        Returns:
            Mapping of display name to group
        """
        pass

    @abstractmethod
    def create_group(self, display_name: str) -> TargetGroup:
        pass

    @abstractmethod
    def delete_group(self, group: TargetGroup) -> None:
        pass

    @abstractmethod
    def is_user_in_group(self, user: TargetUser, group: TargetGroup) -> bool:
        pass

    @abstractmethod
    def add_user_to_group(self, user: TargetUser, group: TargetGroup) -> None:
        pass

    @abstractmethod
    def remove_user_from_group(self, user: TargetUser, group: TargetGroup) -> None:
        pass

    def close(self):
        """Release any connection held by the directory."""
        pass
