"""
LDAP SCIM Sync - Mirror users, groups and group memberships from an LDAP directory into a SCIM service provider.

This package reconciles a target SCIM 2.0 directory against an LDAP or
Active Directory source of truth, one direction, recomputed from live reads on every run.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
