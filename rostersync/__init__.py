"""
rostersync: one-way synchronisation of a membership roster into a hosted
directory (user accounts and group memberships).
"""

__version__ = "1.0.0"
