"""
Lease module.
Contains the lease manager that grants, renews, releases and reclaims leases.
"""

from jobqueue.lease.manager import LeaseManager

__all__ = ["LeaseManager"]
