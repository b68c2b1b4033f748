"""
Shared Kernel Module
====================

Generic infrastructure shared by every bounded context of the service
desk (currently the SLA escalation context).

DO NOT add escalation business logic to the shared kernel.
"""
