"""Multi-tenant change notification processor.

This package processes change-notification events from a queue and performs
AWS operations on behalf of many isolated tenant accounts, assuming a
dedicated role per tenant and service.
"""

__version__ = "1.0.0"
__author__ = "Tenant Notifier Team"
