"""
BULKADS INTEGRATIONS
External service integrations

This package contains:
- meta_client: Graph API client and batch serializer
- slack: Slack notifications and alerts
"""

from .meta_client import GraphClient, GraphBatchSerializer, RemoteClient
from .slack import notify, alert_error, alert_rollback

__all__ = [
    'GraphClient', 'GraphBatchSerializer', 'RemoteClient',
    'notify', 'alert_error', 'alert_rollback',
]
