"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .crowd_feed import crowd_feed, CrowdFeed, CrowdSubscription

__all__ = ['crowd_feed', 'CrowdFeed', 'CrowdSubscription']
