"""Change-feed subscription layer."""

from crmsync.feed.manager import ChangeFeed, ChannelState, SubscriptionHandle, SubscriptionManager

__all__ = ["ChangeFeed", "ChannelState", "SubscriptionHandle", "SubscriptionManager"]
