from kinship.realtime.feed import ChangeEvent, ChangeFeed, ChangeType, Subscription, feed

__all__ = ["ChangeEvent", "ChangeFeed", "ChangeType", "Subscription", "feed"]
