from kinship.friends.access import AccessResolver, GrantSnapshot
from kinship.friends.graph_store import Decision, FriendGraphStore

__all__ = ["AccessResolver", "Decision", "FriendGraphStore", "GrantSnapshot"]
