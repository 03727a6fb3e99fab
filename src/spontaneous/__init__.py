"""Spontaneous — time-bounded broadcasts with join requests.

Users publish broadcasts (an invitation to join some activity that closes
at a deadline), other users ask to join, and the creator accepts or
rejects each request. Broadcasts expire on their own once the deadline
passes, and creators are notified asynchronously about new join requests.
"""

__version__ = "0.1.0"
