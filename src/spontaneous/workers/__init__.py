"""Background workers.

Both run inside the API process (started from the lifespan) or on their
own via the `spontaneous` CLI:
- ExpirySweeper: marks broadcasts past their deadline as expired
- NotificationWorker: tells creators about new join requests
"""
