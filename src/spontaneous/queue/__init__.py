"""Durable work queues.

Join requests are announced to their broadcast's creator through a Redis
Stream: the request path appends one entry and returns, the notification
worker consumes it later.
"""
