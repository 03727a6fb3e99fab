"""Authentication.

Users register with email/password (bcrypt) and receive a JWT access
token. The request layer turns the token into a CurrentUser and hands
its id to the broadcast service explicitly.
"""
