"""Authentication.

Learn: The tracker app issues the tokens; this package only verifies
them so each WebSocket session is bound to exactly one user.
"""
