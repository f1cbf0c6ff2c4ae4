"""Realtime sync — change feed → cache invalidation + notices.

Learn: Events flow one way:
1. Postgres triggers → NOTIFY table_changes (source.py)
2. SessionSubscriptions demuxes per table for each live session
3. InvalidationRouter marks cached queries stale, NotificationDispatcher
   raises toasts for finished tasks and moving goals
4. Redis PUBLISH → WebSocket → frontend (pubsub.py, websocket.py)
"""
