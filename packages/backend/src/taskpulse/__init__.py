"""TaskPulse — realtime sync for a task, project and goal tracker.

Keeps every open browser session fresh: listens to row changes on the
tracker's tables, tells each session which cached queries went stale,
and raises toasts when a task is finished or a goal moves forward.
"""

__version__ = "0.1.0"
