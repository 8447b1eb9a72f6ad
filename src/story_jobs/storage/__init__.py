"""
Networked storage backends.

The in-memory and file stores live in ``story_jobs.store``; backends that
need a server connection live here.
"""

from .redis import RedisJobStore

__all__ = ["RedisJobStore"]
