"""Background tasks for mailctl.

AIDEV-NOTE: This module contains async background tasks that run
throughout the application lifecycle.
"""

from mailctl.tasks.keepalive import KeepaliveTask

__all__ = ["KeepaliveTask"]
