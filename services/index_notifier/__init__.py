"""
Index Notifier Service.

This service is responsible for:
- Following a git-versioned package index
- Reconstructing new version / yank / unyank events from commit diffs
- Announcing events in a broadcast chat and to individual subscribers
"""

__version__ = "1.0.0"
__author__ = "IndexNotifier Team"
__description__ = "Package index change detection and notification service"
