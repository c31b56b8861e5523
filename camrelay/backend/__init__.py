"""External collaborators: directory store, notification sender, token service."""
from .directory import DirectoryKeys, DirectoryStore, InMemoryDirectory
from .notifier import LogNotifier, NotificationSender, SendGridNotifier, build_notifier
from .tokens import TokenService

__all__ = [
    "DirectoryKeys",
    "DirectoryStore",
    "InMemoryDirectory",
    "LogNotifier",
    "NotificationSender",
    "SendGridNotifier",
    "TokenService",
    "build_notifier",
]
