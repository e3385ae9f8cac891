from __future__ import annotations


class HomeworkHubError(Exception):
    """Base class for errors raised by the homework hub core."""


class MissingParameter(HomeworkHubError):
    def __init__(self, message: str = "Missing URL parameter") -> None:
        super().__init__(message)


class FeedFetchError(HomeworkHubError):
    """The calendar feed could not be retrieved or parsed."""


class SyncCommitError(HomeworkHubError):
    """The synced-task batch could not be committed; nothing was written."""


class StorePermissionError(HomeworkHubError):
    """The store refused a read or write for the current user."""


class TaskNotFound(HomeworkHubError):
    pass


class ReadOnlyTaskError(HomeworkHubError):
    """Synced tasks may only have their completion flag toggled."""


class InvalidTask(HomeworkHubError):
    pass
