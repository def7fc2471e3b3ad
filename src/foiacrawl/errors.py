"""
Exception types shared across the frontier, store and work queues.
"""


class FoiaCrawlError(Exception):
    """Base class for foiacrawl errors."""


class ConfigError(FoiaCrawlError):
    """Invalid or missing source configuration."""


class StorageError(FoiaCrawlError):
    """Content could not be written to the document store."""


class ClaimError(FoiaCrawlError):
    """A claim transaction was aborted and rolled back."""


class CrawlFailedError(FoiaCrawlError):
    """Every seed of a discovery crawl failed to fetch."""

    def __init__(self, source_id: str, failures: int):
        self.source_id = source_id
        self.failures = failures
        super().__init__(
            f"Crawl of {source_id} failed: all {failures} seed URLs could not be fetched"
        )


# ------------------ work queue ------------------

class WorkQueueError(FoiaCrawlError):
    """Base class for work queue failures."""


class DatabaseError(WorkQueueError):
    def __init__(self, message: str):
        super().__init__(f"Database error: {message}")


class AlreadyClaimedError(WorkQueueError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item already claimed: {item_id}")


class NotFoundError(WorkQueueError):
    def __init__(self, message: str):
        super().__init__(f"Not found: {message}")


class QueueConnectionError(WorkQueueError):
    def __init__(self, message: str):
        super().__init__(f"Connection error: {message}")


class OtherError(WorkQueueError):
    pass


class GoogleDriveError(FoiaCrawlError):
    """A Drive folder could not be listed."""


class DriveRateLimitedError(GoogleDriveError):
    def __init__(self):
        super().__init__("Rate limited by Google Drive")
