"""Exception types raised by the page lifecycle pipeline."""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class InvalidSeedError(PipelineError, ValueError):
    """Seed location or display name was rejected before any external call."""


class DiscoveryError(PipelineError):
    """URL enumeration failed or produced nothing usable."""


class FetchBatchError(PipelineError):
    """A batch content fetch could not be submitted, failed, or timed out."""

    def __init__(self, message: str, batch_id: str | None = None):
        super().__init__(message)
        self.batch_id = batch_id


class WebsiteNotFoundError(PipelineError, LookupError):
    """No website exists for the given id."""


class PageNotFoundError(PipelineError, LookupError):
    """No page exists for the given URL within the website."""


class InvalidUrlError(PipelineError, ValueError):
    """A page URL was rejected, e.g. it belongs to another domain."""


class ReconcileNotAllowedError(PipelineError):
    """Reconcile was requested for a website that was never captured."""


class InvalidTransitionError(PipelineError):
    """A page status change is not permitted by the lifecycle."""


class RecordStoreError(PipelineError):
    """A record store call failed or returned no data."""


class IndexServiceError(PipelineError):
    """The semantic index service rejected or failed a call.

    ``transient`` marks errors worth retrying (rate limits, timeouts, 5xx).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class DocumentNotFoundError(IndexServiceError):
    """The document handle no longer exists in the index."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404, transient=False)
