"""Page lifecycle state machine.

Every status change the pipeline asks the record store for is checked
against ``ALLOWED_TRANSITIONS`` first. Searchable states additionally
require captured text and a content hash.
"""

from sitecorpus.exceptions import InvalidTransitionError
from sitecorpus.models.website_models import (
    CONTENT_REQUIRED_STATUSES,
    Page,
    PageStatus,
)

S = PageStatus

ALLOWED_TRANSITIONS: dict[PageStatus, frozenset[PageStatus]] = {
    S.PENDING: frozenset(
        {S.PROCESSING, S.READY_FOR_INDEXING, S.ERROR, S.READY_FOR_DELETION}
    ),
    S.PROCESSING: frozenset(
        {
            S.PENDING,
            S.READY_FOR_INDEXING,
            S.READY_FOR_RE_INDEXING,
            S.READY_FOR_DELETION,
            S.ERROR,
        }
    ),
    S.READY_FOR_INDEXING: frozenset({S.ACTIVE, S.ERROR, S.READY_FOR_DELETION}),
    S.READY_FOR_RE_INDEXING: frozenset({S.ACTIVE, S.ERROR, S.READY_FOR_DELETION}),
    S.ACTIVE: frozenset({S.READY_FOR_RE_INDEXING, S.READY_FOR_DELETION}),
    S.READY_FOR_DELETION: frozenset(
        {
            S.DELETED,
            S.ACTIVE,
            S.READY_FOR_INDEXING,
            S.READY_FOR_RE_INDEXING,
            S.PENDING,
        }
    ),
    S.DELETED: frozenset({S.READY_FOR_INDEXING, S.PENDING}),
    S.REDIRECT: frozenset({S.READY_FOR_INDEXING, S.READY_FOR_DELETION, S.PENDING}),
    S.ERROR: frozenset(
        {
            S.PENDING,
            S.PROCESSING,
            S.READY_FOR_INDEXING,
            S.READY_FOR_RE_INDEXING,
            S.READY_FOR_DELETION,
        }
    ),
}


def can_transition(old: PageStatus, new: PageStatus) -> bool:
    """Staying in the same state is always allowed."""
    return old == new or new in ALLOWED_TRANSITIONS[old]


def check_transition(old: PageStatus, new: PageStatus) -> None:
    """Raise InvalidTransitionError when ``old -> new`` is not permitted."""
    if not can_transition(old, new):
        raise InvalidTransitionError(
            f"Page status cannot move from {old.value} to {new.value}"
        )


def check_page_transition(page: Page, new: PageStatus) -> None:
    """Check the move and, for searchable targets, that the page has content."""
    check_transition(page.status, new)
    if new in CONTENT_REQUIRED_STATUSES and not page.has_content:
        raise InvalidTransitionError(
            f"Page {page.url} has no captured text and cannot become {new.value}"
        )


def requeue_status(page: Page) -> PageStatus:
    """Ready state for a page that already holds content.

    Pages that were indexed before go back through re-indexing so the old
    document is retired.
    """
    if page.index_document_id or page.stale_index_document_id:
        return PageStatus.READY_FOR_RE_INDEXING
    return PageStatus.READY_FOR_INDEXING


def revert_status(page: Page) -> PageStatus:
    """State for a page marked for deletion that was observed present again."""
    if page.index_document_id and page.has_content:
        return PageStatus.ACTIVE
    if page.has_content:
        return requeue_status(page)
    return PageStatus.PENDING
