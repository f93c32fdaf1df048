"""Supabase-backed record store for websites, pages and jobs."""

from collections import Counter
from datetime import datetime
from typing import Any, Callable, Sequence

import logfire
from supabase import Client

from sitecorpus.db.client import get_supabase_client
from sitecorpus.db.query_executor import QueryTimer, timed_query
from sitecorpus.exceptions import RecordStoreError
from sitecorpus.models.website_models import (
    Job,
    JobCreate,
    JobStatus,
    JobType,
    JobUpdate,
    Page,
    PageStatus,
    PageUpdate,
    PageUpsert,
    Website,
    WebsiteCreate,
    WebsiteUpdate,
    utc_now,
)

WEBSITES_TABLE = "websites"
PAGES_TABLE = "pages"
JOBS_TABLE = "process_jobs"

# PostgREST caps a single select; larger reads are paged
_PAGE_SIZE = 1000


class SupabaseRecordStore:
    """RecordStore implementation over the Supabase PostgREST API."""

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    def _fetch_all(self, build_query: Callable[[], Any]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        start = 0
        while True:
            result = build_query().range(start, start + _PAGE_SIZE - 1).execute()
            batch = result.data or []
            rows.extend(batch)
            if len(batch) < _PAGE_SIZE:
                return rows
            start += _PAGE_SIZE

    # =========================================================================
    # Websites
    # =========================================================================

    def get_website(self, website_id: str) -> Website | None:
        with timed_query("get_website", website_id=website_id):
            result = (
                self.client.table(WEBSITES_TABLE)
                .select("*")
                .eq("id", website_id)
                .limit(1)
                .execute()
            )
        return Website.model_validate(result.data[0]) if result.data else None

    def get_website_by_domain(self, domain: str) -> Website | None:
        with timed_query("get_website_by_domain", domain=domain):
            result = (
                self.client.table(WEBSITES_TABLE)
                .select("*")
                .eq("domain", domain)
                .limit(1)
                .execute()
            )
        return Website.model_validate(result.data[0]) if result.data else None

    def create_website(self, data: WebsiteCreate) -> Website:
        with timed_query("create_website", domain=data.domain):
            result = (
                self.client.table(WEBSITES_TABLE)
                .insert(data.model_dump(mode="json"))
                .execute()
            )
            if not result.data:
                raise RecordStoreError(f"Failed to create website {data.domain}")
        website = Website.model_validate(result.data[0])
        logfire.info("Website created", website_id=website.id, domain=website.domain)
        return website

    def update_website(self, website_id: str, data: WebsiteUpdate) -> None:
        changes = data.model_dump(mode="json", exclude_unset=True)
        if not changes:
            return
        with timed_query("update_website", website_id=website_id, fields=list(changes)):
            self.client.table(WEBSITES_TABLE).update(changes).eq("id", website_id).execute()

    def list_websites(self) -> list[Website]:
        with timed_query("list_websites"):
            rows = self._fetch_all(
                lambda: self.client.table(WEBSITES_TABLE)
                .select("*")
                .order("created_at", desc=True)
            )
        return [Website.model_validate(row) for row in rows]

    # =========================================================================
    # Pages
    # =========================================================================

    def upsert_page(self, data: PageUpsert) -> Page:
        with timed_query(
            "upsert_page",
            website_id=data.website_id,
            url=data.url,
            status=data.status.value,
        ):
            result = (
                self.client.table(PAGES_TABLE)
                .upsert(
                    data.model_dump(mode="json", exclude_unset=True),
                    on_conflict="website_id,url",
                )
                .execute()
            )
            if not result.data:
                raise RecordStoreError(f"Failed to upsert page {data.url}")
        return Page.model_validate(result.data[0])

    def update_page(self, page_id: str, data: PageUpdate) -> None:
        changes = data.changes()
        if not changes:
            return
        with timed_query("update_page", page_id=page_id, fields=list(changes)):
            self.client.table(PAGES_TABLE).update(changes).eq("id", page_id).execute()

    def update_pages(self, page_ids: Sequence[str], data: PageUpdate) -> int:
        changes = data.changes()
        if not page_ids or not changes:
            return 0
        with timed_query("update_pages", page_count=len(page_ids), fields=list(changes)):
            result = (
                self.client.table(PAGES_TABLE)
                .update(changes)
                .in_("id", list(page_ids))
                .execute()
            )
        return len(result.data or [])

    def get_pages_with_stale_documents(self, website_id: str, limit: int) -> list[Page]:
        with timed_query("get_pages_with_stale_documents", website_id=website_id, limit=limit):
            result = (
                self.client.table(PAGES_TABLE)
                .select("*")
                .eq("website_id", website_id)
                .eq("status", PageStatus.ACTIVE.value)
                .not_.is_("stale_index_document_id", "null")
                .order("updated_at")
                .limit(limit)
                .execute()
            )
        return [Page.model_validate(row) for row in result.data or []]

    def increment_missing_count(self, page_ids: Sequence[str]) -> list[Page]:
        if not page_ids:
            return []
        with timed_query("increment_missing_count", page_count=len(page_ids)):
            result = self.client.rpc(
                "increment_missing_count", {"page_ids": list(page_ids)}
            ).execute()
        return [Page.model_validate(row) for row in result.data or []]

    def get_page_by_url(self, website_id: str, url: str) -> Page | None:
        with timed_query("get_page_by_url", website_id=website_id, url=url):
            result = (
                self.client.table(PAGES_TABLE)
                .select("*")
                .eq("website_id", website_id)
                .eq("url", url)
                .limit(1)
                .execute()
            )
        return Page.model_validate(result.data[0]) if result.data else None

    def get_pages(
        self,
        website_id: str,
        statuses: Sequence[PageStatus] | None = None,
    ) -> list[Page]:
        def build():
            query = self.client.table(PAGES_TABLE).select("*").eq("website_id", website_id)
            if statuses:
                query = query.in_("status", [s.value for s in statuses])
            return query.order("url")

        with timed_query(
            "get_pages",
            website_id=website_id,
            statuses=[s.value for s in statuses] if statuses else None,
        ):
            rows = self._fetch_all(build)
        return [Page.model_validate(row) for row in rows]

    def get_pages_for_indexing(
        self,
        website_id: str,
        statuses: Sequence[PageStatus],
        limit: int,
        job_id: str | None = None,
    ) -> list[Page]:
        timer = QueryTimer(
            "get_pages_for_indexing",
            website_id=website_id,
            statuses=[s.value for s in statuses],
            job_id=job_id,
        ).start()
        try:
            query = (
                self.client.table(PAGES_TABLE)
                .select("*")
                .eq("website_id", website_id)
                .in_("status", [s.value for s in statuses])
            )
            if job_id:
                query = query.or_(
                    f"created_by_job_id.eq.{job_id},"
                    f"created_by_sync_id.eq.{job_id},"
                    f"last_updated_by_sync_id.eq.{job_id}"
                )
            result = query.order("updated_at").limit(limit).execute()
            timer.success(result_count=len(result.data or []))
        except Exception as e:
            timer.error(e)
            raise
        return [Page.model_validate(row) for row in result.data or []]

    def claim_page(
        self,
        page_id: str,
        status: PageStatus,
        job_id: str,
        expires_before: datetime,
    ) -> Page | None:
        with timed_query("claim_page", page_id=page_id, job_id=job_id):
            result = (
                self.client.table(PAGES_TABLE)
                .update({"index_claimed_by": job_id, "index_claimed_at": utc_now().isoformat()})
                .eq("id", page_id)
                .eq("status", status.value)
                .or_(
                    "index_claimed_by.is.null,"
                    f"index_claimed_at.lt.{expires_before.isoformat()}"
                )
                .execute()
            )
        return Page.model_validate(result.data[0]) if result.data else None

    def update_claimed_page(
        self,
        page_id: str,
        status: PageStatus,
        job_id: str,
        data: PageUpdate,
    ) -> bool:
        changes = data.changes()
        with timed_query(
            "update_claimed_page", page_id=page_id, job_id=job_id, fields=list(changes)
        ):
            result = (
                self.client.table(PAGES_TABLE)
                .update(changes)
                .eq("id", page_id)
                .eq("status", status.value)
                .eq("index_claimed_by", job_id)
                .execute()
            )
        return bool(result.data)

    def release_claims(self, job_id: str) -> int:
        with timed_query("release_claims", job_id=job_id):
            result = (
                self.client.table(PAGES_TABLE)
                .update({"index_claimed_by": None, "index_claimed_at": None})
                .eq("index_claimed_by", job_id)
                .execute()
            )
        return len(result.data or [])

    def get_pages_missing_at_least(self, website_id: str, threshold: int) -> list[Page]:
        with timed_query(
            "get_pages_missing_at_least", website_id=website_id, threshold=threshold
        ):
            rows = self._fetch_all(
                lambda: self.client.table(PAGES_TABLE)
                .select("*")
                .eq("website_id", website_id)
                .gte("missing_count", threshold)
                .order("url")
            )
        return [Page.model_validate(row) for row in rows]

    def count_pages_by_status(self, website_id: str) -> dict[str, int]:
        with timed_query("count_pages_by_status", website_id=website_id):
            rows = self._fetch_all(
                lambda: self.client.table(PAGES_TABLE)
                .select("id,status")
                .eq("website_id", website_id)
                .order("id")
            )
        return dict(Counter(row["status"] for row in rows))

    # =========================================================================
    # Jobs
    # =========================================================================

    def create_job(self, data: JobCreate) -> Job:
        with timed_query(
            "create_job", website_id=data.website_id, job_type=data.job_type.value
        ):
            result = (
                self.client.table(JOBS_TABLE)
                .insert(data.model_dump(mode="json"))
                .execute()
            )
            if not result.data:
                raise RecordStoreError(
                    f"Failed to create {data.job_type.value} job for {data.website_id}"
                )
        return Job.model_validate(result.data[0])

    def update_job(self, job_id: str, data: JobUpdate) -> None:
        changes = data.changes()
        if not changes:
            return
        with timed_query("update_job", job_id=job_id, fields=list(changes)):
            self.client.table(JOBS_TABLE).update(changes).eq("id", job_id).execute()

    def get_job(self, job_id: str) -> Job | None:
        with timed_query("get_job", job_id=job_id):
            result = (
                self.client.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
            )
        return Job.model_validate(result.data[0]) if result.data else None

    def list_jobs(
        self,
        website_id: str,
        limit: int,
        job_type: JobType | None = None,
    ) -> list[Job]:
        with timed_query("list_jobs", website_id=website_id, limit=limit):
            query = self.client.table(JOBS_TABLE).select("*").eq("website_id", website_id)
            if job_type is not None:
                query = query.eq("job_type", job_type.value)
            result = query.order("started_at", desc=True).limit(limit).execute()
        return [Job.model_validate(row) for row in result.data or []]

    def find_jobs(
        self,
        website_id: str,
        job_type: JobType,
        status: JobStatus,
    ) -> list[Job]:
        with timed_query(
            "find_jobs",
            website_id=website_id,
            job_type=job_type.value,
            status=status.value,
        ):
            result = (
                self.client.table(JOBS_TABLE)
                .select("*")
                .eq("website_id", website_id)
                .eq("job_type", job_type.value)
                .eq("status", status.value)
                .order("started_at", desc=True)
                .execute()
            )
        return [Job.model_validate(row) for row in result.data or []]
