"""DataForSEO Google organic SERP client.

Two calls drive a ranking check:
  submit_batch()  POST serp/google/organic/task_post, one task per job
  fetch_result()  GET  serp/google/organic/task_get/regular/{id}

Tasks are processed asynchronously by the provider; a task fetched too early
has no result pages yet (NotReady). A task that finished with no SERP at all
is Completed with zero matches, which is a different outcome from NotReady.

Status codes (DataForSEO envelope and per task):
    20000  Ok
    20100  Task Created
    40102  No Search Results        -> Completed, no matches
    40601  Task Handed              -> NotReady
    40602  Task in Queue            -> NotReady
    4xxxx / 5xxxx otherwise         -> Error
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from types import TracebackType
from typing import Any

import httpx

from rank_service.config import (
    DATAFORSEO_BASE_URL,
    DFS_TASK_GET_PATH,
    DFS_TASK_POST_PATH,
    DFS_USER_DATA_PATH,
    RANK_DEPTH,
    RANK_DEVICE,
    RANK_HTTP_TIMEOUT_SECONDS,
    RANK_LANGUAGE_CODE,
    RANK_MAX_TASKS_PER_POST,
    RANK_OS,
    dataforseo_auth_header,
)
from rank_service.errors import FetchError, SubmissionError, ValidationError
from rank_service.ranking.types import FetchResult, FetchStatus, KeywordJob, RankingMatch

logger = logging.getLogger(__name__)

_OK = 20000
_TASK_CREATED = 20100
_NO_SEARCH_RESULTS = 40102
_NOT_READY_CODES = (40601, 40602)


def _as_rank(value: Any) -> int | None:
    """Positive integer rank, or None for anything the provider should not send."""
    if isinstance(value, bool):
        return None
    try:
        rank = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return rank if rank >= 1 else None


def extract_matches(result_pages: Iterable[Any], target_domain: str) -> list[RankingMatch]:
    """Collect organic items whose URL contains `target_domain`.

    Case-sensitive substring containment, over every result page, in the
    order the provider returned them. Malformed pages and items are skipped.
    """
    matches: list[RankingMatch] = []
    for page in result_pages:
        if not isinstance(page, dict):
            continue
        items = page.get("items")
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict) or item.get("type") != "organic":
                continue
            rank = _as_rank(item.get("rank_group"))
            url = item.get("url")
            if rank is None or not isinstance(url, str) or not url:
                continue
            if target_domain in url:
                matches.append(RankingMatch(rank=rank, url=url))
    return matches


def best_match(matches: Sequence[RankingMatch]) -> RankingMatch | None:
    """Lowest rank wins; on a tie the first match seen is kept."""
    best: RankingMatch | None = None
    for m in matches:
        if best is None or m.rank < best.rank:
            best = m
    return best


class RankingClient:
    """Async DataForSEO client. Use as an async context manager."""

    def __init__(
        self,
        *,
        auth_header: str,
        target_domain: str,
        base_url: str = DATAFORSEO_BASE_URL,
        device: str = RANK_DEVICE,
        os_name: str = RANK_OS,
        language_code: str = RANK_LANGUAGE_CODE,
        depth: int | None = RANK_DEPTH,
        max_tasks_per_post: int = RANK_MAX_TASKS_PER_POST,
        timeout: float = RANK_HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.target_domain = target_domain
        self._device = device
        self._os = os_name
        self._language_code = language_code
        self._depth = depth
        self._max_tasks = max_tasks_per_post
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers={"Authorization": auth_header, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls, *, target_domain: str, **kwargs: Any) -> RankingClient:
        """Build a client from env credentials; raises ConfigurationError if absent."""
        return cls(auth_header=dataforseo_auth_header(), target_domain=target_domain, **kwargs)

    async def __aenter__(self) -> RankingClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- Submit ---------------------------------------------------------------

    def _task_payload(self, job: KeywordJob) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "keyword": job.keyword,
            "location_coordinate": job.location_coordinate,
            "language_code": self._language_code,
            "device": self._device,
            "os": self._os,
        }
        if self._depth:
            payload["depth"] = self._depth
        return payload

    async def submit_batch(self, jobs: Sequence[KeywordJob]) -> list[str]:
        """Submit one batch; returns one task id per job, in input order.

        Raises:
            ValidationError: more jobs than the provider accepts per request.
            SubmissionError: transport failure, provider error, or a response
                that does not carry exactly one task id per job.
        """
        if not jobs:
            return []
        if len(jobs) > self._max_tasks:
            raise ValidationError(
                f"Batch of {len(jobs)} exceeds provider cap of {self._max_tasks} tasks per request"
            )

        payload = [self._task_payload(j) for j in jobs]
        logger.info("Submitting batch of %d keywords", len(jobs))

        try:
            resp = await self._http.post(DFS_TASK_POST_PATH, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SubmissionError(f"{type(e).__name__}: {e}", batch_size=len(jobs)) from e

        if not isinstance(data, dict):
            raise SubmissionError("Unexpected DataForSEO response structure", batch_size=len(jobs))
        if data.get("status_code", _OK) != _OK:
            raise SubmissionError(
                f"DataForSEO error {data.get('status_code')}: {data.get('status_message', 'Unknown')}",
                batch_size=len(jobs),
            )

        tasks = data.get("tasks") or []
        if not isinstance(tasks, list) or not tasks:
            raise SubmissionError("No tasks returned from DataForSEO", batch_size=len(jobs))
        if len(tasks) != len(jobs):
            raise SubmissionError(
                f"Task count mismatch: got {len(tasks)}, expected {len(jobs)}",
                batch_size=len(jobs),
            )

        task_ids: list[str] = []
        for task in tasks:
            if not isinstance(task, dict):
                raise SubmissionError("Unexpected DataForSEO task structure", batch_size=len(jobs))
            code = task.get("status_code", _TASK_CREATED)
            if code not in (_OK, _TASK_CREATED):
                raise SubmissionError(
                    f"DataForSEO task error {code}: {task.get('status_message', '')}",
                    batch_size=len(jobs),
                )
            task_id = task.get("id")
            if not task_id:
                raise SubmissionError("Task returned without an id", batch_size=len(jobs))
            task_ids.append(str(task_id))

        logger.info("Batch submitted: %d task ids", len(task_ids))
        return task_ids

    # -- Fetch ----------------------------------------------------------------

    async def _get_task(self, task_id: str) -> dict[str, Any]:
        """GET one task envelope; raises FetchError on transport/provider failure."""
        try:
            resp = await self._http.get(f"{DFS_TASK_GET_PATH}/{task_id}")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise FetchError(task_id, f"{type(e).__name__}: {e}") from e

        if not isinstance(data, dict):
            raise FetchError(task_id, "Unexpected DataForSEO response structure")
        if data.get("status_code", _OK) != _OK:
            raise FetchError(
                task_id,
                f"DataForSEO error {data.get('status_code')}: {data.get('status_message', 'Unknown')}",
            )
        try:
            task = data["tasks"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise FetchError(task_id, "Unexpected DataForSEO response structure") from e
        if not isinstance(task, dict):
            raise FetchError(task_id, "Unexpected DataForSEO task structure")
        return task

    async def fetch_result(self, task_id: str) -> FetchResult:
        """Fetch one task and extract target-domain matches.

        Never raises for provider or transport problems; those come back as
        FetchStatus.ERROR so the caller can record them per job.
        """
        try:
            task = await self._get_task(task_id)
        except FetchError as e:
            logger.warning("Fetch failed: %s", e)
            return FetchResult(status=FetchStatus.ERROR, error=str(e))

        code = task.get("status_code", _OK)
        if code in _NOT_READY_CODES:
            return FetchResult(status=FetchStatus.NOT_READY, raw=task)
        if code == _NO_SEARCH_RESULTS:
            return FetchResult(status=FetchStatus.COMPLETED, matches=[], raw=task)
        if code != _OK:
            return FetchResult(
                status=FetchStatus.ERROR,
                raw=task,
                error=f"DataForSEO task error {code}: {task.get('status_message', '')}",
            )

        pages = task.get("result") or []
        if not isinstance(pages, list):
            return FetchResult(
                status=FetchStatus.ERROR,
                raw=task,
                error=f"task {task_id}: unexpected result structure",
            )
        if not pages:
            return FetchResult(status=FetchStatus.NOT_READY, raw=task)

        matches = extract_matches(pages, self.target_domain)
        logger.debug("Task %s: %d matches for %s", task_id, len(matches), self.target_domain)
        return FetchResult(status=FetchStatus.COMPLETED, matches=matches, raw=task)

    # -- Account --------------------------------------------------------------

    async def user_data(self) -> dict[str, Any]:
        """Account info from appendix/user_data (used as a connectivity check)."""
        resp = await self._http.get(DFS_USER_DATA_PATH)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise FetchError("user_data", "Unexpected DataForSEO response structure")
        if data.get("status_code", _OK) != _OK:
            raise FetchError("user_data", str(data.get("status_message", "Unknown")))
        try:
            info = data["tasks"][0]["result"][0]
        except (KeyError, IndexError, TypeError):
            return {}
        return info if isinstance(info, dict) else {}

    async def check_connection(self) -> bool:
        """Quick health check: verify the provider is reachable with our credentials."""
        try:
            await self.user_data()
            return True
        except Exception:
            logger.warning("DataForSEO connection check failed", exc_info=True)
            return False
