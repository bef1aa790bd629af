"""
ingestion/rpc/paginator.py

RecordPaginator — newest-first windows over a dense, sequentially numbered
record collection on the ledger, with a per-id fetch cache.

Records are addressed by integer ids 1..head (head = newest). Each record is
assembled from several contract reads; those reads go through BatchReader in
chunks of ids when the facility is available, otherwise per id with bounded
concurrency. An id whose fetch or decode fails is left out of the page.
"""
import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .abi import MethodDescriptor
from .batcher import BatchCall, BatchReader
from .client import LedgerClient
from .errors import ClassifiedError, DomainError, ErrorKind

logger = logging.getLogger(__name__)


WINDOW_RE = re.compile(r"^\s*(\d+)\s*\.\.\s*(\d+)\s*$")


def parse_window(window: Union[str, Tuple[int, int]]) -> Tuple[int, int]:
    """Parse "X..Y" (or a tuple) into (low, high)."""
    if isinstance(window, str):
        match = WINDOW_RE.match(window)
        if not match:
            raise ValueError(f"window must look like 'X..Y', got {window!r}")
        a, b = int(match.group(1)), int(match.group(2))
    else:
        a, b = (int(v) for v in window)
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class CachedRecord:
    """Decoded record as stored by the paginator. Replaced wholesale, never mutated."""
    record_id: int
    record: Any
    terminal: bool
    fetched_at: float


class RecordSource:
    """
    Describes one paginated record collection.

    Subclasses supply the counter call, the constituent calls for an id and
    the canonical decode of their values.
    """

    def counter_call(self) -> BatchCall:
        raise NotImplementedError

    def calls_for(self, record_id: int) -> List[BatchCall]:
        raise NotImplementedError

    def decode(self, record_id: int, values: Sequence[Any]) -> Any:
        """Build the record; raise DomainError on an unrecognized shape."""
        raise NotImplementedError

    def is_terminal(self, record: Any) -> bool:
        """Terminal records never change again and are served from cache."""
        return True


class ContractRecordSource(RecordSource):
    """
    Records stored in one contract: a counter method plus per-id getters.

    Args:
        target: Contract address
        counter: Method returning the newest id
        fields: Getters taking the id as their only argument
        build: (record_id, values) -> record; defaults to a dict keyed by getter name
        terminal: Predicate over the built record; defaults to always terminal
    """

    def __init__(
        self,
        target: str,
        counter: MethodDescriptor,
        fields: Sequence[MethodDescriptor],
        build: Optional[Callable[[int, Sequence[Any]], Any]] = None,
        terminal: Optional[Callable[[Any], bool]] = None,
    ):
        self.target = target
        self.counter = counter
        self.fields = list(fields)
        self._build = build
        self._terminal = terminal

    def counter_call(self) -> BatchCall:
        return BatchCall(self.target, self.counter, ())

    def calls_for(self, record_id: int) -> List[BatchCall]:
        return [BatchCall(self.target, method, (record_id,)) for method in self.fields]

    def decode(self, record_id: int, values: Sequence[Any]) -> Any:
        if len(values) != len(self.fields):
            raise DomainError(
                f"record {record_id}: expected {len(self.fields)} values, got {len(values)}",
                kind=ErrorKind.MALFORMED_RESPONSE,
            )
        if self._build is not None:
            return self._build(record_id, values)
        record = {"id": record_id}
        record.update({method.name: value for method, value in zip(self.fields, values)})
        return record

    def is_terminal(self, record: Any) -> bool:
        return True if self._terminal is None else bool(self._terminal(record))


class RecordPaginator:
    """
    Paginated, cached reader for a RecordSource.

    Features:
    - fetch_page(skip, limit): newest-first window below the head
    - fetch_window("X..Y"): explicit window, clipped to the head
    - One network fetch per terminal id; non-terminal ids are refetched
    - Concurrent pages share the fetch of an id already in flight
    - Bounded concurrency; failed ids are omitted, never fatal
    """

    DEFAULT_PAGE_SIZE = 15
    DEFAULT_BATCH_IDS = 6
    DEFAULT_CONCURRENCY = 5
    DEFAULT_MAX_CACHED = 10_000

    def __init__(
        self,
        client: LedgerClient,
        source: RecordSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_ids: int = DEFAULT_BATCH_IDS,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        max_cached: int = DEFAULT_MAX_CACHED,
    ):
        """
        Initialize RecordPaginator.

        Args:
            client: LedgerClient used for the head and per-id reads
            source: RecordSource describing the collection
            page_size: Default page length
            batch_ids: Ids folded into one aggregate call
            concurrency_limit: Default max outstanding fetches
            max_cached: Upper bound on cached records (oldest evicted first)
        """
        self._client = client
        self._source = source
        self._page_size = page_size
        self._batch_ids = max(1, batch_ids)
        self._concurrency_limit = max(1, concurrency_limit)
        self._max_cached = max_cached

        self._cache: "OrderedDict[int, CachedRecord]" = OrderedDict()
        self._inflight: Dict[int, "asyncio.Future[Any]"] = {}

        # Metrics
        self._fetches: Dict[int, int] = {}
        self._cache_hits = 0
        self._omitted = 0
        self._batched_ids = 0
        self._single_ids = 0
        self._deduped = 0

    # ------------------------------------------------------------------ reads

    async def head(self) -> int:
        """Newest record id. Never cached."""
        call = self._source.counter_call()
        value = await self._client.call(call.target, call.method, call.args, use_cache=False)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise DomainError(f"counter returned {value!r}", kind=ErrorKind.MALFORMED_RESPONSE)
        return value

    async def fetch_page(
        self,
        skip: int = 0,
        limit: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
    ) -> List[Any]:
        """
        Newest-first page: ids head-skip down to max(head-skip-limit+1, 1).

        Returns:
            Records in descending id order; failed ids are left out.
        """
        limit = self._page_size if limit is None else limit
        if skip < 0 or limit < 0:
            raise ValueError("skip and limit must be >= 0")
        head = await self.head()
        top = head - skip
        if top < 1 or limit == 0:
            return []
        bottom = max(top - limit + 1, 1)
        return await self._resolve(list(range(top, bottom - 1, -1)), concurrency_limit)

    async def fetch_window(
        self,
        window: Union[str, Tuple[int, int]],
        concurrency_limit: Optional[int] = None,
    ) -> List[Any]:
        """Records for an explicit "X..Y" window, newest first, clipped to the head."""
        low, high = parse_window(window)
        head = await self.head()
        high = min(high, head)
        low = max(low, 1)
        if high < low:
            return []
        return await self._resolve(list(range(high, low - 1, -1)), concurrency_limit)

    # ---------------------------------------------------------------- resolve

    async def _resolve(self, ids: List[int], concurrency_limit: Optional[int]) -> List[Any]:
        limit = max(1, concurrency_limit or self._concurrency_limit)
        semaphore = asyncio.Semaphore(limit)

        resolved: Dict[int, Any] = {}
        missing: List[int] = []
        shared: Dict[int, "asyncio.Future[Any]"] = {}
        for record_id in ids:
            cached = self._cache.get(record_id)
            if cached is not None and cached.terminal:
                self._cache_hits += 1
                resolved[record_id] = cached.record
            elif record_id in self._inflight:
                # another page is already fetching this id
                shared[record_id] = self._inflight[record_id]
            else:
                missing.append(record_id)

        if missing:
            resolved.update(await self._fetch_owned(missing, semaphore))

        if shared:
            self._deduped += len(shared)
            outcomes = await asyncio.gather(
                *(asyncio.shield(future) for future in shared.values()),
                return_exceptions=True,
            )
            for record_id, outcome in zip(shared, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                if outcome is not None:
                    resolved[record_id] = outcome

        page = [resolved[i] for i in ids if i in resolved]
        omitted = len(ids) - len(page)
        if omitted:
            self._omitted += omitted
            logger.warning(f"[paginator] {omitted}/{len(ids)} records omitted from page {ids[0]}..{ids[-1]}")
        return page

    async def _fetch_owned(self, missing: List[int], semaphore: asyncio.Semaphore) -> Dict[int, Any]:
        """Fetch ids nobody else is fetching; concurrent pages wait on the published futures."""
        loop = asyncio.get_running_loop()
        futures = {record_id: loop.create_future() for record_id in missing}
        self._inflight.update(futures)
        try:
            fetched = await self._fetch_missing(missing, semaphore)
        except asyncio.CancelledError:
            for future in futures.values():
                future.cancel()
            raise
        except Exception as e:
            for future in futures.values():
                future.set_exception(e)
                # retrieved here so an unawaited future does not warn
                future.exception()
            raise
        else:
            for record_id, future in futures.items():
                future.set_result(fetched.get(record_id))
            return fetched
        finally:
            for record_id, future in futures.items():
                if self._inflight.get(record_id) is future:
                    del self._inflight[record_id]

    async def _fetch_missing(self, missing: List[int], semaphore: asyncio.Semaphore) -> Dict[int, Any]:
        batch_reader = self._client.batch_reader
        if batch_reader is None:
            singles = await asyncio.gather(*(self._fetch_one(i, semaphore) for i in missing))
            return {i: rec for i, rec in zip(missing, singles) if rec is not None}

        chunks = [missing[i:i + self._batch_ids] for i in range(0, len(missing), self._batch_ids)]
        groups = await asyncio.gather(*(self._fetch_chunk(batch_reader, chunk, semaphore) for chunk in chunks))
        fetched: Dict[int, Any] = {}
        for group in groups:
            fetched.update(group)
        return fetched

    async def _fetch_chunk(
        self,
        batch_reader: BatchReader,
        chunk: List[int],
        semaphore: asyncio.Semaphore,
    ) -> Dict[int, Any]:
        calls_per_id = [self._source.calls_for(i) for i in chunk]
        flat = [call for calls in calls_per_id for call in calls]

        async with semaphore:
            results = await batch_reader.batch(flat)

        if results is None:
            logger.info(f"[paginator] Batch unavailable for ids {chunk[0]}..{chunk[-1]}, fetching individually")
            singles = await asyncio.gather(*(self._fetch_one(i, semaphore) for i in chunk))
            return {i: rec for i, rec in zip(chunk, singles) if rec is not None}

        out: Dict[int, Any] = {}
        offset = 0
        for record_id, calls in zip(chunk, calls_per_id):
            slot = results[offset:offset + len(calls)]
            offset += len(calls)
            self._count_fetch(record_id)
            self._batched_ids += 1
            try:
                values = [BatchReader.decode(call, result) for call, result in zip(calls, slot)]
                out[record_id] = self._store(record_id, values)
            except DomainError as e:
                logger.warning(f"[paginator] Record {record_id} dropped: {e}")
        return out

    async def _fetch_one(self, record_id: int, semaphore: asyncio.Semaphore) -> Optional[Any]:
        calls = self._source.calls_for(record_id)
        async with semaphore:
            self._count_fetch(record_id)
            self._single_ids += 1
            # settle every read before releasing the slot
            values = await asyncio.gather(
                *(self._client.call(c.target, c.method, c.args, use_cache=False) for c in calls),
                return_exceptions=True,
            )
            try:
                for value in values:
                    if isinstance(value, BaseException):
                        raise value
                return self._store(record_id, list(values))
            except ClassifiedError as e:
                logger.warning(f"[paginator] Record {record_id} dropped: {e}")
                return None

    def _store(self, record_id: int, values: List[Any]) -> Any:
        record = self._source.decode(record_id, values)
        self._cache[record_id] = CachedRecord(
            record_id=record_id,
            record=record,
            terminal=self._source.is_terminal(record),
            fetched_at=time.time(),
        )
        self._cache.move_to_end(record_id)
        while len(self._cache) > self._max_cached:
            self._cache.popitem(last=False)
        return record

    def _count_fetch(self, record_id: int) -> None:
        self._fetches[record_id] = self._fetches.get(record_id, 0) + 1

    # ------------------------------------------------------------------ cache

    def cached(self, record_id: int) -> Optional[CachedRecord]:
        return self._cache.get(record_id)

    def invalidate(self, record_id: int) -> bool:
        """Bust one id; the next page containing it refetches."""
        return self._cache.pop(record_id, None) is not None

    def clear(self) -> None:
        self._cache.clear()

    def fetch_count(self, record_id: int) -> int:
        """Network fetches issued for one id so far."""
        return self._fetches.get(record_id, 0)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "cached": len(self._cache),
            "cache_hits": self._cache_hits,
            "network_fetches": sum(self._fetches.values()),
            "batched_ids": self._batched_ids,
            "single_ids": self._single_ids,
            "omitted": self._omitted,
            "deduped": self._deduped,
        }
