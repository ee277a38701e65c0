"""
Streaming export / rate-limited restore pipeline

Generic building blocks used by the Cognito backup commands. Nothing in here
knows about Cognito: listing, enrichment and creation calls are injected as
async callables so the same code drives users, groups and test doubles.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence


logger = logging.getLogger(__name__)

Record = Dict[str, Any]

# Max in-flight enrichment calls per page
DEFAULT_CONCURRENCY = 10


class BackupError(Exception):
    """Fatal error that aborts a whole backup or restore operation."""


class Page(NamedTuple):
    records: List[Record]
    next_cursor: Optional[str] = None


class RecordOutcome(NamedTuple):
    key: Any
    result: Any = None
    error: Optional[BaseException] = None
    group_errors: Optional[Dict[str, BaseException]] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.group_errors


class RestoreReport:
    """Per-record outcomes of one restore job."""

    def __init__(self, outcomes: List[RecordOutcome]):
        self.outcomes = outcomes

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def failures(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.ok)

    @property
    def succeeded(self) -> int:
        return self.total - self.failures

    def __repr__(self) -> str:
        return f"RestoreReport(total={self.total}, failures={self.failures})"


class Throttle:
    """Shared rate ceiling. ``acquire()`` returns once the caller may issue a call."""

    async def acquire(self) -> None:
        raise NotImplementedError


class NullThrottle(Throttle):
    async def acquire(self) -> None:
        return None


class MinIntervalThrottle(Throttle):
    """
    Enforce a minimum interval between successive calls across all tasks.

    Callers are released one at a time, in the order they acquired the lock,
    each at least ``min_interval`` seconds after the previous one.
    """

    def __init__(self, min_interval: float):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    @classmethod
    def per_second(cls, max_calls: float) -> "MinIntervalThrottle":
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        return cls(1.0 / max_calls)

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            if now < self._next_slot:
                await asyncio.sleep(self._next_slot - now)
                now = loop.time()
            self._next_slot = now + self.min_interval


def to_json(record: Record) -> str:
    # boto3 hands back datetime objects for the *Date fields
    return json.dumps(record, default=str)


class JsonArrayWriter:
    """
    Incrementally write records as a single top-level JSON array.

    Used as a context manager. The closing bracket is only written when the
    block exits cleanly, so an aborted export leaves a file that does not
    parse rather than a truncated backup that looks complete.
    """

    def __init__(self, path: str):
        self.path = path
        self.count = 0
        self._file = None

    def __enter__(self) -> "JsonArrayWriter":
        self._file = open(self.path, "w", encoding="utf-8")
        self._file.write("[")
        self.count = 0
        return self

    def write(self, record: Record) -> None:
        if self._file is None:
            raise BackupError(f"Writer for {self.path} is not open")
        self._file.write("\n" if self.count == 0 else ",\n")
        self._file.write(to_json(record))
        self.count += 1

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if exc_type is None:
                self._file.write("\n]\n" if self.count else "]\n")
            else:
                logger.error(f"Export to {self.path} aborted after {self.count} records; file is incomplete")
        finally:
            self._file.close()
            self._file = None


def load_records(path: str) -> List[Record]:
    """
    Read a previously exported JSON array fully into memory.

    Args:
        path: Path to the export file

    Returns:
        List of records in file order

    Raises:
        BackupError: If the file is missing, unreadable or not a JSON array of objects
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise BackupError(f"Backup file not found: {path}")
    except json.JSONDecodeError as e:
        raise BackupError(f"Backup file {path} is not valid JSON: {e}")
    except OSError as e:
        raise BackupError(f"Could not read backup file {path}: {e}")

    if not isinstance(data, list):
        raise BackupError(f"Backup file {path} must contain a JSON array, got {type(data).__name__}")
    for i, record in enumerate(data):
        if not isinstance(record, dict):
            raise BackupError(f"Backup file {path} element {i} is not a JSON object")

    logger.info(f"Loaded {len(data)} records from {path}")
    return data


def strip_non_writable(record: Record, fields: Iterable[str]) -> Record:
    """
    Return a copy of ``record`` without the given fields.

    Fields are removed both as top-level keys and as entries of the
    ``Attributes`` name/value list, where Cognito keeps ``sub``.
    """
    fields = set(fields)
    stripped = {key: value for key, value in record.items() if key not in fields}
    if isinstance(stripped.get("Attributes"), list):
        stripped["Attributes"] = [attr for attr in stripped["Attributes"] if attr.get("Name") not in fields]
    return stripped


class PaginatedExporter:
    """Follows a cursor-paginated listing to completion and streams every record to a sink."""

    def __init__(
        self,
        list_page: Callable[[Optional[str]], Awaitable[Page]],
        enrich: Optional[Callable[[Record], Awaitable[Dict[str, Any]]]] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        throttle: Optional[Throttle] = None,
    ):
        """
        Args:
            list_page: Async callable taking the cursor (None for the first page) and returning a Page
            enrich: Optional async callable returning extra fields to merge into each record
            concurrency: Maximum number of enrichment calls in flight within a page
            throttle: Optional shared throttle acquired before each enrichment call
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.list_page = list_page
        self.enrich = enrich
        self.concurrency = concurrency
        self.throttle = throttle or NullThrottle()

    async def export(self, sink) -> int:
        """
        Export every record reachable through the listing into ``sink``.

        The sink is entered as a context manager, so it is finalized whether
        the export succeeds or fails. Any listing or enrichment failure
        aborts the export.

        Returns:
            Number of records written
        """
        written = 0
        page_count = 0
        cursor = None
        semaphore = asyncio.Semaphore(self.concurrency)

        with sink:
            while True:
                logger.debug(f"Fetching page: {cursor or 'first'}")
                page = await self.list_page(cursor)
                page_count += 1

                written += await self._write_page(page.records, sink, semaphore)
                logger.info(f"Processed page: {page_count} | Total exported records: {written}")

                if not page.next_cursor:
                    break
                cursor = page.next_cursor

        return written

    async def _enrich_one(self, record: Record, semaphore: asyncio.Semaphore) -> Record:
        async with semaphore:
            await self.throttle.acquire()
            extra = await self.enrich(record)
        return {**record, **extra}

    async def _write_page(self, records: Sequence[Record], sink, semaphore: asyncio.Semaphore) -> int:
        if self.enrich is None:
            for record in records:
                sink.write(record)
            return len(records)

        tasks = [asyncio.ensure_future(self._enrich_one(record, semaphore)) for record in records]
        written = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                sink.write(await next_done)
                written += 1
        finally:
            for task in tasks:
                task.cancel()
            # retrieves every failure, not just the one that aborted the page
            await asyncio.gather(*tasks, return_exceptions=True)
        return written


class RateLimitedRestorer:
    """Replays exported records as create calls under a shared throttle."""

    def __init__(
        self,
        create: Callable[[Record, Optional[str]], Awaitable[Any]],
        add_to_group: Optional[Callable[[Record, str], Awaitable[Any]]] = None,
        credential: Optional[str] = None,
        throttle: Optional[Throttle] = None,
        concurrency: int = 1,
        group_concurrency: int = 1,
        strip_fields: Sequence[str] = ("sub",),
        key_field: str = "Username",
    ):
        """
        Args:
            create: Async callable ``create(record, credential)`` issuing the remote create
            add_to_group: Async callable ``add_to_group(record, group_name)``; enables membership replay
            credential: Side-channel credential (temporary password) applied to every create call
            throttle: Throttle shared by every create and group-add call of the job
            concurrency: Maximum simultaneous create calls
            group_concurrency: Maximum simultaneous group-add calls across the job
            strip_fields: Non-writable fields removed before the create call
            key_field: Record field used to identify outcomes in logs and the report
        """
        if concurrency < 1 or group_concurrency < 1:
            raise ValueError("concurrency limits must be at least 1")
        self.create = create
        self.add_to_group = add_to_group
        self.credential = credential
        self.throttle = throttle or NullThrottle()
        self.concurrency = concurrency
        self.group_concurrency = group_concurrency
        self.strip_fields = tuple(strip_fields)
        self.key_field = key_field

    async def restore(self, records: Sequence[Record]) -> RestoreReport:
        """
        Replay every record. Failures are recorded per record and never
        abort the remaining records.
        """
        create_slots = asyncio.Semaphore(self.concurrency)
        group_slots = asyncio.Semaphore(self.group_concurrency)

        outcomes = await asyncio.gather(
            *(self._restore_one(record, create_slots, group_slots) for record in records)
        )
        report = RestoreReport(list(outcomes))
        logger.info(f"Restore finished: {report.succeeded} succeeded, {report.failures} failed, {report.total} total")
        return report

    async def _restore_one(
        self, record: Record, create_slots: asyncio.Semaphore, group_slots: asyncio.Semaphore
    ) -> RecordOutcome:
        key = record.get(self.key_field)
        prepared = strip_non_writable(record, self.strip_fields)

        try:
            async with create_slots:
                await self.throttle.acquire()
                result = await self.create(prepared, self.credential)
        except Exception as e:
            logger.error(f"Failed to create {key}: {e}")
            return RecordOutcome(key, error=e)

        logger.info(f"Created {key}")
        logger.debug(f"Create response for {key}: {result}")

        group_errors = {}
        if self.add_to_group is not None:
            for group_name in record.get("Groups") or []:
                try:
                    async with group_slots:
                        await self.throttle.acquire()
                        await self.add_to_group(prepared, group_name)
                    logger.info(f"Added {key} to group {group_name}")
                except Exception as e:
                    logger.warning(f"Failed to add {key} to group {group_name}: {e}")
                    group_errors[group_name] = e

        return RecordOutcome(key, result=result, group_errors=group_errors or None)
