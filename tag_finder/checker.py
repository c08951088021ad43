"""Concurrent digest lookup for many tags of one repository."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterator, Sequence

from tag_finder.registry.client import DEFAULT_WORKERS, RegistryClient
from tag_finder.registry.errors import TagCheckError, TagFinderError
from tag_finder.registry.parser import ImageReference, normalize_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagCheckResult:
    """Outcome of resolving one tag to its manifest digest.

    Attributes:
        tag: The tag that was checked.
        digest: The manifest digest, when the lookup succeeded.
        error: The failure, when the lookup did not succeed.
    """

    tag: str
    digest: str | None = None
    error: TagFinderError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def matches(self, target_digest: str) -> bool:
        """Return ``True`` if the lookup succeeded and hit *target_digest*."""
        return self.ok and self.digest == target_digest


# Marks the end of a result stream.
_CLOSED = object()


class ResultStream:
    """Single-pass stream of :class:`TagCheckResult`, in completion order.

    Iteration blocks until the next result arrives and stops once every
    worker has exited. The stream is meant for a single consumer.

    Attributes:
        total: Number of tags submitted.
        target_digest: Digest the caller is looking for, if any.
    """

    def __init__(
        self,
        total: int,
        cancel: threading.Event,
        target_digest: str | None = None,
    ) -> None:
        self.total = total
        self.target_digest = target_digest
        self._cancel = cancel
        self._queue: queue.Queue[object] = queue.Queue()
        self._closed = threading.Event()
        self._drained = False

    def cancel(self) -> None:
        """Ask the workers to stop taking new tags.

        Requests already in flight run to completion; the stream still
        closes once every worker has exited.
        """
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def closed(self) -> bool:
        """Return ``True`` once every worker has exited."""
        return self._closed.is_set()

    def __iter__(self) -> Iterator[TagCheckResult]:
        return self

    def __next__(self) -> TagCheckResult:
        if self._drained:
            raise StopIteration
        item = self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise StopIteration
        return item  # type: ignore[return-value]

    def _put(self, result: TagCheckResult) -> None:
        self._queue.put(result)

    def _close(self) -> None:
        self._closed.set()
        self._queue.put(_CLOSED)


def check_all(
    client: RegistryClient,
    ref: ImageReference,
    tags: Sequence[str],
    concurrency: int = DEFAULT_WORKERS,
    cancel: threading.Event | None = None,
    *,
    target_digest: str | None = None,
) -> ResultStream:
    """Resolve the manifest digest of every tag using *concurrency* workers.

    All tags are queued up front. Each worker checks *cancel* before taking
    the next tag, looks its digest up and emits exactly one result. A failed
    lookup is reported on that tag's result and never stops other workers.

    Args:
        client: Client shared by every worker.
        ref: The repository the tags belong to.
        tags: Tags to check.
        concurrency: Number of worker threads (at least 1).
        cancel: Event that stops workers from taking new tags once set.
        target_digest: Stored on the returned stream for the consumer.

    Returns:
        A :class:`ResultStream` that closes after every worker has exited.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")
    if cancel is None:
        cancel = threading.Event()

    work: queue.Queue[str] = queue.Queue(maxsize=len(tags))
    for tag in tags:
        work.put_nowait(tag)

    stream = ResultStream(len(tags), cancel, target_digest)
    logger.debug(
        "Checking %d tags of %s with %d workers", len(tags), ref.repository, concurrency
    )

    executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="tag-finder")
    futures = [
        executor.submit(_worker, client, ref, work, stream, cancel)
        for _ in range(concurrency)
    ]
    executor.shutdown(wait=False)

    threading.Thread(
        target=_close_when_done,
        args=(futures, stream),
        name="tag-finder-closer",
        daemon=True,
    ).start()
    return stream


def check_digests(
    client: RegistryClient,
    ref: ImageReference,
    tags: Sequence[str],
    target_digest: str,
    concurrency: int = DEFAULT_WORKERS,
    cancel: threading.Event | None = None,
) -> ResultStream:
    """Like :func:`check_all`, for callers matching against *target_digest*.

    The digest is normalized to carry a ``sha256:`` prefix and exposed as
    :attr:`ResultStream.target_digest`.
    """
    return check_all(
        client,
        ref,
        tags,
        concurrency,
        cancel,
        target_digest=normalize_digest(target_digest),
    )


def _worker(
    client: RegistryClient,
    ref: ImageReference,
    work: queue.Queue[str],
    stream: ResultStream,
    cancel: threading.Event,
) -> None:
    while not cancel.is_set():
        try:
            tag = work.get_nowait()
        except queue.Empty:
            return
        stream._put(check_tag(client, ref, tag))


def check_tag(client: RegistryClient, ref: ImageReference, tag: str) -> TagCheckResult:
    """Resolve a single tag, capturing any failure on the result."""
    try:
        digest = client.get_manifest_digest(ref, tag)
    except TagFinderError as exc:
        logger.debug("Tag %s failed: %s", tag, exc)
        return TagCheckResult(tag, error=exc)
    except Exception as exc:
        logger.warning("Unexpected error checking tag %s", tag, exc_info=True)
        error = TagCheckError(f"Unexpected error for tag {tag}: {exc}")
        error.__cause__ = exc
        return TagCheckResult(tag, error=error)
    return TagCheckResult(tag, digest=digest)


def _close_when_done(futures: list[Future[None]], stream: ResultStream) -> None:
    wait(futures)
    for future in futures:
        exc = future.exception()
        if exc is not None:
            logger.error("Worker crashed: %s", exc, exc_info=exc)
    stream._close()
