# backend/tracking/services/meta_capi.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from tracking.core.config import settings
from tracking.models.events import DrainResult, TrackResult
from tracking.services.dedup import EventDeduplicator
from tracking.services.enrichment import build_event
from tracking.services.retry_queue import QueuedEvent, RetryQueue
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

DUPLICATE_EVENT_ERROR = "Duplicate event"
NOT_CONFIGURED_ERROR = "Meta tracking not configured"
MISSING_FIELDS_ERROR = "eventName and eventId are required"


class MetaCAPIError(Exception):
    """Delivery failure talking to the Meta Conversions API."""
    def __init__(self, message="Error calling the Meta Conversions API", status_code=None, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class MetaCAPIService:
    """
    Relays conversion events to the Meta Conversions API.

    Owns the deduplication store and the retry queue for this process. Events
    are sent with exponential backoff; once retries are exhausted they are
    parked in the retry queue and the caller gets a failure result. Nothing in
    here raises past `track_event` / `retry_queued_events`.
    """
    def __init__(
        self,
        access_token: Optional[str] = None,
        pixel_id: Optional[str] = None,
        *,
        api_version: str = settings.META_API_VERSION,
        graph_url: str = settings.META_GRAPH_URL,
        test_event_code: Optional[str] = settings.META_TEST_EVENT_CODE,
        timeout: float = settings.META_REQUEST_TIMEOUT,
        max_retries: int = settings.META_MAX_RETRIES,
        retry_delay: float = settings.META_RETRY_DELAY,
        deduplicator: Optional[EventDeduplicator] = None,
        retry_queue: Optional[RetryQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.access_token = access_token
        self.pixel_id = pixel_id
        self.test_event_code = test_event_code
        self.endpoint = f"{graph_url.rstrip('/')}/{api_version}/{pixel_id}/events"
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.deduplicator = (
            deduplicator if deduplicator is not None else EventDeduplicator(ttl_seconds=settings.DEDUP_TTL_SECONDS)
        )
        self.retry_queue = retry_queue if retry_queue is not None else RetryQueue(max_size=settings.RETRY_QUEUE_MAX_SIZE)
        self._sleep = sleep
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)
        if self.is_configured:
            logger.info(f"MetaCAPIService initialized for pixel {pixel_id} ({api_version}).")
        else:
            logger.warning("MetaCAPIService initialized without credentials. Events will not be sent.")

    @classmethod
    def from_settings(cls) -> "MetaCAPIService":
        return cls(
            access_token=settings.META_ACCESS_TOKEN,
            pixel_id=settings.META_PIXEL_ID,
            deduplicator=EventDeduplicator(ttl_seconds=settings.DEDUP_TTL_SECONDS),
            retry_queue=RetryQueue(max_size=settings.RETRY_QUEUE_MAX_SIZE),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.pixel_id)

    async def close_client(self):
        """Closes the httpx client."""
        if hasattr(self, '_client') and self._client:
            await self._client.aclose()
            logger.info("Meta CAPI HTTP client closed.")

    def build_payload(
        self,
        event_name: str,
        event_data: Dict[str, Any],
        event_id: str,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "data": [build_event(event_name, event_id, event_data, context)],
            "access_token": self.access_token,
        }
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code
        return payload

    async def _post(self, payload: Dict[str, Any]) -> Any:
        """Single delivery attempt. Returns the decoded body or raises MetaCAPIError."""
        try:
            response = await self._client.post(self.endpoint, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_status_code = e.response.status_code
            error_message = f"HTTP {error_status_code}"
            error_details: Any = e.response.text
            try:
                error_details = e.response.json()
                error_message = error_details.get("error", {}).get("message") or error_message
            except (json.JSONDecodeError, AttributeError):
                pass
            raise MetaCAPIError(error_message, status_code=error_status_code, details=error_details) from e
        except httpx.TimeoutException as e:
            raise MetaCAPIError("Meta Conversions API request timed out") from e
        except httpx.RequestError as e:
            raise MetaCAPIError(f"Network error reaching Meta Conversions API: {e}") from e

        try:
            return response.json()
        except json.JSONDecodeError:
            logger.warning(f"Non-JSON success response from Meta ({response.status_code}): {response.text[:200]}")
            return response.text

    async def send_with_retry(self, payload: Dict[str, Any]) -> Any:
        """
        Sends a payload, retrying `max_retries` times after the first attempt.
        The wait before retry n (0-based) is `retry_delay * 2**n`.
        """
        attempt = 0
        while True:
            try:
                return await self._post(payload)
            except MetaCAPIError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.warning(f"Retry attempt {attempt}/{self.max_retries} in {delay:.2f}s: {e.message}")
                await self._sleep(delay)

    async def _deliver(
        self,
        event_name: str,
        event_data: Dict[str, Any],
        event_id: str,
        context: Optional[RequestContext],
    ) -> TrackResult:
        if not self.deduplicator.reserve(event_id):
            logger.warning(f"Duplicate event detected: {event_id} ({event_name})")
            return TrackResult(success=False, error=DUPLICATE_EVENT_ERROR, duplicate=True)

        try:
            payload = self.build_payload(event_name, event_data, event_id, context)
            response_data = await self.send_with_retry(payload)
        except MetaCAPIError as e:
            # Not admitted: a later send of the same action must not be rejected as duplicate.
            self.deduplicator.release(event_id)
            logger.error(f"Error tracking event {event_id} ({event_name}): {e.message}")
            return TrackResult(success=False, error=e.message)
        except Exception as e:
            self.deduplicator.release(event_id)
            logger.exception(f"Unexpected error tracking event {event_id} ({event_name}): {e}")
            return TrackResult(success=False, error=str(e) or e.__class__.__name__)
        except asyncio.CancelledError:
            self.deduplicator.release(event_id)
            raise

        self.deduplicator.admit(event_id)
        logger.info(f"Event tracked successfully: {event_id} ({event_name})")
        return TrackResult(success=True, data=response_data)

    async def track_event(
        self,
        event_name: Optional[str],
        event_data: Optional[Dict[str, Any]],
        event_id: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> TrackResult:
        """
        Tracks one event with deduplication and retries.

        Input and configuration problems are returned as failures without
        being queued; delivery failures are queued for a later drain.
        """
        if not event_name or not event_id:
            return TrackResult(success=False, error=MISSING_FIELDS_ERROR)
        if not self.is_configured:
            return TrackResult(success=False, error=NOT_CONFIGURED_ERROR)

        event_data = dict(event_data or {})
        result = await self._deliver(event_name, event_data, event_id, context)
        if not result.success and not result.duplicate:
            self.retry_queue.enqueue(QueuedEvent(event_name, event_data, event_id, context))
            logger.info(f"Event {event_id} queued for retry ({len(self.retry_queue)} in queue).")
        return result

    async def retry_queued_events(self) -> DrainResult:
        """
        Re-delivers a snapshot of the retry queue, keeping only events that fail again.
        Events already delivered through another path (duplicates) count as processed.
        """
        queued = self.retry_queue.take_all()
        if not queued:
            return DrainResult(processed=0, failed=0, remaining=len(self.retry_queue))

        logger.info(f"Processing {len(queued)} queued events")
        still_failing = []
        done = 0
        try:
            for event in queued:
                result = await self._deliver(event.event_name, event.event_data, event.event_id, event.request_context)
                if not result.success and not result.duplicate:
                    event.attempts += 1
                    still_failing.append(event)
                done += 1
        finally:
            # a cancelled pass puts back the events it did not get to
            self.retry_queue.extend(still_failing + queued[done:])
        drained = DrainResult(
            processed=len(queued) - len(still_failing),
            failed=len(still_failing),
            remaining=len(self.retry_queue),
        )
        logger.info(f"Queue processing complete. {drained.processed} delivered, {drained.remaining} events still pending.")
        return drained


async def run_periodically(name: str, interval_seconds: float, job: Callable[[], Any]):
    """Runs `job` every `interval_seconds` until cancelled. Job errors are logged, never fatal."""
    logger.info(f"Periodic task '{name}' started (every {interval_seconds}s).")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            outcome = job()
            if asyncio.iscoroutine(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Periodic task '{name}' failed: {e}")
