"""Executor - Sends signed requests to the TI service and classifies responses.

do() performs a single attempt: encode the body as JSON, attach the token
and optional request ID headers, send, read the whole body and either decode
it into the expected result shape or raise the matching DomainError.

retry() drives do() through tenacity, paced by a backoff schedule. Transport
failures are always retried, server errors (>= 500) only when the operation
asks for it. Anything else ends the loop at once. Cancellation is checked
before every attempt and wins over any pending retry decision.
"""

from __future__ import annotations

import functools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from tenacity import RetryCallState, Retrying, before_sleep_log, retry_if_exception_type

from ti_client.backoff import BackoffSchedule
from ti_client.cancellation import CancellationToken
from ti_client.errors import (
    ResponseDecodeError,
    ServerError,
    TransportError,
    domain_error,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Harness-Token"
REQUEST_ID_HEADER = "X-Request-ID"

_ANY: TypeAdapter[Any] = TypeAdapter(Any)


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one successful attempt.

    ``value`` is the decoded body, or None when no result shape was requested
    or the server answered 204.
    """

    status_code: int
    content: bytes
    value: Any = None


@functools.lru_cache(maxsize=None)
def _adapter(result_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(result_type)


def encode_body(body: Any) -> bytes:
    """Serialize a request body (models, lists of models, plain JSON) by alias."""
    return _ANY.dump_json(body, by_alias=True)


def error_message(status_code: int, content: bytes) -> str:
    """Best available message for a failed response.

    A JSON object carrying a "message" key wins, then the raw body text, then
    the canonical reason phrase when the body is empty.
    """
    if not content:
        return httpx.codes.get_reason_phrase(status_code)
    text = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except ValueError:
        return text
    if isinstance(payload, dict):
        for key, value in payload.items():
            if key.lower() == "message" and isinstance(value, str):
                return value
    return text


class _ScheduleAdapter:
    """Feeds a BackoffSchedule to tenacity as its stop and wait strategies.

    tenacity asks both for every failed attempt. The schedule advances once
    per attempt and both answers come from that single step.
    """

    def __init__(self, backoff: BackoffSchedule, target: str) -> None:
        self._backoff = backoff
        self._target = target
        self._attempt = 0
        self._delay: float | None = None

    def _delay_for(self, retry_state: RetryCallState) -> float | None:
        if retry_state.attempt_number != self._attempt:
            self._attempt = retry_state.attempt_number
            self._delay = self._backoff.next()
        return self._delay

    def stop(self, retry_state: RetryCallState) -> bool:
        if self._delay_for(retry_state) is not None:
            return False
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "giving up on %s after %d attempts (%.1fs): %s",
            self._target,
            retry_state.attempt_number,
            self._backoff.elapsed(),
            error,
        )
        return True

    def wait(self, retry_state: RetryCallState) -> float:
        return self._delay_for(retry_state) or 0.0


class RequestExecutor:
    """Executes requests against the TI service through an httpx.Client.

    The executor holds no per-call state, so one instance can serve any
    number of concurrent callers.
    """

    def __init__(self, client: httpx.Client, token: str, timeout: float = 60.0) -> None:
        self._client = client
        self._token = token
        self._timeout = timeout

    def _headers(self, request_id: str = "") -> dict[str, str]:
        headers = {TOKEN_HEADER: self._token}
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id
        return headers

    def _attempt_timeout(self, cancel: CancellationToken | None) -> float:
        if cancel is None:
            return self._timeout
        remaining = cancel.remaining()
        if remaining is None:
            return self._timeout
        return min(self._timeout, remaining)

    def do(
        self,
        url: str,
        method: str,
        request_id: str = "",
        body: Any = None,
        *,
        content: bytes | None = None,
        result: Any = None,
        cancel: CancellationToken | None = None,
    ) -> RequestOutcome:
        """Send one request and decode its response.

        Args:
            url: Absolute request URL.
            method: HTTP method.
            request_id: Correlation value sent as X-Request-ID when non-empty.
            body: Value serialized to JSON as the request entity.
            content: Pre-encoded JSON entity; used instead of ``body``.
            result: Type the response body is decoded into (None: no decoding).
            cancel: Optional cancellation token bounding the attempt.

        Returns:
            RequestOutcome with status, raw body and decoded value.

        Raises:
            TransportError: If no response was received.
            DomainError: If the status is >= 300.
            ResponseDecodeError: If a 2xx body does not match ``result``.
        """
        headers = self._headers(request_id)
        if content is None and body is not None:
            content = encode_body(body)
        if content is not None:
            headers["Content-Type"] = "application/json"

        try:
            with self._client.stream(
                method,
                url,
                content=content,
                headers=headers,
                timeout=self._attempt_timeout(cancel),
            ) as response:
                status_code = response.status_code
                # Read (and so drain) the body even on errors so the
                # connection goes back to the pool.
                data = response.read()
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url}: request timeout: {e}") from e
        except httpx.ConnectError as e:
            raise TransportError(f"{method} {url}: connection error: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {url}: request error: {e}") from e

        logger.debug("%s %s -> %d", method, url, status_code)

        if status_code == httpx.codes.NO_CONTENT:
            return RequestOutcome(status_code=status_code, content=b"")

        if status_code >= httpx.codes.MULTIPLE_CHOICES:
            raise domain_error(status_code, error_message(status_code, data))

        if result is None:
            return RequestOutcome(status_code=status_code, content=data)

        try:
            value = _adapter(result).validate_json(data)
        except PydanticValidationError as e:
            raise ResponseDecodeError(f"{method} {url}: invalid response body: {e}") from e
        return RequestOutcome(status_code=status_code, content=data, value=value)

    def retry(
        self,
        url: str,
        method: str,
        request_id: str = "",
        body: Any = None,
        *,
        backoff: BackoffSchedule,
        retry_on_server_error: bool,
        content: bytes | None = None,
        result: Any = None,
        cancel: CancellationToken | None = None,
    ) -> RequestOutcome:
        """Call do() until it succeeds, fails permanently or the schedule stops.

        When the schedule is exhausted the most recent error is re-raised.
        """
        retryable: tuple[type[Exception], ...] = (TransportError,)
        if retry_on_server_error:
            retryable = (TransportError, ServerError)
        schedule = _ScheduleAdapter(backoff, f"{method} {url}")

        def attempt() -> RequestOutcome:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return self.do(
                    url,
                    method,
                    request_id,
                    body,
                    content=content,
                    result=result,
                    cancel=cancel,
                )
            except retryable as e:
                cancelled = cancel.error() if cancel is not None else None
                if cancelled is not None:
                    raise cancelled from e
                raise

        retrying = Retrying(
            stop=schedule.stop,
            wait=schedule.wait,
            retry=retry_if_exception_type(retryable),
            sleep=functools.partial(self._sleep, cancel=cancel),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(attempt)

    def _sleep(self, delay: float, cancel: CancellationToken | None) -> None:
        if cancel is None:
            time.sleep(delay)
        else:
            cancel.wait(delay)

    def open(
        self,
        url: str,
        method: str = "GET",
        *,
        cancel: CancellationToken | None = None,
    ) -> httpx.Response:
        """Send a request and return the unread, streaming response.

        The caller owns the response and must close it.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        request = self._client.build_request(
            method,
            url,
            headers=self._headers(),
            timeout=self._attempt_timeout(cancel),
        )
        try:
            return self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url}: request timeout: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {url}: request error: {e}") from e
