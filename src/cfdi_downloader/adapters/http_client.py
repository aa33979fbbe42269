"""
HTTP adapter — SOAP POSTs to the SAT endpoints via httpx.

Adapter layer — implements the Transport port.

Retry policy (tenacity):
  - up to max_attempts attempts in total, fixed retry_delay between them
  - retried: timeouts, network errors, dropped connections, 5xx responses
  - not retried: 4xx and any other HTTP error, which fail on the spot
  - a 5xx whose body is a SOAP Fault is returned as-is, not retried; the
    response readers raise the typed protocol error with the fault text

Every failure leaves this module as a TransportError carrying the number of
attempts made, the last cause and, when there was one, the status code.
The caller (auth manager, download client) converts it into a Result.
"""

from __future__ import annotations

import httpx
import structlog
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from cfdi_downloader.adapters.soap import is_fault
from cfdi_downloader.domain.errors import TransportError

log = structlog.get_logger()

USER_AGENT = "CFDI-Processor/1.5"
ACCEPT = "text/xml, application/soap+xml, application/xml"


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code >= 500


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _body_of(error: BaseException) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.text
    return ""


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "transport.retry",
        attempt=retry_state.attempt_number,
        status_code=_status_of(error) if error else None,
        error=type(error).__name__ if error else None,
    )


class SoapTransport:
    """
    POST SOAP bodies with a bounded timeout and a fixed-delay retry budget.

    Implements the Transport port. A fresh httpx.Client is opened per call,
    so one transport may be shared across threads.
    """

    def __init__(
        self,
        timeout: float = 60,
        max_attempts: int = 3,
        retry_delay: float = 3,
    ) -> None:
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    def post(
        self,
        url: str,
        body: str,
        soap_action: str,
        token: str | None = None,
        binary: bool = False,
    ) -> str | bytes:
        """
        POST ``body`` to ``url`` and return the response body.

        The Authorization header is sent only when ``token`` is given.
        Raises TransportError when the budget is spent or on a 4xx.
        """
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": soap_action,
            "User-Agent": USER_AGENT,
            "Accept": ACCEPT,
        }
        if token is not None:
            headers["Authorization"] = f'WRAP access_token="{token}"'

        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_delay),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
        )
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = self._post_once(url, body, headers)
        except RetryError as e:
            cause = e.last_attempt.exception()
            assert cause is not None
            raise TransportError(
                url,
                e.last_attempt.attempt_number,
                cause,
                status_code=_status_of(cause),
                timed_out=isinstance(cause, httpx.TimeoutException),
                body=_body_of(cause),
            ) from cause
        except httpx.HTTPError as e:
            raise TransportError(url, attempts, e, status_code=_status_of(e), body=_body_of(e)) from e

        log.debug(
            "transport.complete",
            url=url,
            attempts=attempts,
            status_code=response.status_code,
            size_bytes=len(response.content),
        )
        return response.content if binary else response.text

    def _post_once(self, url: str, body: str, headers: dict[str, str]) -> httpx.Response:
        """Single attempt; exceptions are classified by the retry policy."""
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(url, content=body.encode("utf-8"), headers=headers)
            if response.is_server_error and is_fault(response.content):
                log.warning("transport.soap_fault", url=url, status_code=response.status_code)
                return response
            response.raise_for_status()
            return response
