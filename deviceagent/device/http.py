"""Retrying HTTP client for the DeviceAgent service and the 200-response contract."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from deviceagent.models import HTTPStatusError, ProtocolError, RetryPolicy, TransportError

logger = logging.getLogger("device-agent.http")

DEADLINE_TOLERANCE = 1e-9


class RetryingClient:
    """Issues requests against a base URL under a RetryPolicy.

    Only transport failures are retried. Other httpx errors (redirect loops,
    undecodable bodies) raise ProtocolError at once. Any response, whatever
    its status, is handed back to the caller for interpretation.
    """

    def __init__(
        self,
        base_url: str,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url
        self._http = http or httpx.Client()
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._http.close()

    def get(self, route: str, policy: RetryPolicy) -> httpx.Response:
        return self.request("GET", route, policy)

    def post(self, route: str, policy: RetryPolicy, json: Any = None) -> httpx.Response:
        return self.request("POST", route, policy, json=json)

    def request(
        self,
        method: str,
        route: str,
        policy: RetryPolicy,
        json: Any = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{route}"
        start = self._clock()
        attempts = 0
        last_error: httpx.TransportError | None = None

        while True:
            attempts += 1
            try:
                return self._http.request(method, url, json=json, timeout=policy.timeout)
            except httpx.TransportError as exc:
                last_error = exc
                logger.debug(
                    "%s %s attempt %d failed: %s", method, url, attempts, type(exc).__name__,
                )
            except httpx.HTTPError as exc:
                raise ProtocolError(f"{method} {url} failed: {exc!r}", tool="http") from exc

            if attempts >= policy.max_attempts:
                break
            elapsed = self._clock() - start
            # Summed sleeps drift; equal within DEADLINE_TOLERANCE means out of time.
            if elapsed + policy.interval >= policy.timeout - DEADLINE_TOLERANCE:
                break
            self._sleep(policy.interval)

        raise TransportError(
            f"{method} {url} failed after {attempts} attempt(s) "
            f"in {self._clock() - start:.1f}s: {last_error!r}",
            attempts=attempts,
        ) from last_error


def response_body_to_dict(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(
            f"Could not parse response '{response.text}'; the app has probably crashed",
        ) from exc


def expect_200_response(response: httpx.Response) -> Any:
    """Decode the body and require status < 300 with no truthy "error" field."""
    body = response_body_to_dict(response)
    error = body.get("error") if isinstance(body, dict) else None
    if response.status_code < 300 and not error:
        return body

    if response.status_code >= 300:
        raise HTTPStatusError(
            f"Expected status code < 300, found {response.status_code}.\n\n"
            f"Server replied with:\n\n{body}\n",
            status_code=response.status_code,
            error=error,
        )
    raise HTTPStatusError(
        f"Expected JSON response with no error, but found\n\n{error}\n",
        status_code=response.status_code,
        error=error,
    )
