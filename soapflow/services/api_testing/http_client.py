"""Async HTTP/SOAP transport with timing capture and out-of-band cancellation."""

import asyncio
import logging
import re
import time
from typing import Any

import httpx

from soapflow.config import get_settings
from soapflow.schemas.api_request import ApiRequest, ApiResponse
from soapflow.services.api_testing.interfaces import Transport

logger = logging.getLogger(__name__)

SOAP_FAULT_PATTERN = re.compile(r"<(?:[\w-]+:)?Fault[\s>]")


class HttpTransport(Transport):
    """httpx-backed transport for SOAP and REST requests."""

    def __init__(
        self,
        timeout: float | None = None,
        follow_redirects: bool | None = None,
        verify_ssl: bool | None = None,
        max_body_size: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.follow_redirects = (
            follow_redirects if follow_redirects is not None else settings.follow_redirects
        )
        self.verify_ssl = verify_ssl if verify_ssl is not None else settings.verify_ssl
        self.max_body_size = max_body_size or settings.max_body_size
        self._client = client
        self._cancel_event: asyncio.Event | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=self.follow_redirects,
                verify=self.verify_ssl,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def cancel(self) -> None:
        """Abort the in-flight request; it completes as a failed response."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def execute(self, request: ApiRequest) -> ApiResponse:
        """
        Execute a request and return the response with timing.

        SOAP requests are POSTed as XML with a SOAPAction header. Any
        transport problem is reported in the returned ApiResponse.
        """
        client = await self._get_client()
        kwargs = self._build_request_kwargs(request)

        self._cancel_event = asyncio.Event()
        start_time = time.perf_counter()

        request_task = asyncio.ensure_future(client.request(**kwargs))
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if request_task not in done:
                request_task.cancel()
                logger.info(f"Request '{request.name}' cancelled")
                return self._failure(start_time, "Request cancelled")

            response = request_task.result()
            elapsed_ms = int((time.perf_counter() - start_time) * 1000)
            return self._build_response(request, response, elapsed_ms)

        except httpx.TimeoutException as e:
            return self._failure(start_time, f"Timeout: {e}")
        except httpx.ConnectError as e:
            return self._failure(start_time, f"Connection error: {e}")
        except httpx.InvalidURL as e:
            return self._failure(start_time, f"Invalid URL: {e}")
        except httpx.HTTPError as e:
            return self._failure(start_time, f"Request error: {e}")
        except ValueError as e:
            return self._failure(start_time, f"Invalid URL: {e}")
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()
            self._cancel_event = None

    def _build_request_kwargs(self, request: ApiRequest) -> dict[str, Any]:
        headers = dict(request.headers or {})
        kind = request.kind or request.request_type or "soap"

        if kind == "soap":
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = "text/xml; charset=utf-8"
            if not any(k.lower() == "soapaction" for k in headers):
                headers["SOAPAction"] = f'"{request.name}"' if request.name else '""'
            method = "POST"
        else:
            method = (request.method or "GET").upper()
            if request.content_type and not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = request.content_type

        kwargs: dict[str, Any] = {
            "method": method,
            "url": request.endpoint,
            "headers": headers,
        }

        if kind == "graphql" and request.graphql_config is not None:
            kwargs["json"] = {
                "query": request.body,
                "variables": request.graphql_config.get("variables") or {},
            }
        elif request.body and method not in ("GET", "HEAD"):
            kwargs["content"] = request.body.encode("utf-8")

        if request.rest_config and request.rest_config.get("queryParams"):
            kwargs["params"] = request.rest_config["queryParams"]

        return kwargs

    def _build_response(
        self,
        request: ApiRequest,
        response: httpx.Response,
        elapsed_ms: int,
    ) -> ApiResponse:
        body_bytes = response.content[:self.max_body_size]
        try:
            body_text = body_bytes.decode("utf-8")
        except UnicodeDecodeError:
            body_text = body_bytes.decode("latin-1")

        success = response.is_success
        error = None if success else f"HTTP {response.status_code}"

        kind = request.kind or request.request_type or "soap"
        if kind == "soap" and SOAP_FAULT_PATTERN.search(body_text):
            success = False
            error = "SOAP Fault returned"

        return ApiResponse(
            success=success,
            status=response.status_code,
            body=body_text,
            raw_response=body_text,
            headers=dict(response.headers),
            time_taken=elapsed_ms,
            error=error,
        )

    def _failure(self, start_time: float, error: str) -> ApiResponse:
        elapsed_ms = int((time.perf_counter() - start_time) * 1000)
        logger.warning(error)
        return ApiResponse(
            success=False,
            body="",
            raw_response="",
            time_taken=elapsed_ms,
            error=error,
        )

