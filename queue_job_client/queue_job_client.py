import asyncio
import json
from typing import Any, Callable, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger

from queue_job_client.errors import (
    ApiError,
    ApiErrorKind,
    SubmissionError,
    TransportError,
    classify_http_error,
)
from queue_job_client.models import (
    PollingConfig,
    PollOutcome,
    StatusReport,
    classify_status,
)
from queue_job_client.orchestrator import PollingOrchestrator

DEFAULT_BASE_URL = "https://queue.fal.run"
DEFAULT_MODELS_URL = "https://api.fal.ai/models"
DEFAULT_SYNC_URL = "https://fal.run"

# enqueue-and-wait grows its interval a little slower than the generic default
ENQUEUE_AND_WAIT_FACTOR = 1.8

# ValueError includes pydantic's ValidationError for malformed vendor payloads
REQUEST_ERRORS = (ApiError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def _progress_percent(value: Any) -> Optional[float]:
    # advisory only; anything unusable is dropped
    try:
        percent = float(value)
    except (TypeError, ValueError):
        return None
    return percent if 0 <= percent <= 100 else None


def _queue_position(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _expect_object(payload: Any, url: str) -> dict:
    if not isinstance(payload, dict):
        raise ApiError(ApiErrorKind.invalid_response, 200, url, payload)
    return payload


class QueueJobClient:
    """Client for a fal-style queue API plus its model catalog and sync runner."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 30.0,
        models_url: str = DEFAULT_MODELS_URL,
        sync_url: str = DEFAULT_SYNC_URL,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.models_url = models_url.rstrip("/")
        self.sync_url = sync_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None
        self.logger = logger

    async def __aenter__(self) -> "QueueJobClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    def _request_url(self, request_id: str, action: str) -> str:
        return f"{self.base_url}/requests/{quote(request_id, safe='')}/{action}"

    async def _request_json(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Sends a request and decodes the JSON body, raising ApiError on HTTP errors"""
        headers = {"Authorization": f"Bearer {self.api_key}"}
        kwargs: dict = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        if params:
            kwargs["params"] = params

        async with self.session.request(method, url, **kwargs) as response:
            text = await response.text()
            if response.status >= 400:
                try:
                    details = json.loads(text) if text else None
                except ValueError:
                    details = text
                error = classify_http_error(
                    response.status, url, details, response.headers.get("Retry-After")
                )
                self.logger.error(f"HTTP error {response.status} at {url}")
                raise error
            try:
                return json.loads(text) if text else None
            except ValueError:
                self.logger.error(f"Response from {url} is not JSON: {text[:200]!r}")
                raise ApiError(
                    ApiErrorKind.invalid_response, response.status, url, text[:200]
                ) from None

    async def enqueue(self, model_id: str, job_input: Any) -> dict:
        url = f"{self.base_url}/{quote(model_id, safe='/')}"
        body = job_input if job_input is not None else {}
        return _expect_object(await self._request_json("POST", url, body), url)

    async def get_status(self, request_id: str) -> StatusReport:
        """Fetches the status of a queued request from the server"""
        start_time = asyncio.get_running_loop().time()
        url = self._request_url(request_id, "status")
        data = _expect_object(await self._request_json("GET", url), url)
        return StatusReport(
            status=classify_status(data.get("status")),
            progress_percent=_progress_percent(data.get("progress")),
            queue_position=_queue_position(data.get("queue_position")),
            raw_response=data,
            elapsed_time=asyncio.get_running_loop().time() - start_time,
        )

    async def get_result(self, request_id: str) -> Any:
        return await self._request_json("GET", self._request_url(request_id, "result"))

    async def cancel(self, request_id: str) -> Any:
        return await self._request_json("PUT", self._request_url(request_id, "cancel"))

    async def list_models(
        self, limit: Optional[int] = None, page: Optional[int] = None
    ) -> Any:
        params = {
            key: str(value)
            for key, value in (("limit", limit), ("page", page))
            if value is not None
        }
        return await self._request_json("GET", self.models_url, params=params)

    async def search_models(
        self,
        query: str,
        limit: Optional[int] = None,
        category: Optional[str] = None,
    ) -> Any:
        params = {"query": query}
        if limit is not None:
            params["limit"] = str(limit)
        if category:
            params["category"] = category
        return await self._request_json(
            "GET", f"{self.models_url}/search", params=params
        )

    async def get_model_schema(self, model_id: str) -> Any:
        url = f"{self.models_url}/{quote(model_id, safe='/')}/schema"
        return await self._request_json("GET", url)

    async def run_sync(self, model_id: str, job_input: Any) -> Any:
        """Runs a model in a single blocking request, bypassing the queue"""
        url = f"{self.sync_url}/{quote(model_id, safe='/')}"
        body = job_input if job_input is not None else {}
        return await self._request_json("POST", url, body)

    def submitter(self, model_id: str) -> Callable[[Any], Any]:
        """Returns a submit collaborator bound to model_id."""

        async def submit(job_input: Any) -> str:
            try:
                payload = await self.enqueue(model_id, job_input)
            except REQUEST_ERRORS as exc:
                raise SubmissionError(f"Submitting to {model_id} failed: {exc}") from exc
            request_id = payload.get("request_id")
            if not request_id or not isinstance(request_id, str):
                raise SubmissionError(f"Queue response has no request_id: {payload!r}")
            return request_id

        return submit

    async def poll(self, request_id: str) -> StatusReport:
        try:
            return await self.get_status(request_id)
        except REQUEST_ERRORS as exc:
            raise TransportError(f"Status request for {request_id} failed: {exc}") from exc

    async def fetch_result(self, request_id: str) -> Any:
        try:
            return await self.get_result(request_id)
        except REQUEST_ERRORS as exc:
            raise TransportError(f"Result request for {request_id} failed: {exc}") from exc

    async def enqueue_and_wait(
        self,
        model_id: str,
        job_input: Any,
        config: Optional[PollingConfig] = None,
        **orchestrator_kwargs: Any,
    ) -> PollOutcome:
        """Enqueues a request and polls it until it finishes or the timeout passes.

        Without a config the backoff grows by ENQUEUE_AND_WAIT_FACTOR (1.8). A
        config passed in is used as-is, so a bare ``PollingConfig()`` keeps its
        own default factor of 2.0; ``Settings.polling_config()`` carries 1.8.
        """
        config = config or PollingConfig(backoff_factor=ENQUEUE_AND_WAIT_FACTOR)
        orchestrator = PollingOrchestrator(
            self.submitter(model_id),
            self.poll,
            self.fetch_result,
            config,
            **orchestrator_kwargs,
        )
        return await orchestrator.run(job_input)
