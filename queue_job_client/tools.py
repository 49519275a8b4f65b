"""Queue tool handlers in the shape an MCP server registers them.

Each handler takes the tool arguments as a dict and returns a
``{"content": [{"type": "text", "text": ...}]}`` response.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

import aiohttp
from loguru import logger

from queue_job_client.errors import ApiError, JobPollingError
from queue_job_client.models import PollingConfig, PollOutcome, TerminalOutcome
from queue_job_client.queue_job_client import ENQUEUE_AND_WAIT_FACTOR, QueueJobClient

ToolHandler = Callable[[Dict[str, Any]], Awaitable[dict]]


class Tool(NamedTuple):
    name: str
    description: str
    handler: ToolHandler


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def text_response(value: Any, is_error: bool = False) -> dict:
    response: dict = {"content": [{"type": "text", "text": to_text(value)}]}
    if is_error:
        response["isError"] = True
    return response


def outcome_to_dict(outcome: PollOutcome) -> dict:
    data = outcome.model_dump(mode="json")
    if isinstance(outcome, TerminalOutcome):
        data["job_succeeded"] = outcome.job_succeeded
    else:
        data["message"] = (
            "Polling timed out; the request is still running. "
            "Use queue-get-status and queue-get-result to follow it up."
        )
    return data


def _require(args: Dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing required argument: {name}")
    return value


def model_list(result: Any) -> Any:
    # catalog endpoints wrap the list in "models" or "data"
    if isinstance(result, dict):
        return result.get("models", result.get("data", result))
    return result


class QueueTools:
    def __init__(self, client: QueueJobClient, config: Optional[PollingConfig] = None):
        self.client = client
        self.config = config

    def tools(self) -> Dict[str, Tool]:
        return {
            tool.name: tool
            for tool in (
                Tool(
                    "list-models",
                    "List available models. Use limit and page to paginate rather "
                    "than listing every model at once.",
                    self.list_models,
                ),
                Tool(
                    "search-models",
                    "Search models by keyword with optional category and limit filters.",
                    self.search_models,
                ),
                Tool(
                    "get-model-schema",
                    "Get the input and output schema of a model.",
                    self.get_model_schema,
                ),
                Tool(
                    "run-sync",
                    "Run a model in a single request without going through the queue.",
                    self.run_sync,
                ),
                Tool(
                    "queue-enqueue",
                    "Enqueue a model request. Check progress with queue-get-status, "
                    "then fetch the output with queue-get-result.",
                    self.enqueue,
                ),
                Tool(
                    "queue-get-status",
                    "Get the status of a queued request.",
                    self.get_status,
                ),
                Tool(
                    "queue-get-result",
                    "Get the result of a finished request. Check queue-get-status first.",
                    self.get_result,
                ),
                Tool("queue-cancel", "Cancel the given request.", self.cancel),
                Tool(
                    "queue-enqueue-and-wait",
                    "Enqueue a model request and wait for it to finish, polling with "
                    "exponential backoff until it completes or the timeout passes.",
                    self.enqueue_and_wait,
                ),
            )
        }

    async def call(self, name: str, args: Dict[str, Any]) -> dict:
        tool = self.tools().get(name)
        if tool is None:
            return text_response(f"Unknown tool: {name}", is_error=True)
        try:
            return await tool.handler(args)
        except (
            ValueError,
            ApiError,
            JobPollingError,
            aiohttp.ClientError,
            asyncio.TimeoutError,
        ) as exc:
            logger.error(f"Tool {name} failed: {exc}")
            body: dict = {"error": str(exc)}
            if isinstance(exc, JobPollingError) and exc.progress_log:
                body["progress_log"] = list(exc.progress_log)
            return text_response(body, is_error=True)

    async def enqueue(self, args: Dict[str, Any]) -> dict:
        output = await self.client.enqueue(_require(args, "modelId"), args.get("input"))
        return text_response(output)

    async def get_status(self, args: Dict[str, Any]) -> dict:
        report = await self.client.get_status(_require(args, "requestId"))
        return text_response(report.raw_response)

    async def get_result(self, args: Dict[str, Any]) -> dict:
        return text_response(await self.client.get_result(_require(args, "requestId")))

    async def cancel(self, args: Dict[str, Any]) -> dict:
        return text_response(await self.client.cancel(_require(args, "requestId")))

    async def list_models(self, args: Dict[str, Any]) -> dict:
        result = await self.client.list_models(args.get("limit"), args.get("page"))
        return text_response(model_list(result))

    async def search_models(self, args: Dict[str, Any]) -> dict:
        result = await self.client.search_models(
            _require(args, "keyword"), args.get("limit"), args.get("category")
        )
        return text_response(model_list(result))

    async def get_model_schema(self, args: Dict[str, Any]) -> dict:
        return text_response(
            await self.client.get_model_schema(_require(args, "modelId"))
        )

    async def run_sync(self, args: Dict[str, Any]) -> dict:
        output = await self.client.run_sync(_require(args, "modelId"), args.get("input"))
        return text_response(output)

    async def enqueue_and_wait(self, args: Dict[str, Any]) -> dict:
        config = self.config
        overrides = {
            key: args[arg]
            for key, arg in (
                ("timeout_ms", "timeoutMs"),
                ("initial_backoff_ms", "initialBackoffMs"),
                ("max_backoff_ms", "maxBackoffMs"),
            )
            if args.get(arg) is not None
        }
        if overrides:
            base = (
                config or PollingConfig(backoff_factor=ENQUEUE_AND_WAIT_FACTOR)
            ).model_dump()
            try:
                config = PollingConfig(**{**base, **overrides})
            except ValueError as exc:
                raise ValueError(f"Invalid polling options: {exc}") from exc

        outcome = await self.client.enqueue_and_wait(
            _require(args, "modelId"), args.get("input"), config
        )
        is_error = isinstance(outcome, TerminalOutcome) and not outcome.job_succeeded
        return text_response(outcome_to_dict(outcome), is_error=is_error)
