import random
import uuid
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger


class QueuedJob:
    def __init__(self, model_id: str, payload: dict, fails: bool):
        self.id = str(uuid.uuid4())
        self.model_id = model_id
        self.payload = payload
        self.fails = fails
        self.submitted_at = datetime.now()
        self.cancelled = False


MODEL_CATALOG = [
    {
        "id": "fal-ai/fast-sdxl",
        "name": "Fast SDXL",
        "category": "text-to-image",
        "description": "Stable Diffusion XL tuned for speed",
    },
    {
        "id": "fal-ai/flux/dev",
        "name": "FLUX.1 [dev]",
        "category": "text-to-image",
        "description": "12B parameter flow transformer",
    },
    {
        "id": "fal-ai/whisper",
        "name": "Whisper",
        "category": "speech-to-text",
        "description": "Speech transcription and translation",
    },
]


class QueueServer:
    """Local stand-in for a queue API, for tests and the example."""

    def __init__(
        self,
        completion_time: float = 10.0,
        failure_rate: float = 0.1,
        api_key: Optional[str] = None,
        reject_submissions: bool = False,
    ):
        self.completion_time = completion_time
        self.failure_rate = failure_rate
        self.api_key = api_key
        self.reject_submissions = reject_submissions
        self.jobs: dict = {}
        self.status_requests = 0
        # route name ("submit", "status", "result") -> raw body served with 200
        self.raw_responses: dict = {}
        self.app = web.Application(middlewares=[self._auth_middleware])
        self.app.router.add_get("/models", self.handle_list_models)
        self.app.router.add_get("/models/search", self.handle_search_models)
        self.app.router.add_get("/models/{model_id:.+}/schema", self.handle_model_schema)
        self.app.router.add_post("/run/{model_id:.+}", self.handle_run_sync)
        self.app.router.add_get("/requests/{request_id}/status", self.handle_status)
        self.app.router.add_get("/requests/{request_id}/result", self.handle_result)
        self.app.router.add_put("/requests/{request_id}/cancel", self.handle_cancel)
        self.app.router.add_post("/{model_id:.+}", self.handle_submit)
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

    @web.middleware
    async def _auth_middleware(self, request, handler):
        if self.api_key is not None:
            if request.headers.get("Authorization") != f"Bearer {self.api_key}":
                return web.json_response({"detail": "Invalid API key"}, status=401)
        return await handler(request)

    def _job(self, request) -> QueuedJob:
        job = self.jobs.get(request.match_info["request_id"])
        if job is None:
            raise web.HTTPNotFound(
                text='{"detail": "Request not found"}', content_type="application/json"
            )
        return job

    def _state(self, job: QueuedJob) -> str:
        if job.cancelled:
            return "CANCELLED"
        elapsed = (datetime.now() - job.submitted_at).total_seconds()
        if elapsed >= self.completion_time:
            return "FAILED" if job.fails else "COMPLETED"
        if elapsed < self.completion_time / 4:
            return "IN_QUEUE"
        return "IN_PROGRESS"

    def _progress(self, job: QueuedJob) -> float:
        if self.completion_time <= 0:
            return 100.0
        elapsed = (datetime.now() - job.submitted_at).total_seconds()
        return round(min(elapsed / self.completion_time, 1.0) * 100, 1)

    def _raw(self, route: str) -> Optional[web.Response]:
        if route not in self.raw_responses:
            return None
        return web.Response(text=self.raw_responses[route], content_type="text/plain")

    def _model(self, model_id: str) -> dict:
        for model in MODEL_CATALOG:
            if model["id"] == model_id:
                return model
        raise web.HTTPNotFound(
            text='{"detail": "Model not found"}', content_type="application/json"
        )

    async def handle_list_models(self, request):
        limit = int(request.query.get("limit", len(MODEL_CATALOG)))
        page = int(request.query.get("page", 1))
        start = (page - 1) * limit
        return web.json_response(
            {"models": MODEL_CATALOG[start : start + limit], "page": page}
        )

    async def handle_search_models(self, request):
        query = request.query.get("query", "").lower()
        category = request.query.get("category")
        found = [
            model
            for model in MODEL_CATALOG
            if query in (model["name"] + " " + model["description"]).lower()
            and (category is None or model["category"] == category)
        ]
        if "limit" in request.query:
            found = found[: int(request.query["limit"])]
        return web.json_response({"models": found})

    async def handle_model_schema(self, request):
        model = self._model(request.match_info["model_id"])
        return web.json_response(
            {
                "model_id": model["id"],
                "input": {
                    "type": "object",
                    "properties": {"prompt": {"type": "string"}},
                    "required": ["prompt"],
                },
                "output": {"type": "object"},
            }
        )

    async def handle_run_sync(self, request):
        model = self._model(request.match_info["model_id"])
        payload = await request.json() if request.can_read_body else {}
        if random.random() < self.failure_rate:
            return web.json_response({"detail": "Model execution failed"}, status=500)
        self.logger.info(f"Ran {model['id']} synchronously")
        return web.json_response({"model_id": model["id"], "output": payload})

    async def handle_submit(self, request):
        raw = self._raw("submit")
        if raw is not None:
            return raw
        if self.reject_submissions:
            self.logger.info("Rejecting submission: quota exceeded")
            return web.json_response(
                {"detail": "quota exceeded"}, status=429, headers={"Retry-After": "30"}
            )
        payload = await request.json() if request.can_read_body else {}
        job = QueuedJob(
            request.match_info["model_id"], payload, random.random() < self.failure_rate
        )
        self.jobs[job.id] = job
        self.logger.info(f"Queued request {job.id} for {job.model_id}")
        base = f"{request.scheme}://{request.host}/requests/{job.id}"
        return web.json_response(
            {
                "request_id": job.id,
                "status_url": f"{base}/status",
                "response_url": f"{base}/result",
                "cancel_url": f"{base}/cancel",
            }
        )

    async def handle_status(self, request):
        self.status_requests += 1
        raw = self._raw("status")
        if raw is not None:
            return raw
        job = self._job(request)
        state = self._state(job)
        body = {"status": state, "progress": self._progress(job)}
        if state == "IN_QUEUE":
            body["queue_position"] = 0
        self.logger.info(f"Returning {state} for {job.id}")
        return web.json_response(body)

    async def handle_result(self, request):
        raw = self._raw("result")
        if raw is not None:
            return raw
        job = self._job(request)
        state = self._state(job)
        if state == "CANCELLED":
            return web.json_response({"status": state, "request_id": job.id})
        if state == "FAILED":
            return web.json_response({"status": state, "error": "Model execution failed"})
        if state != "COMPLETED":
            return web.json_response({"detail": "Request is still in progress"}, status=400)
        return web.json_response(
            {"status": state, "model_id": job.model_id, "output": job.payload}
        )

    async def handle_cancel(self, request):
        job = self._job(request)
        if self._state(job) in ("COMPLETED", "FAILED"):
            return web.json_response({"status": "ALREADY_COMPLETED"}, status=400)
        job.cancelled = True
        self.logger.info(f"Cancelled request {job.id}")
        return web.json_response({"status": "CANCELLATION_REQUESTED"})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
