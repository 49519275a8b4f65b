import json
import os
import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from queue_job_client import cli
from queue_job_client.errors import SubmissionError
from queue_job_client.models import (
    JobStatus,
    StatusReport,
    TerminalOutcome,
    TimedOutOutcome,
)

runner = CliRunner()


class FakeClient:
    """Stands in for QueueJobClient; records how it was built and called."""

    outcome = None
    instances: list = []

    def __init__(self, api_key, base_url, models_url=None, sync_url=None):
        self.api_key = api_key
        self.base_url = base_url
        self.models_url = models_url
        self.sync_url = sync_url
        self.calls = []
        FakeClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def enqueue_and_wait(self, model_id, job_input, config):
        self.calls.append(("enqueue_and_wait", model_id, job_input, config))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def get_status(self, request_id):
        self.calls.append(("get_status", request_id))
        return StatusReport(status=JobStatus.pending, raw_response={"status": "IN_QUEUE"})

    async def cancel(self, request_id):
        self.calls.append(("cancel", request_id))
        return {"status": "CANCELLATION_REQUESTED"}

    async def list_models(self, limit, page):
        self.calls.append(("list_models", limit, page))
        return {"models": [{"id": "fal-ai/whisper", "name": "Whisper", "category": "audio"}]}

    async def search_models(self, keyword, limit, category):
        self.calls.append(("search_models", keyword, limit, category))
        return [{"id": "fal-ai/flux/dev", "name": "FLUX", "category": "image"}]

    async def get_model_schema(self, model_id):
        self.calls.append(("get_model_schema", model_id))
        return {"model_id": model_id, "input": {"type": "object"}}

    async def run_sync(self, model_id, job_input):
        self.calls.append(("run_sync", model_id, job_input))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return {"output": job_input}


@pytest.fixture(autouse=True)
def fake_client(monkeypatch):
    for name in list(os.environ):
        if name.startswith("QUEUE_"):
            monkeypatch.delenv(name)
    FakeClient.instances = []
    FakeClient.outcome = TerminalOutcome(
        handle="req-1", status=JobStatus.completed, result={"ok": True}, elapsed_ms=12
    )
    monkeypatch.setattr(cli, "QueueJobClient", FakeClient)
    yield FakeClient
    # the CLI points loguru at the runner's stderr; restore the default sink
    logger.remove()
    logger.add(sys.stderr)


def test_missing_api_key_exits_with_config_error():
    result = runner.invoke(cli.app, ["run", "fal-ai/x"])
    assert result.exit_code == 1
    assert FakeClient.instances == []


def test_run_prints_json_outcome():
    result = runner.invoke(
        cli.app, ["run", "fal-ai/x", "--api-key", "k", "--input", '{"p": 1}', "--json"]
    )

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["status"] == "completed"
    assert data["result"] == {"ok": True}
    _, model_id, job_input, config = FakeClient.instances[0].calls[0]
    assert (model_id, job_input) == ("fal-ai/x", {"p": 1})
    assert config.backoff_factor == 1.8


def test_cli_flag_beats_environment():
    result = runner.invoke(
        cli.app,
        ["run", "fal-ai/x", "-k", "flag-key", "--timeout-ms", "700", "--json"],
        env={"QUEUE_API_KEY": "env-key", "QUEUE_TIMEOUT_MS": "9000"},
    )

    assert result.exit_code == 0
    client = FakeClient.instances[0]
    assert client.api_key == "flag-key"
    assert client.calls[0][3].timeout_ms == 700


def test_environment_supplies_base_url():
    result = runner.invoke(
        cli.app,
        ["status", "req-1"],
        env={"QUEUE_API_KEY": "env-key", "QUEUE_BASE_URL": "http://localhost:1234"},
    )

    assert result.exit_code == 0
    assert FakeClient.instances[0].base_url == "http://localhost:1234"
    assert json.loads(result.stdout) == {"status": "IN_QUEUE"}


def test_timed_out_run_exits_with_code_2():
    FakeClient.outcome = TimedOutOutcome(
        handle="req-1", elapsed_ms=800, last_status=JobStatus.pending
    )
    result = runner.invoke(cli.app, ["run", "fal-ai/x", "-k", "k"])

    assert result.exit_code == cli.EXIT_TIMED_OUT
    assert "req-1" in result.stdout


def test_failed_job_exits_with_code_3():
    FakeClient.outcome = TerminalOutcome(
        handle="req-1", status=JobStatus.failed, result={"error": "boom"}, elapsed_ms=5
    )
    result = runner.invoke(cli.app, ["run", "fal-ai/x", "-k", "k", "--json"])

    assert result.exit_code == cli.EXIT_JOB_UNSUCCESSFUL
    assert json.loads(result.stdout)["job_succeeded"] is False


def test_submission_error_exits_with_code_1():
    FakeClient.outcome = SubmissionError("quota exceeded")
    result = runner.invoke(cli.app, ["run", "fal-ai/x", "-k", "k"])
    assert result.exit_code == 1


def test_invalid_input_json():
    result = runner.invoke(cli.app, ["run", "fal-ai/x", "-k", "k", "--input", "{nope"])
    assert result.exit_code == 1
    assert FakeClient.instances == []


def test_cancel_command():
    result = runner.invoke(cli.app, ["cancel", "req-9", "-k", "k"])

    assert result.exit_code == 0
    assert FakeClient.instances[0].calls == [("cancel", "req-9")]


def test_models_command_prints_table():
    result = runner.invoke(cli.app, ["models", "-k", "k", "--limit", "5", "--page", "2"])

    assert result.exit_code == 0
    assert "fal-ai/whisper" in result.stdout
    assert FakeClient.instances[0].calls == [("list_models", 5, 2)]


def test_environment_supplies_catalog_urls():
    result = runner.invoke(
        cli.app,
        ["models", "--json"],
        env={
            "QUEUE_API_KEY": "env-key",
            "QUEUE_MODELS_URL": "http://localhost:1234/models",
            "QUEUE_SYNC_URL": "http://localhost:1234/run",
        },
    )

    assert result.exit_code == 0
    client = FakeClient.instances[0]
    assert client.models_url == "http://localhost:1234/models"
    assert client.sync_url == "http://localhost:1234/run"
    assert json.loads(result.stdout)[0]["name"] == "Whisper"


def test_search_command_passes_filters():
    result = runner.invoke(
        cli.app, ["search", "flux", "-k", "k", "--category", "image", "--json"]
    )

    assert result.exit_code == 0
    assert json.loads(result.stdout)[0]["id"] == "fal-ai/flux/dev"
    assert FakeClient.instances[0].calls == [("search_models", "flux", None, "image")]


def test_schema_command():
    result = runner.invoke(cli.app, ["schema", "fal-ai/flux/dev", "-k", "k"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["model_id"] == "fal-ai/flux/dev"


def test_run_sync_command():
    result = runner.invoke(
        cli.app, ["run-sync", "fal-ai/x", "-k", "k", "--input", '{"prompt": "p"}']
    )

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"output": {"prompt": "p"}}


def test_malformed_response_exits_with_code_1():
    FakeClient.outcome = ValueError("1 validation error for StatusReport")
    result = runner.invoke(cli.app, ["run-sync", "fal-ai/x", "-k", "k"])
    assert result.exit_code == 1
