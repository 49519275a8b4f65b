import asyncio

from queue_server import QueueServer
from queue_job_client.models import PollingConfig, TerminalOutcome
from queue_job_client.queue_job_client import QueueJobClient


async def status_changed(report):
    print(f"Status changed to: {report.status.value}")
    if report.progress_percent is not None:
        print(f"Progress: {report.progress_percent:g}%")


async def main():
    PORT = 8000
    API_KEY = "example-key"
    server = QueueServer(completion_time=20.0, failure_rate=0.1, api_key=API_KEY)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollingConfig(
        initial_backoff_ms=1000, max_backoff_ms=8000, backoff_factor=1.8, timeout_ms=60000
    )

    try:
        async with QueueJobClient(API_KEY, f"http://localhost:{PORT}") as client:
            outcome = await client.enqueue_and_wait(
                "fal-ai/fast-sdxl",
                {"prompt": "a lighthouse at dusk"},
                config,
                on_status_change=status_changed,
            )
        if isinstance(outcome, TerminalOutcome):
            print(f"Final status: {outcome.status.value}")
            print(f"Result: {outcome.result}")
        else:
            print(f"Polling timed out after {outcome.elapsed_ms}ms")
        print("Progress log:")
        for entry in outcome.progress_log:
            print(f"  {entry}")
    except Exception as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
