from queue_job_client.cli import app

app()
