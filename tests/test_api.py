import asyncio
import uuid

import pytest
from httpx import AsyncClient

from queryoffload.core.exceptions import ExecutionError
from queryoffload.core.offload.notifications import JobCompleted, JobFailed


@pytest.mark.asyncio
async def test_submit_query(client: AsyncClient, fake_offload):
    """Valid SELECT is admitted and gets a job id"""
    payload = {"query": "SELECT $1::int AS n", "params": [5]}
    response = await client.post("/jobs", json=payload)

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert fake_offload.waiting[job_id] == ("SELECT $1::int AS n", [5])


@pytest.mark.asyncio
async def test_submit_rejects_non_select(client: AsyncClient, fake_offload):
    response = await client.post("/jobs", json={"query": "DELETE FROM users"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "NOT_A_SELECT"
    assert fake_offload.waiting == {}


@pytest.mark.asyncio
async def test_submit_rejects_semicolon(client: AsyncClient):
    response = await client.post("/jobs", json={"query": "SELECT 1; SELECT 2"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MULTI_STATEMENT"


@pytest.mark.asyncio
async def test_submit_rejects_forbidden_keyword(client: AsyncClient):
    response = await client.post("/jobs", json={"query": "SELECT * FROM t WHERE alter = 1"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "FORBIDDEN_KEYWORD"


@pytest.mark.asyncio
async def test_submit_when_queue_full(client: AsyncClient, fake_offload):
    for _ in range(fake_offload.max_queue_size):
        response = await client.post("/jobs", json={"query": "SELECT 1 AS x"})
        assert response.status_code == 202

    response = await client.post("/jobs", json={"query": "SELECT 1 AS x"})
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "QUEUE_FULL"
    assert len(fake_offload.waiting) == fake_offload.max_queue_size


@pytest.mark.asyncio
async def test_empty_query_is_a_request_error(client: AsyncClient):
    response = await client.post("/jobs", json={"query": ""})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_job_table_lookup(client: AsyncClient, fake_offload):
    job_id = await fake_offload.create_query_job("SELECT 1 AS x")

    response = await client.get(f"/jobs/{job_id}/table")
    assert response.status_code == 404

    table_name = fake_offload.complete(job_id)
    response = await client.get(f"/jobs/{job_id}/table")
    assert response.status_code == 200
    assert response.json() == {"job_id": job_id, "table_name": table_name}


@pytest.mark.asyncio
async def test_job_status(client: AsyncClient, fake_offload):
    job_id = await fake_offload.create_query_job("SELECT 1 AS x")

    response = await client.get(f"/jobs/{job_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "waiting"

    fake_offload.complete(job_id)
    response = await client.get(f"/jobs/{job_id}")
    assert response.json()["status"] == "completed"
    assert response.json()["table_name"].startswith("query_results_")


@pytest.mark.asyncio
async def test_unknown_job(client: AsyncClient):
    job_id = str(uuid.uuid4())
    assert (await client.get(f"/jobs/{job_id}")).status_code == 404
    assert (await client.get(f"/jobs/{job_id}/table")).status_code == 404
    assert (await client.get(f"/jobs/{job_id}/wait", params={"timeout": 0})).status_code == 404


@pytest.mark.asyncio
async def test_wait_returns_completion_event(client: AsyncClient, fake_offload):
    job_id = await fake_offload.create_query_job("SELECT 1 AS x")

    async def finish_later():
        await asyncio.sleep(0.05)
        fake_offload.bus.publish(JobCompleted(job_id=job_id, table_name="query_results_x"))

    finisher = asyncio.create_task(finish_later())
    response = await client.get(f"/jobs/{job_id}/wait", params={"timeout": 5})
    await finisher

    assert response.status_code == 200
    assert response.json() == {
        "job_id": job_id,
        "status": "completed",
        "table_name": "query_results_x",
        "error": None,
    }
    assert fake_offload.bus.pending() == 0


@pytest.mark.asyncio
async def test_wait_returns_failure_event(client: AsyncClient, fake_offload):
    job_id = await fake_offload.create_query_job("SELECT nope")

    async def fail_later():
        await asyncio.sleep(0.05)
        error = ExecutionError(job_id, "probe", 'column "nope" does not exist')
        fake_offload.bus.publish(JobFailed(job_id=job_id, error=error))

    failer = asyncio.create_task(fail_later())
    response = await client.get(f"/jobs/{job_id}/wait", params={"timeout": 5})
    await failer

    body = response.json()
    assert body["status"] == "failed"
    assert "does not exist" in body["error"]
    assert body["table_name"] is None


@pytest.mark.asyncio
async def test_wait_reports_already_finished_jobs(client: AsyncClient, fake_offload):
    done_id = await fake_offload.create_query_job("SELECT 1 AS x")
    table_name = fake_offload.complete(done_id)
    failed_id = str(uuid.uuid4())
    fake_offload.failed[failed_id] = "boom"

    done = (await client.get(f"/jobs/{done_id}/wait")).json()
    failed = (await client.get(f"/jobs/{failed_id}/wait")).json()

    assert done["status"] == "completed"
    assert done["table_name"] == table_name
    assert failed == {"job_id": failed_id, "status": "failed", "table_name": None, "error": "boom"}


@pytest.mark.asyncio
async def test_wait_times_out_as_pending(client: AsyncClient, fake_offload):
    job_id = await fake_offload.create_query_job("SELECT 1 AS x")

    response = await client.get(f"/jobs/{job_id}/wait", params={"timeout": 0.05})

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert fake_offload.bus.pending() == 0


@pytest.mark.asyncio
async def test_health(client: AsyncClient, fake_offload):
    await fake_offload.create_query_job("SELECT 1 AS x")

    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "queue_depth": 1}


@pytest.mark.asyncio
async def test_not_running_without_handle(bare_client: AsyncClient):
    response = await bare_client.post("/jobs", json={"query": "SELECT 1 AS x"})
    assert response.status_code == 503
