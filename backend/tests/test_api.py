"""
Tests for the HTTP adapter.
"""
import pytest
from fastapi.testclient import TestClient

from sentinelconnect.main import app
from sentinelconnect.scheduler import SyncScheduler


@pytest.fixture
def sched(store, settings):
    s = SyncScheduler(store, settings)
    app.state.scheduler = s
    yield s
    app.state.scheduler = None
    s.stop(wait=True)


@pytest.fixture
def client(sched):
    # No context manager: the startup hook (global settings) must not run
    return TestClient(app)


class TestSchedulerRoutes:
    """Scheduler endpoints"""

    def test_status_empty(self, client):
        r = client.get("/api/scheduler/status")
        assert r.status_code == 200
        body = r.json()
        assert body["totalScheduled"] == 0
        assert body["runningJobs"] == 0
        assert body["schedules"] == []

    def test_schedule_unschedule(self, client, store, data_source_id):
        cid = store.add_sync_config(name="d", data_source_id=data_source_id, schedule_type="daily")
        r = client.post(f"/api/sync-configs/{cid}/schedule")
        assert r.status_code == 200
        assert r.json() == {"configId": cid, "scheduled": True}
        body = client.get("/api/scheduler/status").json()
        assert body["totalScheduled"] == 1
        assert body["schedules"][0]["configId"] == cid
        assert body["schedules"][0]["nextRunAt"]

        r = client.delete(f"/api/sync-configs/{cid}/schedule")
        assert r.json()["scheduled"] is False
        assert client.get("/api/scheduler/status").json()["totalScheduled"] == 0

    def test_schedule_unknown_config(self, client):
        assert client.post("/api/sync-configs/missing/schedule").status_code == 404

    def test_reload(self, client, store, data_source_id):
        store.add_sync_config(name="h", data_source_id=data_source_id, schedule_type="hourly")
        r = client.post("/api/scheduler/reload")
        assert r.json() == {"scheduled": 1, "skipped": 0}


class TestRunRoutes:
    """Manual runs and job records"""

    def test_run_and_fetch_job(self, client, sched, config_id):
        r = client.post(f"/api/sync-configs/{config_id}/run", json={"actorId": "admin"})
        assert r.status_code == 202
        job_id = r.json()["jobId"]
        assert sched.wait(job_id, 30)

        job = client.get(f"/api/sync-jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["rowsProcessed"] == 7
        assert job["tablesProcessed"] == 2
        assert job["outputFilePath"].endswith(".duckdb")

        listed = client.get("/api/sync-jobs", params={"configId": config_id}).json()
        assert [j["id"] for j in listed] == [job_id]

    def test_run_without_body(self, client, sched, config_id):
        r = client.post(f"/api/sync-configs/{config_id}/run")
        assert r.status_code == 202
        sched.wait(r.json()["jobId"], 30)

    def test_run_conflict(self, client, sched, config_id):
        sched.guard.try_acquire(config_id)
        try:
            r = client.post(f"/api/sync-configs/{config_id}/run")
        finally:
            sched.guard.release(config_id)
        assert r.status_code == 409
        assert r.json()["detail"] == "A sync job is already running for this configuration"

    def test_run_unknown_config(self, client):
        assert client.post("/api/sync-configs/missing/run").status_code == 404

    def test_run_invalid_config(self, client, store, data_source_id):
        cid = store.add_sync_config(name="incr", data_source_id=data_source_id, sync_mode="incremental")
        tid = store.add_table_config(sync_config_id=cid, source_table="customers")
        store.add_column_config(table_config_id=tid, source_column="id")
        assert client.post(f"/api/sync-configs/{cid}/run").status_code == 400

    def test_unknown_job(self, client):
        assert client.get("/api/sync-jobs/missing").status_code == 404
        assert client.post("/api/sync-jobs/missing/cancel").status_code == 404

    def test_cancel_finished_job(self, client, sched, config_id):
        job_id = client.post(f"/api/sync-configs/{config_id}/run").json()["jobId"]
        sched.wait(job_id, 30)
        r = client.post(f"/api/sync-jobs/{job_id}/cancel")
        assert r.json() == {"jobId": job_id, "cancelRequested": False}


class TestDataSourceRoutes:
    """Connection test and introspection"""

    def test_connection_test(self, client, data_source_id):
        r = client.post(f"/api/data-sources/{data_source_id}/test")
        assert r.json() == {"ok": True, "status": "connected", "error": None}

    def test_tables(self, client, data_source_id):
        body = client.get(f"/api/data-sources/{data_source_id}/tables").json()
        assert body["dataSourceId"] == data_source_id
        names = sorted(t["name"] for t in body["schemas"][0]["tables"])
        assert names == ["customers", "orders"]

    def test_tables_unreachable(self, client, store, tmp_path):
        ds = store.add_data_source(name="gone", db_type="sqlite", database=str(tmp_path / "missing.sqlite"))
        assert client.get(f"/api/data-sources/{ds}/tables").status_code == 502

    def test_unknown_data_source(self, client):
        assert client.post("/api/data-sources/missing/test").status_code == 404


class TestMetricsRoute:
    """Prometheus exposition"""

    def test_metrics_after_run(self, client, sched, config_id):
        job_id = client.post(f"/api/sync-configs/{config_id}/run").json()["jobId"]
        sched.wait(job_id, 30)
        r = client.get("/api/metrics")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/plain")
        assert 'sync_jobs_total{status="completed"} 1.0' in r.text
        assert "sync_job_duration_seconds_count 1" in r.text
