from fastapi.testclient import TestClient
import pytest

from fieldsync.api.http_app import build_app
from fieldsync.repositories.storage import InMemoryKeyValueStorage
from fieldsync.repositories.storage_keys import StorageKeys
from fieldsync.roles import validate_role
from fieldsync.services.bootstrap import RuntimeContainer, build_runtime_container
from fieldsync.workers.runner import SchedulerRuntimeSettings

KEYS = StorageKeys(active="it.queue.active", completed="it.queue.completed")

EVENT = {
    "action_id": 3,
    "action_name": "Collection",
    "company_id": 42,
    "event_date": "2026-03-02T08:00:00+00:00",
    "incoming_materials": [{"material_id": 11, "code": "BAG-0001", "weight_kg": 12.5}],
    "collector_id": "COL-7",
}


def _container(role_name: str = "api") -> RuntimeContainer:
    return build_runtime_container(
        validate_role(role_name),
        keys=KEYS,
        storage=InMemoryKeyValueStorage(),
    )


def _app(container: RuntimeContainer, role_name: str = "api", **kwargs: object):
    return build_app(
        role=role_name,
        run_id="integration-api",
        api_deps=container.api_deps,
        run_scheduler_loop=container.run_scheduler_loop,
        scheduler_state=container.scheduler_state,
        **kwargs,
    )


@pytest.mark.integration
def test_queue_endpoints_deliver_an_event_end_to_end() -> None:
    container = _container()

    with TestClient(_app(container)) as client:
        assert client.get("/health").json() == {"status": "ok", "role": "api", "mode": "stub"}

        create_response = client.post("/queue/items", json=EVENT)
        assert create_response.status_code == 201
        local_id = create_response.json()["local_id"]

        listing = client.get("/queue/items").json()
        assert listing["count"] == 1
        assert listing["items"][0]["overall_status"] == "PENDING"

        detail = client.get(f"/queue/items/{local_id}").json()
        assert detail["partition"] == "active"
        assert detail["decisions"]["ledger"]["eligible"] is True

        run_response = client.post("/queue/run")
        assert run_response.status_code == 200
        assert run_response.json()["outcome"] == "new_data"
        assert run_response.json()["completed"] == [local_id]

        assert client.get("/queue/items").json()["count"] == 0
        completed = client.get("/queue/completed").json()
        assert completed["items"][0]["ledger"]["record_id"] == 1001
        assert completed["items"][0]["overall_status"] == "COMPLETED"

        metrics = client.get("/queue/metrics").json()
        assert metrics["total_active"] == 0
        assert metrics["completed"] == 1

        assert client.delete(f"/queue/items/{local_id}").status_code == 204
        assert client.get("/queue/completed").json()["count"] == 0


@pytest.mark.integration
def test_failed_item_can_be_retried_but_not_cleared() -> None:
    container = _container()
    container.ledger.fail_times = 1

    with TestClient(_app(container)) as client:
        local_id = client.post("/queue/items", json=EVENT).json()["local_id"]
        run_response = client.post("/queue/run").json()
        assert run_response["failed"] == [local_id]

        failed = client.get(f"/queue/items/{local_id}").json()
        assert failed["item"]["overall_status"] == "FAILED"
        assert failed["item"]["ledger"]["error"] == "ledger service unavailable"
        assert failed["contact_support"] is False

        assert client.delete(f"/queue/items/{local_id}").status_code == 409
        assert client.post(f"/queue/items/{local_id}/rescue").status_code == 409

        retry_response = client.post(f"/queue/items/{local_id}/retry", json={"service": "ledger"})
        assert retry_response.status_code == 200
        body = retry_response.json()
        assert body["reset_steps"] == ["ledger"]
        assert body["dispatched"] is True
        assert body["outcome"] == "completed"

        assert client.get(f"/queue/items/{local_id}").json()["partition"] == "completed"


@pytest.mark.integration
def test_queue_endpoints_report_client_errors() -> None:
    container = _container()

    with TestClient(_app(container)) as client:
        assert client.get("/queue/items/q_missing").status_code == 404
        assert client.post("/queue/items/q_missing/retry").status_code == 404
        assert client.post("/queue/items/q_missing/rescue").status_code == 404
        assert client.delete("/queue/items/q_missing").status_code == 404

        local_id = client.post("/queue/items", json=EVENT).json()["local_id"]
        bad_service = client.post(f"/queue/items/{local_id}/retry", json={"service": "wallet"})
        assert bad_service.status_code == 422

        bad_event = client.post("/queue/items", json={"action_id": 3})
        assert bad_event.status_code == 422


@pytest.mark.integration
def test_missing_dependencies_return_service_unavailable() -> None:
    app = build_app(role="api", run_id="integration-api")

    with TestClient(app) as client:
        assert client.get("/queue/items").status_code == 503
        assert client.get("/ready").json()["scheduler_loop_enabled"] is False


@pytest.mark.integration
def test_scheduler_role_runs_timer_loop_inside_the_app() -> None:
    container = _container("worker-scheduler")
    app = _app(
        container,
        role_name="worker-scheduler",
        scheduler_runtime_settings=SchedulerRuntimeSettings(interval_ms=20, error_backoff_ms=20),
    )

    with TestClient(app) as client:
        local_id = client.post("/queue/items", json=EVENT).json()["local_id"]
        for _ in range(200):
            if client.get(f"/queue/items/{local_id}").json()["partition"] == "completed":
                break
        ready = client.get("/ready").json()

    assert ready["scheduler_loop_enabled"] is True
    assert ready["scheduler_loop_ready"] is True
    assert ready["scheduler_metrics"]["started"] is True
    assert ready["scheduler_metrics"]["new_data_total"] >= 1
    assert container.scheduler_state.stopped is True
