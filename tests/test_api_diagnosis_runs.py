from __future__ import annotations

from rhythm_pipeline.dedup import compute_inputs_hash


def test_duplicate_submission_returns_existing_run(client):
    inputs = {"answers": {"stress_q1": 3}, "symptoms": ["palpitations"]}
    first = client.post("/api/v1/diagnosis-runs", json={"patient_id": "patient_api", "inputs": inputs})
    assert first.status_code == 202
    run_id = first.json()["data"]["run_id"]

    second = client.post(
        "/api/v1/diagnosis-runs",
        json={"patient_id": "patient_api", "inputs": {**inputs, "trace_id": "trace_other"}},
    )
    assert second.status_code == 200
    assert second.json()["data"]["is_duplicate"] is True
    assert second.json()["data"]["run_id"] == run_id

    fetched = client.get(f"/api/v1/diagnosis-runs/{run_id}")
    assert fetched.json()["data"]["inputs_hash"] == compute_inputs_hash(inputs)


def test_check_duplicate_endpoint(client):
    inputs = {"answers": {"sleep_q1": 1}}
    client.post("/api/v1/diagnosis-runs", json={"patient_id": "patient_api", "inputs": inputs})

    hit = client.post(
        "/api/v1/diagnosis-runs/check-duplicate",
        json={"patient_id": "patient_api", "inputs_hash": compute_inputs_hash(inputs)},
    )
    assert hit.json()["data"]["is_duplicate"] is True

    miss = client.post(
        "/api/v1/diagnosis-runs/check-duplicate",
        json={"patient_id": "patient_other", "inputs_hash": compute_inputs_hash(inputs), "window_hours": 1},
    )
    assert miss.json()["data"] == {"is_duplicate": False, "existing_run_id": None, "warning": None}


def test_unknown_run_and_invalid_window(client):
    assert client.get("/api/v1/diagnosis-runs/run_missing").status_code == 404
    resp = client.post(
        "/api/v1/diagnosis-runs/check-duplicate",
        json={"patient_id": "patient_api", "inputs_hash": "abc", "window_hours": 0},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
