import json

import pytest
from conftest import ScriptedLLM, answer_response, make_task
from fastapi.testclient import TestClient

from cell_orchestrator.api.main import create_app
from cell_orchestrator.models import ModelResponse, TaskGroup


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def client(make_runner, settings, llm: ScriptedLLM) -> TestClient:
    return TestClient(create_app(runner=make_runner(llm), settings_override=settings))


def _create_collection(client: TestClient, *tasks) -> dict:
    group = TaskGroup(id="review", name="Review", tasks=tasks or (make_task("status"),))
    response = client.post("/collections", json={"group": group.model_dump(mode="json")})
    assert response.status_code == 200
    return response.json()


def test_health_tools_and_presets(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok", "service": "cell-orchestrator"}
    assert client.get("/tools").json() == {
        "tools": ["get_document_details", "list_documents", "search_documents"]
    }
    preset_ids = [preset["id"] for preset in client.get("/presets").json()["presets"]]
    assert "compliance-checker" in preset_ids


def test_targets_can_be_registered_and_listed(client: TestClient) -> None:
    response = client.post(
        "/targets",
        json={"id": "doc-d", "name": "PFMEA.xlsx", "type": "pfmea", "content": "RPN 120"},
    )

    assert response.status_code == 200
    listed = client.get("/targets").json()
    assert [target["id"] for target in listed] == ["doc-a", "doc-b", "doc-c", "doc-d"]
    assert listed[-1] == {"id": "doc-d", "name": "PFMEA.xlsx", "type": "pfmea"}


def test_plan_endpoint_maps_planning_failure_to_502(client: TestClient, llm: ScriptedLLM) -> None:
    plan = {"taskTitle": "Check", "useCases": [{"name": "Basics", "columns": [{"name": "Rev"}]}]}
    llm.responses = [ModelResponse(content=json.dumps(plan)), ModelResponse(content="no plan")]

    ok = client.post("/plans", json={"request": "Check revisions"})
    failed = client.post("/plans", json={"request": "Check revisions"})

    assert ok.status_code == 200
    assert ok.json()["groups"][0]["tasks"][0]["id"] == "rev"
    assert failed.status_code == 502
    assert "malformed" in failed.json()["detail"]


def test_collection_run_and_progress(client: TestClient, llm: ScriptedLLM) -> None:
    llm.responses = [answer_response("Pass") for _ in range(3)]
    created = _create_collection(client)
    collection_id = created["collection"]["id"]
    assert created["progress"]["pending"] == 3

    report = client.post(f"/collections/{collection_id}/run", json={"deadline_s": 5})
    view = client.get(f"/collections/{collection_id}").json()

    assert report.status_code == 200
    assert len(report.json()["completed"]) == 3
    assert view["progress"]["complete"] == 3
    assert view["collection"]["cells"]["doc-a:status"]["result"] == "Pass"
    assert view["collection"]["is_running"] is False


def test_single_cell_run_and_unknown_ids(client: TestClient) -> None:
    collection_id = _create_collection(client)["collection"]["id"]

    cell = client.post(f"/collections/{collection_id}/cells/doc-b/status/run")

    assert cell.status_code == 200
    assert cell.json()["status"] == "complete"
    assert client.get("/collections/col-missing").status_code == 404
    assert client.post(f"/collections/{collection_id}/cells/doc-z/status/run").status_code == 404
    assert client.post(f"/collections/{collection_id}/cells/doc-a/ghost/run").status_code == 404


def test_manual_edit_of_user_input_cell(client: TestClient) -> None:
    collection_id = _create_collection(client, make_task("notes", user_input=True))["collection"][
        "id"
    ]

    response = client.put(
        f"/collections/{collection_id}/cells/doc-a/notes", json={"value": "Reviewed by QA"}
    )

    assert response.status_code == 200
    assert response.json()["result"] == "Reviewed by QA"


def test_add_task_from_preset_or_definition(client: TestClient) -> None:
    collection_id = _create_collection(client)["collection"]["id"]

    from_preset = client.post(
        f"/collections/{collection_id}/tasks",
        json={
            "preset": {
                "preset_id": "data-extractor",
                "task_id": "part-number",
                "settings": {"fieldsToExtract": "Part number"},
            }
        },
    )
    bad_preset = client.post(
        f"/collections/{collection_id}/tasks",
        json={"preset": {"preset_id": "data-extractor", "task_id": "x", "settings": {}}},
    )
    neither = client.post(f"/collections/{collection_id}/tasks", json={})

    assert from_preset.status_code == 200
    tasks = from_preset.json()["collection"]["tasks"]
    assert tasks[-1]["preset_id"] == "data-extractor"
    assert "Part number" in tasks[-1]["prompt"]
    assert from_preset.json()["progress"]["total"] == 6
    assert bad_preset.status_code == 422
    assert neither.status_code == 422


def test_update_and_remove_task(client: TestClient) -> None:
    collection_id = _create_collection(client)["collection"]["id"]
    base = f"/collections/{collection_id}/tasks/status"

    updated = client.put(base, json={"changes": {"prompt": "Is it signed?"}})
    invalid = client.put(base, json={"changes": {"output_shape": "chart"}})
    removed = client.delete(base)
    missing = client.delete(base)

    assert updated.status_code == 200
    assert updated.json()["collection"]["tasks"][0]["prompt"] == "Is it signed?"
    assert invalid.status_code == 422
    assert removed.json()["progress"]["total"] == 0
    assert missing.status_code == 404
