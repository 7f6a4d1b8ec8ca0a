from __future__ import annotations

import json

from fastapi.testclient import TestClient

from conftest import login
from oas_mvp.app import main

ENVELOPE = {
    "version": "1.0",
    "data": {
        "workflows": [
            {
                "name": "Reporting: Findings Review",
                "description": "Review findings before release",
                "diagramJson": {
                    "nodes": [
                        {"id": "a", "data": {"label": "Collect"}},
                        {"id": "b", "data": {"label": "Review"}},
                    ],
                    "edges": [{"source": "a", "target": "b"}],
                },
            }
        ]
    },
}


def test_preview_lays_out_envelope(client: TestClient, alice: int) -> None:
    r = client.post("/api/import/workflow", data={"text": json.dumps(ENVELOPE)})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["name"] == "Reporting: Findings Review"
    assert body["layoutApplied"] is True
    assert [n["type"] for n in body["nodes"]] == ["step", "step"]
    assert body["nodes"][1]["position"]["x"] > body["nodes"][0]["position"]["x"]
    assert body["edges"][0]["type"] == "deletable"


def test_preview_accepts_upload_and_double_encoding(client: TestClient, alice: int) -> None:
    payload = json.dumps(json.dumps({"nodes": [{"id": "x", "position": {"x": 5, "y": 6}}], "edges": []}))
    r = client.post(
        "/api/import/workflow",
        files={"upload": ("wf.json", payload.encode("utf-8"), "application/json")},
    )
    assert r.status_code == 200, r.text
    assert r.json()["layoutApplied"] is False
    assert r.json()["nodes"][0]["position"] == {"x": 5, "y": 6}


def test_preview_reports_malformed_kind(client: TestClient, alice: int) -> None:
    r = client.post("/api/import/workflow", data={"text": "not json"})
    assert r.status_code == 400
    assert r.json()["kind"] == "syntax"

    r = client.post("/api/import/workflow", data={"text": '{"foo": 1}'})
    assert r.status_code == 400
    assert r.json()["kind"] == "unrecognized_shape"


def test_preview_rejects_broken_graph(client: TestClient, alice: int) -> None:
    r = client.post("/api/import/workflow", data={"text": '{"nodes": [{"label": "no id"}]}'})
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Invalid workflow graph")


def test_preview_requires_input_and_login(client: TestClient, make_user) -> None:
    assert client.post("/api/import/workflow", data={"text": "{}"}).status_code == 401
    make_user("alice")
    login(client, "alice")
    assert client.post("/api/import/workflow", data={"text": "  "}).status_code == 400


def test_import_form_creates_private_swarm(client: TestClient, alice: int) -> None:
    assert client.get("/import").status_code == 200

    r = client.post("/import", data={"text": json.dumps(ENVELOPE)}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/swarms/findings-review"

    s = client.get("/api/swarms/findings-review").json()
    assert s["name"] == "Findings Review"
    assert s["categoryId"] == "reporting"
    assert s["is_public"] is False
    nodes = json.loads(s["workflowNodes"])
    assert {n["id"] for n in nodes} == {"a", "b"}
    assert all("position" in n for n in nodes)


def test_import_form_name_override(client: TestClient, alice: int) -> None:
    r = client.post(
        "/import",
        data={"text": '{"nodes": [{"id": "a"}]}', "name": "My Import", "category_id": "other"},
        follow_redirects=False,
    )
    assert r.headers["location"] == "/swarms/my-import"
    assert client.get("/api/swarms/my-import").json()["categoryId"] == "other"


def test_admin_bulk_import(admin_client: TestClient) -> None:
    first = {
        "name": "Reporting: Findings Review",
        "description": "Review findings before release",
        "diagramJson": {
            "nodes": [
                {"id": "a", "type": "step", "position": {"x": 0, "y": 0}, "data": {"label": "Collect"}},
                {"id": "b", "type": "step", "position": {"x": 400, "y": 0}, "data": {"label": "Review"}},
            ],
            "edges": [{"id": "e1", "source": "a", "target": "b"}],
        },
    }
    second = {
        "name": "Untagged Flow",
        "diagramJson": {"nodes": [], "edges": [], "metadata": {"phase": "other"}},
    }
    envelope = {"version": "1.0", "data": {"workflows": [first, second, second]}}

    r = admin_client.post("/api/admin/import", json=envelope)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["imported"] == 3
    assert body["failed"] == 0
    assert [x["slug"] for x in body["results"]] == ["findings-review", "untagged-flow", "untagged-flow-1"]

    listing = admin_client.get("/api/swarms").json()
    assert listing["total"] == 3
    by_slug = {s["slug"]: s for s in listing["swarms"]}
    assert by_slug["findings-review"]["categoryId"] == "reporting"
    assert by_slug["untagged-flow"]["categoryId"] is None
    assert by_slug["untagged-flow"]["workflowVersion"] == "1.0"


def test_admin_import_is_admin_only(client: TestClient, alice: int) -> None:
    assert client.post("/api/admin/import", json=ENVELOPE).status_code == 400
    valid = {"version": "1.0", "data": {"workflows": []}}
    assert client.post("/api/admin/import", json=valid).status_code == 403


def test_split_category_prefix(client: TestClient) -> None:
    with main.db() as conn:
        assert main._split_category_prefix(conn, "Planning: Scope") == ("planning", "Scope")
        assert main._split_category_prefix(conn, "Nope: Scope") == (None, "Nope: Scope")
        assert main._split_category_prefix(conn, "Plain") == (None, "Plain")
