from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from oas_mvp.app import main
from oas_mvp.app.cache import TTLCache, ViewCountBatcher
from oas_mvp.app.panel import PanelStore


@pytest.fixture(autouse=True)
def fresh_app_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Point the app at an empty database and reset in-process state."""
    db_path = tmp_path / "oas_test.db"
    monkeypatch.setattr(main, "DB_PATH", str(db_path))
    monkeypatch.setattr(main, "SESSION_RESOLVER", main.resolve_session)
    monkeypatch.setattr(main, "categories_cache", TTLCache(300.0))
    monkeypatch.setattr(main, "swarms_cache", TTLCache(30.0))
    monkeypatch.setattr(main, "view_counts", ViewCountBatcher())
    monkeypatch.setattr(main.app.state, "panel_store", PanelStore())
    main.init_db()
    return db_path


@pytest.fixture
def client() -> Iterator[TestClient]:
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user() -> Callable[..., int]:
    def _make(username: str, *, password: str | None = None, is_admin: bool = False) -> int:
        with main.db() as conn:
            return main.create_user(
                conn,
                username,
                f"{username}@example.com",
                password or username,
                is_admin=is_admin,
                actor="test",
            )

    return _make


def login(client: TestClient, username: str, password: str | None = None) -> None:
    r = client.post(
        "/login",
        data={"username": username, "password": password or username, "next": "/"},
        follow_redirects=False,
    )
    assert r.status_code == 303, r.text
    assert main.SESSION_COOKIE in client.cookies


@pytest.fixture
def alice(client: TestClient, make_user) -> int:
    uid = make_user("alice")
    login(client, "alice")
    return uid


@pytest.fixture
def admin_client(make_user) -> Iterator[TestClient]:
    make_user("root", is_admin=True)
    with TestClient(main.app) as c:
        login(c, "root")
        yield c


def create_swarm(client: TestClient, name: str = "Cash Walkthrough", **overrides) -> dict:
    body = {
        "name": name,
        "slug": name,
        "description": f"{name} description",
        "categoryId": "fieldwork",
        "workflowNodes": '[{"id": "a", "data": {"label": "Start"}}]',
        "workflowEdges": "[]",
        "is_public": True,
    }
    body.update(overrides)
    r = client.post("/api/swarms", json=body)
    assert r.status_code == 201, r.text
    return r.json()
