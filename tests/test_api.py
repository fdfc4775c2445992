from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from auditbot.main import create_app
from auditbot.notify import SlackNotifier
from tests.conftest import make_token

TASK = {
    "name": "nightly-buckets",
    "accounts": ["111111111111"],
    "service": "storage",
    "command": "check_unused",
    "schedule": "0 9 * * *",
    "channel": "#audit",
}


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def app(test_settings, idp, sts, notifier, registry):
    application = create_app(
        test_settings,
        idp=idp,
        sts_client=sts,
        notifier=notifier,
        registry=registry,
        load_tasks=False,
    )
    yield application
    application.state.scheduler.shutdown()


@pytest.fixture
def client(app):
    # no context manager: the lifespan (and the background clock) stays off
    return TestClient(app)


class TestTasks:
    def test_crud(self, client):
        r = client.post("/api/tasks", json=TASK)
        assert r.status_code == 201
        task = r.json()
        assert task["id"]
        assert task["next_run_at"] is not None

        assert [t["id"] for t in client.get("/api/tasks").json()] == [task["id"]]
        assert client.get(f"/api/tasks/{task['id']}").json()["name"] == "nightly-buckets"

        r = client.put(f"/api/tasks/{task['id']}", json={**TASK, "schedule": "30 10 * * 1-5"})
        assert r.status_code == 200
        assert r.json()["schedule"] == "30 10 * * 1-5"
        assert r.json()["id"] == task["id"]

        assert client.delete(f"/api/tasks/{task['id']}").status_code == 204
        assert client.get(f"/api/tasks/{task['id']}").status_code == 404

    def test_aliases_accepted(self, client):
        body = {**TASK, "aws_accounts": ["222222222222"], "slack_channel": "#sec"}
        del body["accounts"], body["channel"]
        r = client.post("/api/tasks", json=body)
        assert r.status_code == 201
        assert r.json()["accounts"] == ["222222222222"]
        assert r.json()["channel"] == "#sec"

    def test_not_found(self, client):
        assert client.get("/api/tasks/missing").status_code == 404
        r = client.put("/api/tasks/missing", json=TASK)
        assert r.status_code == 404
        assert r.json()["code"] == "TASK_NOT_FOUND"
        assert client.delete("/api/tasks/missing").status_code == 404

    def test_bad_schedule(self, client):
        r = client.post("/api/tasks", json={**TASK, "schedule": "whenever"})
        assert r.status_code == 422
        assert r.json()["code"] == "SCHEDULE_PARSE_ERROR"
        assert client.get("/api/tasks").json() == []

    def test_unknown_operation(self, client):
        r = client.post("/api/tasks", json={**TASK, "service": "ec2"})
        assert r.status_code == 422
        assert r.json()["code"] == "UNKNOWN_OPERATION"

    def test_due(self, client, app):
        client.post("/api/tasks", json={**TASK, "schedule": "* * * * *"})
        client.post("/api/tasks", json={**TASK, "name": "yearly", "schedule": "@yearly"})
        due = client.get("/api/tasks/due", params={"window": 60}).json()
        assert [t["name"] for t in due] == ["nightly-buckets"]

    def test_execute(self, client, app, notifier):
        app.state.broker.store("111111111111", make_token())
        task = client.post("/api/tasks", json={**TASK, "accounts": ["111111111111", "222222222222"]}).json()

        r = client.post(f"/api/tasks/{task['id']}/execute")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "PARTIAL"
        assert body["failed_accounts"] == ["222222222222"]
        assert "- bucket-111111111111" in body["result"]
        notifier.post.assert_called_once_with("#audit", body["result"])

        runs = client.get("/api/runs", params={"task_id": task["id"]}).json()
        assert len(runs) == 1
        assert runs[0]["trigger"] == "manual"
        assert runs[0]["status"] == "PARTIAL"

    def test_execute_without_notify(self, client, notifier):
        task = client.post("/api/tasks", json=TASK).json()
        r = client.post(f"/api/tasks/{task['id']}/execute", params={"notify": "false"})
        assert r.json()["status"] == "FAILED"
        notifier.post.assert_not_called()

    def test_clear_runs(self, client):
        first = client.post("/api/tasks", json=TASK).json()
        second = client.post("/api/tasks", json={**TASK, "name": "second"}).json()
        for task in (first, second):
            client.post(f"/api/tasks/{task['id']}/execute", params={"notify": "false"})

        assert client.delete("/api/runs", params={"task_id": first["id"]}).json() == {"deleted": 1}
        assert [r["task_id"] for r in client.get("/api/runs").json()] == [second["id"]]
        assert client.delete("/api/runs").json() == {"deleted": 1}
        assert client.get("/api/runs").json() == []

    def test_list_operations(self, client):
        assert client.get("/api/operations").json() == [
            {"service": "iam", "command": "list_users"},
            {"service": "storage", "command": "check_unused"},
        ]


class TestSettingsAndCredentials:
    def test_settings_are_masked(self, client, idp):
        body = client.get("/api/settings").json()
        assert body["client_id"] == "auditbot"
        assert body["client_secret"] == "********"
        assert body["slack_token"] == ""

    def test_update_settings(self, client, app, idp):
        r = client.put(
            "/api/settings",
            json={"client_secret": "new-secret", "account_claim": "accounts", "role_arn_template": "arn:aws:iam::{account_id}:role/Auditor"},
        )
        assert r.status_code == 200
        assert idp.client_secret == "new-secret"
        assert app.state.login_flow.account_claim == "accounts"
        assert app.state.broker.role_arn("1") == "arn:aws:iam::1:role/Auditor"

    def test_slack_token_swap_closes_old_notifier(self, client, app, notifier):
        r = client.put("/api/settings", json={"slack_token": "xoxb-new"})
        assert r.status_code == 200
        notifier.close.assert_called_once()
        swapped = app.state.executor.notifier
        assert isinstance(swapped, SlackNotifier)
        swapped.close()

    def test_update_settings_rejects_fixed_role(self, client):
        r = client.put("/api/settings", json={"role_arn_template": "arn:aws:iam::1:role/Fixed"})
        assert r.status_code == 422

    def test_credentials(self, client, app):
        app.state.broker.store("111111111111", make_token())
        assert client.get("/api/credentials").json() == {"accounts": ["111111111111"]}
        assert client.delete("/api/credentials/111111111111").status_code == 204
        assert client.delete("/api/credentials/111111111111").status_code == 404


class TestLogin:
    def test_login_round_trip(self, client, app):
        r = client.get("/auth/login", follow_redirects=False)
        assert r.status_code == 302
        state = parse_qs(urlparse(r.headers["location"]).query)["state"][0]

        r = client.get("/auth/callback", params={"state": state, "code": "code-1"})
        assert r.status_code == 200
        assert "111111111111" in r.text
        assert app.state.broker.accounts() == ["111111111111"]

    def test_callback_with_forged_state(self, client, app):
        client.get("/auth/login", follow_redirects=False)
        r = client.get("/auth/callback", params={"state": "forged", "code": "code-1"})
        assert r.status_code == 400
        assert r.text.startswith("Login rejected")
        assert app.state.broker.accounts() == []

    def test_callback_missing_params(self, client):
        assert client.get("/auth/callback", params={"code": "x"}).status_code == 400
        assert client.get("/auth/callback", params={"state": "x"}).status_code == 400
        assert client.get("/auth/callback", params={"error": "access_denied"}).status_code == 400

    def test_admin_api_requires_login(self, client, app):
        app.state.settings.ADMIN_AUTH_REQUIRED = True
        assert client.get("/api/tasks").status_code == 401

        r = client.get("/auth/login", follow_redirects=False)
        state = parse_qs(urlparse(r.headers["location"]).query)["state"][0]
        client.get("/auth/callback", params={"state": state, "code": "code-1"})
        assert client.get("/api/tasks").status_code == 200

        assert client.post("/logout").status_code == 204
        assert client.get("/api/tasks").status_code == 401


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "tasks": 0, "scheduler_running": False}
