import pytest


@pytest.mark.integration
class TestTestRules:
    @pytest.mark.asyncio
    async def test_create_list_update_delete(self, client) -> None:
        resp = await client.post(
            "/projects/p1/test-rules",
            json={
                "type": "assertion",
                "name": "fast responses",
                "assertion_rules": {"response_time_check": True, "max_response_time": 300},
            },
        )
        assert resp.status_code == 201
        rule = resp.json()
        assert rule["project_id"] == "p1"
        assert rule["assertion_rules"]["max_response_time"] == 300

        await client.post("/projects/p1/test-rules", json={"type": "request", "name": "retry"})
        listed = (await client.get("/projects/p1/test-rules", params={"type": "assertion"})).json()
        assert [r["id"] for r in listed] == [rule["id"]]
        assert len((await client.get("/projects/p1/test-rules")).json()) == 2

        resp = await client.put(f"/projects/p1/test-rules/{rule['id']}", json={"enabled": False})
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False

        assert (await client.delete(f"/projects/p1/test-rules/{rule['id']}")).status_code == 204
        assert (await client.delete(f"/projects/p1/test-rules/{rule['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_rule_type(self, client) -> None:
        resp = await client.post("/projects/p1/test-rules", json={"type": "magic", "name": "x"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_changing_rule_kind_rejected(self, client) -> None:
        rule = (
            await client.post("/projects/p1/test-rules", json={"type": "response", "name": "r"})
        ).json()
        resp = await client.put(f"/projects/p1/test-rules/{rule['id']}", json={"type": "request"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_rule_applies_to_runs(self, client, services) -> None:
        await client.post(
            "/projects/p1/test-rules",
            json={
                "type": "assertion",
                "name": "code is 1",
                "assertion_rules": {"custom_assertions": [{"expression": "code == 1"}]},
            },
        )
        task = (
            await client.post(
                "/auto-test/tasks",
                json={"name": "t", "project_id": "p1", "test_cases": [{"interface_id": "if-list"}]},
            )
        ).json()
        result = await services.runner.run(task["id"])
        assert result.status == "failed"


@pytest.mark.integration
class TestAutoTestConfig:
    @pytest.mark.asyncio
    async def test_defaults_created_on_read(self, client) -> None:
        resp = await client.get("/projects/p1/auto-test-config")
        assert resp.status_code == 200
        config = resp.json()
        assert config["enabled"] is True
        assert config["retryCount"] == 0
        assert config["dataGenerationStrategy"] == "mock"

    @pytest.mark.asyncio
    async def test_update(self, client) -> None:
        resp = await client.put(
            "/projects/p1/auto-test-config", json={"retryCount": 2, "enabled": False, "projectId": "x"}
        )
        assert resp.status_code == 200
        config = resp.json()
        assert config["retryCount"] == 2
        assert config["enabled"] is False
        assert config["project_id"] == "p1"
