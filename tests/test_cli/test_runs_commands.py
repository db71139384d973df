"""Integration tests for the ``runledger runs`` commands.

Uses CliRunner to test command output without subprocess overhead.
"""

import json

import pytest

# Skip all if optional dependencies are not installed
typer = pytest.importorskip("typer")
aiosqlite = pytest.importorskip("aiosqlite")

from typer.testing import CliRunner  # noqa: E402

from runledger.cli import create_app  # noqa: E402
from runledger.ledger import CheckpointLedger  # noqa: E402
from runledger.run_store import RunStore  # noqa: E402
from runledger.storage import SqliteStorage  # noqa: E402

runner_cli = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    # Keep load_config() away from any pyproject.toml above the test
    monkeypatch.chdir(tmp_path)
    return str(tmp_path / "runs.db")


@pytest.fixture
async def populated_db(db_path):
    """A completed run with a tool call, and a running one with an unconfirmed call."""
    storage = SqliteStorage(db_path)
    await storage.initialize()
    store = RunStore(storage)
    ledger = CheckpointLedger(storage)

    done = await store.mark_running(await store.start("order-1", "support", "react", {"message": "where is my order?"}))
    await ledger.append(done.id, "iteration_start", {"iteration": 1}, 1)
    await ledger.append(done.id, "thought", {"text": "Looking it up", "has_tool_calls": True, "tool_count": 1, "iteration": 1}, 1)
    await ledger.record_tool_call(done.id, 1, "lookup_order", {"order_id": 42})
    await ledger.record_tool_result(done.id, 1, "lookup_order", {"order_id": 42}, {"status": "shipped"})
    await ledger.append(done.id, "observation", {"text": "lookup_order (ok): shipped", "iteration": 1}, 1)
    await ledger.append(done.id, "complete", {"text": "It has shipped.", "iterations": 1}, 1)
    done = await store.mark_completed(done, "It has shipped.", 1)

    active = await store.mark_running(await store.start("refund-7", "billing", "react", {"message": "refund please"}))
    await ledger.append(active.id, "iteration_start", {"iteration": 1}, 1)
    await ledger.record_tool_call(active.id, 1, "refund", {"amount": 20})

    await storage.close()
    return {"db": db_path, "done": done.id, "active": active.id}


def _invoke(*args):
    return runner_cli.invoke(create_app(), ["runs", *args])


def _json(result, command):
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["schema_version"] == 1
    assert data["command"] == command
    return data["data"]


class TestDashboard:
    def test_empty_db(self, db_path):
        result = _invoke("--db", db_path)
        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_active_and_recent(self, populated_db):
        result = _invoke("--db", populated_db["db"])
        assert result.exit_code == 0
        assert "Active (1)" in result.output
        assert "Recent (last 1)" in result.output
        assert populated_db["active"] in result.output

    def test_json(self, populated_db):
        data = _json(_invoke("--db", populated_db["db"], "--json"), "runs")
        assert [r["id"] for r in data["active"]] == [populated_db["active"]]
        assert [r["id"] for r in data["recent"]] == [populated_db["done"]]


class TestLs:
    def test_lists_runs(self, populated_db):
        result = _invoke("ls", "--db", populated_db["db"])
        assert result.exit_code == 0
        assert "Runs (2)" in result.output
        assert "support" in result.output
        assert "billing" in result.output

    def test_status_filter(self, populated_db):
        data = _json(_invoke("ls", "--db", populated_db["db"], "--status", "completed", "--json"), "runs.ls")
        assert [r["id"] for r in data] == [populated_db["done"]]

    def test_repeated_status(self, populated_db):
        data = _json(
            _invoke("ls", "--db", populated_db["db"], "--status", "completed", "--status", "running", "--json"),
            "runs.ls",
        )
        assert len(data) == 2

    def test_agent_filter(self, populated_db):
        data = _json(_invoke("ls", "--db", populated_db["db"], "--agent", "billing", "--json"), "runs.ls")
        assert [r["agent_kind"] for r in data] == ["billing"]

    def test_since(self, populated_db):
        data = _json(_invoke("ls", "--db", populated_db["db"], "--since", "1h", "--json"), "runs.ls")
        assert len(data) == 2

    def test_bad_status(self, populated_db):
        result = _invoke("ls", "--db", populated_db["db"], "--status", "paused")
        assert result.exit_code == 1
        assert "Unknown status 'paused'" in result.output

    def test_bad_since(self, populated_db):
        result = _invoke("ls", "--db", populated_db["db"], "--since", "yesterday")
        assert result.exit_code == 1
        assert "Invalid --since" in result.output


class TestShow:
    def test_ledger_table(self, populated_db):
        result = _invoke("show", populated_db["done"], "--db", populated_db["db"])
        assert result.exit_code == 0
        assert "6 checkpoints" in result.output
        assert "Seq" in result.output
        assert 'lookup_order({"order_id": 42})' in result.output
        assert "output: It has shipped." in result.output

    def test_json(self, populated_db):
        data = _json(_invoke("show", populated_db["done"], "--db", populated_db["db"], "--json"), "runs.show")
        assert data["run"]["status"] == "completed"
        assert [c["sequence"] for c in data["checkpoints"]] == [1, 2, 3, 4, 5, 6]
        assert data["checkpoints"][3]["data"]["result"] == {"status": "shipped"}

    def test_type_filter(self, populated_db):
        data = _json(
            _invoke("show", populated_db["done"], "--db", populated_db["db"], "--type", "tool_result", "--json"),
            "runs.show",
        )
        assert [c["type"] for c in data["checkpoints"]] == ["tool_result"]

    def test_values(self, populated_db):
        result = _invoke("show", populated_db["done"], "--db", populated_db["db"], "--values")
        assert result.exit_code == 0
        assert '"status": "shipped"' in result.output

    def test_unknown_run(self, populated_db):
        result = _invoke("show", "nope", "--db", populated_db["db"])
        assert result.exit_code == 1
        assert "Run 'nope' not found." in result.output


class TestResumeState:
    def test_in_flight_call(self, populated_db):
        result = _invoke("resume-state", populated_db["active"], "--db", populated_db["db"])
        assert result.exit_code == 0
        assert "next iteration:       1" in result.output
        assert "next sequence:        3" in result.output
        assert "Unconfirmed tool calls (1)" in result.output
        assert "refund" in result.output

    def test_json(self, populated_db):
        data = _json(_invoke("resume-state", populated_db["done"], "--db", populated_db["db"], "--json"), "runs.resume-state")
        assert data["finished"] is True
        assert data["next_iteration"] == 2
        assert data["in_flight"] == []
        assert len(data["satisfied"]) == 1


class TestStart:
    def test_start(self, db_path):
        data = _json(
            _invoke("start", "--key", "k-1", "--agent", "support", "--loop", "react", "--input", '{"message": "hi"}', "--db", db_path, "--json"),
            "runs.start",
        )
        assert data["status"] == "pending"
        assert data["input"] == {"message": "hi"}
        assert data["timeout_at"] is None

    def test_same_key_same_run(self, db_path):
        args = ("start", "--key", "k-1", "--agent", "support", "--loop", "react", "--db", db_path, "--json")
        first = _json(_invoke(*args), "runs.start")
        second = _json(_invoke(*args), "runs.start")
        assert first["id"] == second["id"]

    def test_timeout(self, db_path):
        data = _json(
            _invoke("start", "--key", "k-1", "--agent", "a", "--loop", "react", "--timeout", "30", "--db", db_path, "--json"),
            "runs.start",
        )
        assert data["timeout_at"] is not None

    def test_text_output(self, db_path):
        result = _invoke("start", "--key", "k-1", "--agent", "a", "--loop", "react", "--db", db_path)
        assert result.exit_code == 0
        assert result.output.startswith("Run ")
        assert "(pending)" in result.output

    def test_invalid_json(self, db_path):
        result = _invoke("start", "--key", "k-1", "--agent", "a", "--loop", "react", "--input", "{nope", "--db", db_path)
        assert result.exit_code == 1
        assert "--input is not valid JSON" in result.output

    def test_input_must_be_object(self, db_path):
        result = _invoke("start", "--key", "k-1", "--agent", "a", "--loop", "react", "--input", "[1, 2]", "--db", db_path)
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestCancel:
    def test_cancel_running(self, populated_db):
        data = _json(_invoke("cancel", populated_db["active"], "--db", populated_db["db"], "--json"), "runs.cancel")
        assert data["status"] == "cancelled"
        assert data["cancelled_at"] is not None

    def test_cancel_twice(self, populated_db):
        _invoke("cancel", populated_db["active"], "--db", populated_db["db"])
        result = _invoke("cancel", populated_db["active"], "--db", populated_db["db"])
        assert result.exit_code == 0
        assert "cancelled at" in result.output

    def test_cancel_completed(self, populated_db):
        result = _invoke("cancel", populated_db["done"], "--db", populated_db["db"])
        assert result.exit_code == 1
        assert f"Run '{populated_db['done']}' is already completed." in result.output

    def test_unknown_run(self, populated_db):
        result = _invoke("cancel", "nope", "--db", populated_db["db"])
        assert result.exit_code == 1
        assert "not found" in result.output
