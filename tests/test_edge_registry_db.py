from __future__ import annotations

from pathlib import Path

import pytest

from edge_registry import db as dbm
from edge_registry.settings import RegistrySettings


def _settings(tmp_path: Path, **overrides: object) -> RegistrySettings:
    return RegistrySettings(db_path=str(tmp_path / "edge-registry.db"), **overrides)


def _ok_record(kind: str = "test", body: str = "hi") -> dbm.ResultRecord:
    return dbm.ResultRecord(
        kind=kind,
        success=True,
        response={"status": 200, "headers": {}, "body": body},
        performance={"responseTime": 12, "coldStart": 3, "memory": 20},
    )


def _fail_record(kind: str = "test") -> dbm.ResultRecord:
    return dbm.ResultRecord(
        kind=kind,
        success=False,
        error="Exception: boom",
        error_kind="HandlerRuntimeError",
        stack="Traceback ...",
        performance={"responseTime": 9, "coldStart": 0, "memory": 0},
    )


def test_insert_and_get_handler_defaults(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    created = dbm.insert_handler(settings, name="  hello  ", code="def handler(r): pass")
    assert created["name"] == "hello"
    assert created["status"] == "draft"
    assert created["version"] == 1
    assert created["pattern"] == "/*"
    assert created["type"] == "request"
    assert created["regions"] == ["all"]
    assert created["test_results"] == []

    fetched = dbm.get_handler(settings, handler_id=created["id"])
    assert fetched is not None
    assert fetched["code"] == "def handler(r): pass"
    assert fetched["deployed_at_ts"] is None


def test_regions_are_deduplicated_in_order(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    created = dbm.insert_handler(settings, name="r", code="x", regions=["eu-central", "us-east", "eu-central"])
    assert created["regions"] == ["eu-central", "us-east"]


def test_duplicate_name_conflicts(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    dbm.insert_handler(settings, name="dup", code="x")
    with pytest.raises(dbm.HandlerNameConflict):
        dbm.insert_handler(settings, name="dup", code="y")


def test_list_handlers_omits_code(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    dbm.insert_handler(settings, name="a", code="x")
    dbm.insert_handler(settings, name="b", code="y")
    handlers = dbm.list_handlers(settings)
    assert {h["name"] for h in handlers} == {"a", "b"}
    assert all("code" not in h for h in handlers)


def test_update_handler_keeps_status_and_version(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    ok = dbm.update_handler(
        settings,
        handler_id=h["id"],
        patch={"code": "y", "type": "middleware", "status": "active", "version": 9},
    )
    assert ok is True
    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["code"] == "y"
    assert fetched["type"] == "middleware"
    assert fetched["status"] == "draft"
    assert fetched["version"] == 1


def test_update_rename_collision(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    dbm.insert_handler(settings, name="a", code="x")
    b = dbm.insert_handler(settings, name="b", code="x")
    with pytest.raises(dbm.HandlerNameConflict):
        dbm.update_handler(settings, handler_id=b["id"], patch={"name": "a"})


def test_update_missing_handler(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    assert dbm.update_handler(settings, handler_id="missing", patch={"code": "x"}) is False


def test_record_test_result_appends_and_stamps(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    assert dbm.record_test_result(settings, handler_id=h["id"], result=_ok_record(body="one")) is True
    assert dbm.record_test_result(settings, handler_id=h["id"], result=_fail_record()) is True

    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["last_tested_at_ts"] is not None
    assert fetched["status"] == "draft"
    assert fetched["version"] == 1
    results = fetched["test_results"]
    assert [r["success"] for r in results] == [True, False]
    assert results[0]["response"]["body"] == "one"
    assert results[0]["performance"] == {"responseTime": 12, "coldStart": 3, "memory": 20}
    assert results[1]["error_kind"] == "HandlerRuntimeError"
    assert results[1]["response"] is None

    newest_first = dbm.list_test_results(settings, handler_id=h["id"])
    assert [r["success"] for r in newest_first] == [False, True]


def test_record_test_result_for_missing_handler(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    assert dbm.record_test_result(settings, handler_id="missing", result=_ok_record()) is False


def test_retention_evicts_oldest(tmp_path: Path) -> None:
    settings = _settings(tmp_path, test_results_retention=3)
    h = dbm.insert_handler(settings, name="a", code="x")
    for i in range(5):
        dbm.record_test_result(settings, handler_id=h["id"], result=_ok_record(body=str(i)))
    results = dbm.get_handler(settings, handler_id=h["id"])["test_results"]
    assert [r["response"]["body"] for r in results] == ["2", "3", "4"]


def test_delete_cascades_results(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    dbm.record_test_result(settings, handler_id=h["id"], result=_ok_record())
    assert dbm.delete_handler(settings, handler_id=h["id"]) is True
    assert dbm.get_handler(settings, handler_id=h["id"]) is None
    assert dbm.list_test_results(settings, handler_id=h["id"]) == []
    assert dbm.delete_handler(settings, handler_id=h["id"]) is False


def test_complete_deploy_success_bumps_version(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    outcome = dbm.complete_deploy(settings, handler_id=h["id"], expected_version=1, result=_ok_record("deploy"))
    assert outcome.updated is True
    assert outcome.conflict is False
    assert outcome.status == "active"
    assert outcome.version == 2

    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["status"] == "active"
    assert fetched["version"] == 2
    assert fetched["deployed_at_ts"] is not None
    assert fetched["test_results"][-1]["kind"] == "deploy"


def test_complete_deploy_failure_keeps_version(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    dbm.complete_deploy(settings, handler_id=h["id"], expected_version=1, result=_ok_record("deploy"))
    outcome = dbm.complete_deploy(settings, handler_id=h["id"], expected_version=2, result=_fail_record("deploy"))
    assert outcome.updated is True
    assert outcome.status == "error"
    assert outcome.version == 2

    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["status"] == "error"
    assert fetched["version"] == 2
    assert [r["success"] for r in fetched["test_results"]] == [True, False]


def test_complete_deploy_stale_version_is_conflict(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    dbm.complete_deploy(settings, handler_id=h["id"], expected_version=1, result=_ok_record("deploy"))
    outcome = dbm.complete_deploy(settings, handler_id=h["id"], expected_version=1, result=_ok_record("deploy"))
    assert outcome.updated is False
    assert outcome.conflict is True

    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["version"] == 2
    assert len(fetched["test_results"]) == 1


def test_complete_deploy_changed_code_is_conflict(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    h = dbm.insert_handler(settings, name="a", code="x")
    dbm.update_handler(settings, handler_id=h["id"], patch={"code": "y"})
    outcome = dbm.complete_deploy(
        settings, handler_id=h["id"], expected_version=1, result=_ok_record("deploy"), expected_code="x"
    )
    assert outcome.updated is False
    assert outcome.conflict is True

    fetched = dbm.get_handler(settings, handler_id=h["id"])
    assert fetched["status"] == "draft"
    assert fetched["version"] == 1
    assert fetched["test_results"] == []


def test_complete_deploy_missing_handler(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    outcome = dbm.complete_deploy(settings, handler_id="missing", expected_version=1, result=_ok_record("deploy"))
    assert outcome.updated is False
    assert outcome.conflict is False
