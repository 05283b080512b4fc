import json
from datetime import timedelta

import pytest

import db
from scripts import end_stale_sessions as script


def _days_ago(days):
    return db.format_timestamp(db.utc_now() - timedelta(days=days))


@pytest.fixture
def sessions(temp_db):
    db.create_session("idle", "learner", started_at=_days_ago(9))
    db.create_session("active", "learner", started_at=_days_ago(1))
    return ["idle", "active"]


def test_dry_run_lists_without_ending(sessions):
    report = script.end_stale_sessions(5, dry_run=True)

    assert report["stale"] == ["idle"]
    assert report["ended"] == []
    assert db.get_session("idle")["ended_at"] is None


def test_stale_sessions_are_ended(sessions):
    report = script.end_stale_sessions(5)

    assert report["ended"] == ["idle"]
    assert db.get_session("idle")["ended_at"] is not None
    assert db.get_session("active")["ended_at"] is None
    assert script.end_stale_sessions(5)["stale"] == []


def test_negative_days_rejected(temp_db):
    with pytest.raises(ValueError):
        script.end_stale_sessions(-1)


def test_main_prints_json_report(sessions, capsys):
    exit_code = script.main(["--days", "3", "--dry-run"])

    assert exit_code == 0
    report = json.loads(capsys.readouterr().out)
    assert report["stale"] == ["idle"]
    assert report["dry_run"] is True
