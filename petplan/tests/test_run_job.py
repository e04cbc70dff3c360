from __future__ import annotations

import json

import pytest

from petplan import run_job


def test_status_prints_configured_schedule(monkeypatch, capsys):
    monkeypatch.setenv("ENABLE_CRON_JOBS", "false")
    monkeypatch.setenv("OVERDUE_JOB_TIME", "11:30")

    assert run_job.main(["--status"]) == 0

    status = json.loads(capsys.readouterr().out)
    assert status["enabled"] is False
    assert status["job_count"] == 0
    assert status["jobs"]["overdue"]["schedule"] == "11:30"


def test_unknown_job_exits_with_usage_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        run_job.main(["backup"])

    assert excinfo.value.code == 2
    assert "Unknown job 'backup'" in capsys.readouterr().err


def test_job_or_flag_is_required():
    with pytest.raises(SystemExit):
        run_job.main([])
