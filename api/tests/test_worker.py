"""Scheduled reconcile worker loop."""

import pytest

from scripts import subscription_reconcile_worker as worker


@pytest.fixture
def scanner(mocker):
    scanner = mocker.MagicMock()
    scanner.run.return_value = {
        "total": 2,
        "fixed": 0,
        "consistent": 1,
        "errors": 1,
        "details": [{"userId": "u2", "status": "error", "error": "boom", "code": "INTERNAL_ERROR"}],
    }
    return scanner


def test_single_cycle_runs_the_scan(scanner, mocker):
    mocker.patch.object(worker, "_ensure_firebase")
    mocker.patch.object(worker, "build_scanner", return_value=scanner)
    sleep = mocker.patch.object(worker.time, "sleep")

    worker.run_worker("sa.json", poll_seconds=60, limit=10, run_once=True)

    worker.build_scanner.assert_called_once_with(10)
    assert scanner.run.call_args.kwargs["correlation_id"].startswith("worker-")
    sleep.assert_not_called()


def test_disabled_worker_skips_scan(scanner, mocker):
    mocker.patch.object(worker, "_ensure_firebase")
    mocker.patch.object(worker, "build_scanner", return_value=scanner)
    mocker.patch.object(worker, "SUBSCRIPTION_RECONCILE_ENABLED", False)

    worker.run_worker("sa.json", poll_seconds=60, limit=10, run_once=True)

    scanner.run.assert_not_called()


def test_failed_cycle_raises_in_once_mode(scanner, mocker):
    mocker.patch.object(worker, "_ensure_firebase")
    mocker.patch.object(worker, "build_scanner", return_value=scanner)
    scanner.run.side_effect = RuntimeError("firestore down")

    with pytest.raises(RuntimeError):
        worker.run_worker("sa.json", poll_seconds=60, limit=10, run_once=True)


def test_database_url_is_required(monkeypatch):
    monkeypatch.delenv("FIREBASE_DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError):
        worker._ensure_firebase("sa.json")


def test_limit_argument_is_capped(mocker, tmp_path, monkeypatch):
    sa = tmp_path / "sa.json"
    sa.write_text("{}")
    monkeypatch.setattr("sys.argv", ["worker", "--serviceAccount", str(sa), "--once", "--limit", "500"])
    run = mocker.patch.object(worker, "run_worker")

    assert worker.main() == 0

    assert run.call_args.kwargs["limit"] == 100
