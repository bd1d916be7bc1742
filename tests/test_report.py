"""Tests for the completion report"""

import itertools

import batch_imapsync as bi


def skipped(count: int):
    return [bi.SkippedRecord(row_num=i, raw_record=(), reason="missing source_password") for i in range(count)]


def test_all_succeed():
    outcomes = [bi.Success("a@x"), bi.Success("b@x"), bi.Success("c@x")]
    summary = bi.aggregate(skipped(1), outcomes)
    assert summary == bi.Summary(success_count=3, failure_count=0, skipped_count=1, failures=[])


def test_one_failure():
    outcomes = [bi.Success("a@x"), bi.Failure("b@x", "AUTH FAILED\n"), bi.Success("c@x")]
    summary = bi.aggregate(skipped(1), outcomes)
    assert summary.success_count == 2
    assert summary.failure_count == 1
    assert summary.skipped_count == 1
    assert summary.failures == [("b@x", "AUTH FAILED\n")]


def test_nothing_to_do(capsys):
    summary = bi.aggregate([], [])
    assert summary == bi.Summary()
    assert "Migration complete. Succeeded: 0, Failed: 0, Skipped: 0" in capsys.readouterr().out


def test_failures_kept_in_arrival_order():
    outcomes = [bi.Failure("c@x", "3"), bi.Success("a@x"), bi.Failure("a2@x", "1")]
    summary = bi.aggregate([], outcomes)
    assert summary.failures == [("c@x", "3"), ("a2@x", "1")]


def test_worker_failures_counted_separately(capsys):
    outcomes = [bi.Failure("a@x", "worker crashed: RuntimeError: boom", category=bi.FAILURE_WORKER)]
    summary = bi.aggregate([], outcomes)
    assert summary.failure_count == 1
    assert summary.worker_failure_count == 1
    assert "(worker crashes: 1)" in capsys.readouterr().out


def test_order_independent():
    outcomes = [
        bi.Success("a@x"),
        bi.Failure("b@x", "AUTH FAILED"),
        bi.Success("c@x"),
        bi.Failure("d@x", "connection refused"),
    ]
    results = set()
    for perm in itertools.permutations(outcomes):
        summary = bi.aggregate(skipped(2), perm)
        results.add((summary.success_count, summary.failure_count, summary.skipped_count, frozenset(summary.failures)))
    assert len(results) == 1


def test_log_lines_end_with_summary(capsys):
    bi.aggregate([], iter([bi.Success("a@x"), bi.Failure("b@x", "AUTH FAILED\n")]), started_at=0.0)
    lines = [line for line in capsys.readouterr().out.splitlines() if line]
    assert lines[0] == "[OK] Migrated a@x"
    assert lines[1] == "[ERROR] Failed to migrate b@x: AUTH FAILED"
    assert lines[-1].startswith("Migration complete. Succeeded: 1, Failed: 1, Skipped: 0. Elapsed ")
    assert len(lines) == 3


def test_format_elapsed():
    assert bi.format_elapsed(0) == "00:00:00"
    assert bi.format_elapsed(3725.9) == "01:02:05"
