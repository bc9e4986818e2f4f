import logging

from cpc.errors import FatalError
from cpc.modules.recovery import RecoveryLog, RecoveryState


def test_checkpoints_are_appended_to_log(tmp_path):
    log = RecoveryLog("bootstrap", log_dir=tmp_path)
    log.checkpoint("start", "workspace=a")
    log.checkpoint("next", "")
    lines = log.log_path.read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("|start|workspace=a")


def test_checkpoint_never_fails_the_caller(tmp_path):
    log = RecoveryLog("bootstrap", log_dir=tmp_path / "missing" / "dir")
    log.checkpoint("start", "note")
    assert [cp.name for cp in log.checkpoints] == ["start"]


def test_execute_success_records_post_checkpoint(recovery):
    assert recovery.execute_with_recovery(lambda: None, "step", "hint")
    assert [cp.name for cp in recovery.checkpoints] == ["pre_step", "post_step"]
    assert recovery.state == RecoveryState.CLEAN


def test_execute_failure_logs_hint(recovery, caplog):
    def action():
        raise FatalError("boom", command="tofu apply", output="Error: quota")

    with caplog.at_level(logging.WARNING):
        assert not recovery.execute_with_recovery(action, "step", "try running apply manually")
    assert "try running apply manually" in caplog.text
    assert "tofu apply" in caplog.text
    assert recovery.failures == ["step"]
    assert recovery.state == RecoveryState.FAILED


def test_validation_failure_counts_as_failure(recovery):
    assert not recovery.execute_with_recovery(lambda: None, "step", "hint", validation=lambda: False)
    assert recovery.last_checkpoint() is None


def test_fallback_marks_recovered_but_still_fails(recovery):
    calls = []
    ok = recovery.execute_with_recovery(lambda: False, "step", "hint", fallback=lambda: calls.append("undo"))
    assert not ok
    assert calls == ["undo"]
    assert recovery.state == RecoveryState.RECOVERED


def test_report_names_last_completed_step(recovery):
    recovery.execute_with_recovery(lambda: None, "install", "hint")
    recovery.execute_with_recovery(lambda: False, "init", "hint")
    report = recovery.report()
    assert "Failed steps: init" in report
    assert "Last completed step: install" in report
