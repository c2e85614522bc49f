import subprocess
import sys


def _help(*args):
    proc = subprocess.run(
        [sys.executable, "-m", *args, "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    return proc.stdout + proc.stderr


def test_app_help_runs():
    out = _help("bank_queue.app")
    assert "main entrypoint" in out
    for cmd in ("run", "serve", "kiosk", "terminal", "display"):
        assert cmd in out


def test_run_help_runs():
    out = _help("bank_queue.app", "run")
    assert "--counters" in out
    assert "arrival-rate" in out
    assert "--display" in out


def test_component_help_runs():
    assert "--seed-file" in _help("bank_queue.manager")
    assert "--counter-id" in _help("bank_queue.terminal")
    assert "--booking-code" in _help("bank_queue.kiosk")
    assert "--rate" in _help("bank_queue.generator")
