import sys
import threading
import time

import pytest

from svnmigrate.exceptions import ProcessCancelledError, ProcessExitError
from svnmigrate.services.vcs.process_runner import ProcessRunner, redact

PY = sys.executable


def collect():
    lines = []
    return lines, lambda stream, line: lines.append((stream, line))


class TestProcessRunner:
    def test_streams_stdout_and_stderr_lines(self):
        lines, on_line = collect()
        result = ProcessRunner().run(
            PY,
            ["-c", "import sys; print('one'); print('two'); sys.stderr.write('warn\\n')"],
            on_line=on_line,
        )

        assert result.returncode == 0
        assert ("stdout", "one") in lines
        assert ("stdout", "two") in lines
        assert ("stderr", "warn") in lines
        assert result.stderr_tail == ["warn"]

    def test_large_output_is_streamed_line_by_line(self):
        count = 0

        def on_line(stream, line):
            nonlocal count
            count += 1

        ProcessRunner().run(PY, ["-c", "for i in range(20000): print('r%d = abc' % i)"], on_line=on_line)
        assert count == 20000

    def test_nonzero_exit_raises_with_stderr_tail(self):
        with pytest.raises(ProcessExitError) as exc_info:
            ProcessRunner(tail_lines=2).run(
                PY,
                ["-c", "import sys; [sys.stderr.write('line%d\\n' % i) for i in range(5)]; sys.exit(3)"],
            )

        error = exc_info.value
        assert error.code == 3
        assert error.stderr_tail == ["line3", "line4"]
        assert "line4" in error.message

    def test_missing_command_raises_exit_error(self):
        with pytest.raises(ProcessExitError) as exc_info:
            ProcessRunner().run("definitely-not-a-real-command-xyz", [])
        assert exc_info.value.code == 127

    def test_secrets_are_redacted(self):
        lines, on_line = collect()
        with pytest.raises(ProcessExitError) as exc_info:
            ProcessRunner().run(
                PY,
                ["-c", "import sys; print('token=s3cret'); sys.exit(1)", "s3cret"],
                on_line=on_line,
                secrets=["s3cret"],
            )

        assert lines == [("stdout", "token=***")]
        assert "s3cret" not in exc_info.value.message

    def test_callback_errors_do_not_abort_the_run(self):
        def on_line(stream, line):
            raise RuntimeError("consumer bug")

        result = ProcessRunner().run(PY, ["-c", "print('a'); print('b')"], on_line=on_line)
        assert result.returncode == 0

    def test_timeout_raises_exit_error(self):
        runner = ProcessRunner(kill_grace_seconds=1, poll_interval=0.05)
        with pytest.raises(ProcessExitError) as exc_info:
            runner.run(PY, ["-c", "import time; time.sleep(30)"], timeout=0.3)
        assert "timed out" in exc_info.value.stderr_tail[-1]


class TestCancellation:
    def test_cancel_terminates_running_process(self):
        token = threading.Event()

        def on_line(stream, line):
            if line == "ready":
                token.set()

        runner = ProcessRunner(kill_grace_seconds=2, poll_interval=0.05)
        start = time.monotonic()
        with pytest.raises(ProcessCancelledError):
            runner.run(
                PY,
                ["-c", "import time; print('ready', flush=True); time.sleep(30)"],
                on_line=on_line,
                cancel_token=token,
            )
        assert time.monotonic() - start < 10

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_cancel_escalates_to_kill_after_grace(self):
        token = threading.Event()

        def on_line(stream, line):
            if line == "ready":
                token.set()

        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        runner = ProcessRunner(kill_grace_seconds=0.5, poll_interval=0.05)
        start = time.monotonic()
        with pytest.raises(ProcessCancelledError):
            runner.run(PY, ["-c", script], on_line=on_line, cancel_token=token)

        elapsed = time.monotonic() - start
        assert 0.5 <= elapsed < 10


class TestRedact:
    def test_ignores_empty_secrets(self):
        assert redact("user:pw@host", [None, "", "pw"]) == "user:***@host"
