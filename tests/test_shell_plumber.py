"""Tests for shell-plumber."""

import asyncio
import errno
import io
import os
import signal
import stat
import threading
import time
import warnings

import pytest

from conftest import DOUBLE_CHARS_CMD, FOX, FOX_DOUBLED
from shell_plumber import (
    EXIT_CANNOT_EXECUTE, EXIT_NOT_FOUND, NULL, STDERR, STDOUT, ZERO,
    CommandError, ConfigurationError, PosixSpawner, Pipeline,
    PipelineResult, PipeRegistry, ProcessSpec, ResolutionError, SpawnError,
    TimeoutExpired, cmd, run, run_async, run_single, start,
)


class TestBasicCommands:
    """Test single-stage execution."""

    def test_one_status_for_one_command(self):
        result = run(["true"])
        assert len(result) == 1

    def test_success(self):
        result = run(["true"])
        assert result[0].succeeded
        assert result.succeeded
        assert result.exitstatus == 0

    def test_failure(self):
        result = run(["false"])
        assert not result[0].succeeded
        assert not result
        assert result.exitstatus == 1

    def test_exit_code_preserved(self):
        result = run(["sh", "-c", "exit 7"])
        assert result[0].exited
        assert result[0].exitstatus == 7
        assert result.returncode == 7

    def test_status_carries_pid(self):
        result = run(["true"])
        assert result[0].pid > 0

    def test_run_single(self):
        result = run_single(cmd("true"))
        assert isinstance(result, PipelineResult)
        assert len(result) == 1
        assert result.succeeded

    def test_spec_run(self):
        assert cmd("false").run().exitstatus == 1


class TestOutputRedirection:
    """Test stdout/stderr targets."""

    def test_into_stringio(self):
        out = io.StringIO()
        run(["echo", "hello", "world"], stdout=out)
        assert out.getvalue() == "hello world\n"

    def test_into_bytesio(self):
        out = io.BytesIO()
        run(["echo", "hello", "world"], stdout=out)
        assert out.getvalue() == b"hello world\n"

    def test_empty_output(self):
        out = io.StringIO()
        result = run(["true"], stdout=out)
        assert result.succeeded
        assert out.getvalue() == ""

    def test_into_file(self, tmp_path):
        path = tmp_path / "out.txt"
        with open(path, "wb") as f:
            run(["echo", "hello", "world"], stdout=f)
        assert path.read_text() == "hello world\n"

    def test_into_descriptor_number(self):
        r, w = os.pipe()
        try:
            run(["echo", "fd"], stdout=w)
        finally:
            os.close(w)
        with os.fdopen(r, "rb") as reader:
            assert reader.read() == b"fd\n"

    def test_null_discards(self):
        result = run(["echo", "gone"], stdout=NULL)
        assert result.succeeded

    def test_none_discards(self):
        result = run(["echo", "gone"], stdout=None)
        assert result.succeeded

    def test_stderr_into_buffer(self):
        out, err = io.StringIO(), io.StringIO()
        run(["sh", "-c", "echo out; echo oops >&2"], stdout=out, stderr=err)
        assert out.getvalue() == "out\n"
        assert err.getvalue() == "oops\n"

    def test_default_stdout_is_host_stdout(self, capsys):
        run(["echo", "to host"])
        assert capsys.readouterr().out == "to host\n"

    def test_stderr_to_host_stdout(self, capsys):
        run(cmd("sh", "-c", "echo from-stderr >&2", stderr=STDOUT))
        captured = capsys.readouterr()
        assert captured.out == "from-stderr\n"
        assert captured.err == ""

    def test_stdout_to_host_stderr(self, capsys):
        run(["echo", "to-err"], stdout=STDERR)
        assert capsys.readouterr().err == "to-err\n"

    def test_multibyte_text(self):
        out = io.StringIO()
        text = "a" * 1023 + "é" + "ü" * 600 + "\n"
        run(["cat"], stdin=text, stdout=out)
        assert out.getvalue() == text


class TestInput:
    """Test stdin sources."""

    def test_stringio_through_cat(self):
        out = io.StringIO()
        run(["cat"], stdin=io.StringIO(FOX), stdout=out)
        assert out.getvalue() == FOX

    def test_stringio_through_double_chars(self):
        out = io.StringIO()
        run(DOUBLE_CHARS_CMD, stdin=io.StringIO(FOX), stdout=out)
        assert out.getvalue() == FOX_DOUBLED

    def test_string_data(self):
        out = io.StringIO()
        run(["cat"], stdin="direct stdin", stdout=out)
        assert out.getvalue() == "direct stdin"

    def test_bytes_data(self):
        out = io.BytesIO()
        run(["cat"], stdin=b"\x00\x01binary", stdout=out)
        assert out.getvalue() == b"\x00\x01binary"

    def test_from_file(self, tmp_path):
        path = tmp_path / "in.txt"
        path.write_text(FOX)
        out = io.StringIO()
        with open(path, "rb") as f:
            run(["cat"], stdin=f, stdout=out)
        assert out.getvalue() == FOX

    def test_none_is_empty_input(self):
        out = io.StringIO()
        result = run(["cat"], stdin=None, stdout=out)
        assert result.succeeded
        assert out.getvalue() == ""

    def test_zero_source(self):
        out = io.BytesIO()
        result = run(["head", "-c", "5"], stdin=ZERO, stdout=out)
        assert result.succeeded
        assert out.getvalue() == b"\x00" * 5

    def test_large_input_no_deadlock(self):
        # Larger than a pipe buffer in both directions
        data = "x" * 200000
        out = io.StringIO()
        run(["cat"], stdin=data, stdout=out)
        assert out.getvalue() == data


class TestPiping:
    """Test multi-stage pipelines."""

    def test_two_statuses_for_two_commands(self):
        assert len(run([["true"], ["true"]])) == 2

    def test_status_per_command(self):
        result = run([["true"], ["false"]])
        assert result[0].succeeded
        assert not result[1].succeeded

    def test_cat_to_cat(self):
        out = io.StringIO()
        run([["cat"], ["cat"]], stdin=io.StringIO(FOX), stdout=out)
        assert out.getvalue() == FOX

    def test_cat_to_double_chars(self):
        out = io.StringIO()
        run([["cat"], DOUBLE_CHARS_CMD], stdin=FOX, stdout=out)
        assert out.getvalue() == FOX_DOUBLED

    def test_producer_to_copier(self):
        out = io.StringIO()
        run([["echo", "hello", "world"], ["cat"]], stdout=out)
        assert out.getvalue() == "hello world\n"

    def test_three_stages(self):
        out = io.StringIO()
        result = run(
            [["printf", "apple\\nbanana\\napricot\\n"], ["grep", "a"], ["wc", "-l"]],
            stdout=out,
        )
        assert result.succeeded
        assert out.getvalue().strip() == "3"

    def test_pipe_operator(self):
        out = io.StringIO()
        result = (cmd("echo", "hello") | cmd("cat") | cmd("cat")).run(stdout=out)
        assert len(result) == 3
        assert out.getvalue() == "hello\n"

    def test_nested_stdout_spec(self):
        out = io.StringIO()
        result = run_single(cmd("cat", stdin=FOX, stdout=cmd(*DOUBLE_CHARS_CMD, stdout=out)))
        assert len(result) == 2
        assert out.getvalue() == FOX_DOUBLED

    def test_nested_three_deep(self):
        result = cmd("true", stdout=cmd("true", stdout=cmd("true"))).run()
        assert len(result) == 3
        assert result.succeeded

    def test_nested_stderr_pipeline(self):
        out, err = io.StringIO(), io.StringIO()
        result = run_single(cmd(
            "sh", "-c", "echo out; echo err >&2",
            stdout=out,
            stderr=cmd("tr", "a-z", "A-Z", stdout=err),
        ))
        assert len(result) == 2
        assert out.getvalue() == "out\n"
        assert err.getvalue() == "ERR\n"

    def test_pipeline_stderr_applies_to_every_stage(self):
        err = io.StringIO()
        run(
            [["sh", "-c", "echo a >&2"], ["sh", "-c", "cat >/dev/null; echo b >&2"]],
            stdout=NULL,
            stderr=err,
        )
        assert sorted(err.getvalue().split()) == ["a", "b"]

    def test_upstream_killed_by_sigpipe(self):
        out = io.StringIO()
        result = run([["yes"], ["head", "-n", "1"]], stdout=out)
        assert out.getvalue() == "y\n"
        assert result[0].signaled
        assert result[0].termsig == signal.SIGPIPE
        assert result[1].succeeded
        assert result.composite is result[0]


class TestCompositeStatus:
    """Test the composite status of a pipeline."""

    def test_all_succeed(self):
        result = run([["true"], ["true"], ["true"]])
        assert result.succeeded
        assert result.composite is result[-1]

    def test_first_fails(self):
        assert not run([["false"], ["true"], ["true"]]).succeeded

    def test_middle_fails(self):
        result = run([["true"], ["false"], ["true"]])
        assert [s.succeeded for s in result] == [True, False, True]
        assert not result.succeeded
        assert result.composite is result[1]

    def test_last_fails(self):
        assert not run([["true"], ["true"], ["false"]]).succeeded

    def test_reports_first_failure_not_last(self):
        result = run([["sh", "-c", "exit 3"], ["sh", "-c", "cat >/dev/null; exit 5"]])
        assert result.exitstatus == 3
        assert result.returncodes == [3, 5]

    def test_check_raises(self):
        with pytest.raises(CommandError) as exc_info:
            run([["true"], ["false"]], check=True)
        assert exc_info.value.result.exitstatus == 1

    def test_check_no_raise_on_success(self):
        assert run(["true"], check=True).succeeded

    def test_raise_on_error_returns_self(self):
        result = run(["true"])
        assert result.raise_on_error() is result


class TestWorkingDirectoryAndExecutable:
    """Test per-stage options."""

    def test_cwd(self, tmp_path):
        out = io.StringIO()
        run(cmd("pwd", cwd=tmp_path), stdout=out)
        assert out.getvalue() == os.path.realpath(tmp_path) + "\n"

    def test_cwd_per_stage(self, tmp_path):
        (tmp_path / "marker.txt").write_text("")
        out = io.StringIO()
        run([cmd("ls", cwd=tmp_path), cmd("cat")], stdout=out)
        assert "marker.txt" in out.getvalue()

    def test_executable_override_keeps_argv0(self):
        out = io.StringIO()
        run(cmd("renamed", "-c", "echo $0", executable="sh"), stdout=out)
        assert out.getvalue() == "renamed\n"

    def test_environment_passed_through(self, monkeypatch):
        monkeypatch.setenv("SHELL_PLUMBER_TEST", "inherited")
        out = io.StringIO()
        run(["sh", "-c", "echo $SHELL_PLUMBER_TEST"], stdout=out)
        assert out.getvalue() == "inherited\n"


class TestErrors:
    """Test configuration, resolution and spawn failures."""

    def test_empty_specs(self):
        with pytest.raises(ConfigurationError):
            run([])

    def test_empty_argv(self):
        with pytest.raises(ConfigurationError):
            cmd()

    def test_bare_string_among_stages(self):
        with pytest.raises(ConfigurationError):
            run([["cat"], "grep"])

    def test_invalid_output_target(self):
        with pytest.raises(ConfigurationError):
            cmd("cat", stdout=object())

    def test_invalid_input_target(self):
        with pytest.raises(ConfigurationError):
            cmd("cat", stdin=STDOUT)

    def test_stdin_inside_pipeline(self):
        registry = PipeRegistry()
        with pytest.raises(ConfigurationError):
            run([["true"], cmd("cat", stdin="x")], registry=registry)
        assert len(registry) == 0

    def test_stdout_inside_pipeline(self):
        with pytest.raises(ConfigurationError):
            run([cmd("echo", stdout=io.StringIO()), ["cat"]])

    def test_nested_stdin_rejected_before_spawning(self):
        registry = PipeRegistry()
        with pytest.raises(ConfigurationError):
            run_single(cmd("true", stdout=cmd("cat", stdin="x")), registry=registry)
        assert len(registry) == 0

    def test_command_not_found(self):
        registry = PipeRegistry()
        with pytest.raises(ResolutionError) as exc_info:
            run(["no-such-command-shell-plumber"], registry=registry)
        exc = exc_info.value
        assert isinstance(exc, SpawnError)
        assert isinstance(exc, OSError)
        assert exc.argv == ["no-such-command-shell-plumber"]
        assert exc.started is None
        assert len(registry) == 0

    def test_command_not_found_downstream(self):
        with pytest.raises(ResolutionError):
            run([["true"], ["no-such-command-shell-plumber"]])

    def test_exec_failure_is_a_status(self):
        err = io.StringIO()
        result = run(["/nonexistent/shell-plumber-prog"], stderr=err)
        assert result.exitstatus == EXIT_NOT_FOUND
        assert "/nonexistent/shell-plumber-prog" in err.getvalue()

    def test_exec_permission_denied(self, tmp_path):
        script = tmp_path / "not-executable"
        script.write_text("#!/bin/sh\n")
        script.chmod(stat.S_IRUSR | stat.S_IWUSR)
        if os.access(script, os.X_OK):
            pytest.skip("running with privileges that ignore the mode")
        result = run([str(script)], stderr=NULL)
        assert result.exitstatus == EXIT_CANNOT_EXECUTE

    def test_bad_working_directory(self, tmp_path):
        result = run(cmd("true", cwd=tmp_path / "missing"), stderr=NULL)
        assert result.exitstatus == EXIT_NOT_FOUND

    def test_spawned_stages_left_running_on_failure(self):
        registry = PipeRegistry()
        out = io.StringIO()
        with pytest.raises(ResolutionError) as exc_info:
            run_single(
                cmd("true", stdout=cmd("cat", stdout=out), stderr=cmd("no-such-command-shell-plumber")),
                registry=registry,
            )
        started = exc_info.value.started
        assert started is not None
        result = started.wait()
        assert len(result) == 1
        assert result.succeeded
        assert len(registry) == 0

    def test_spawner_failure_reports_orphans(self):
        class RefuseTrue(PosixSpawner):
            def spawn(self, spec, executable, stdio, close, registry):
                if spec.argv[0] == "true":
                    raise SpawnError(spec.argv, "refused")
                return super().spawn(spec, executable, stdio, close, registry)

        registry = PipeRegistry()
        with pytest.raises(SpawnError) as exc_info:
            run([["true"], ["cat"]], stdout=NULL, registry=registry, spawner=RefuseTrue())
        started = exc_info.value.started
        assert [p.argv for p in started.processes] == [["cat"]]
        assert started.wait().succeeded
        assert len(registry) == 0

    def test_feeder_closed_when_downstream_missing(self):
        class SlowSource:
            def read(self, size=-1):
                time.sleep(0.2)
                return b"slow\n"

        registry = PipeRegistry()
        with pytest.raises(ResolutionError) as exc_info:
            run([["cat"], ["no-such-command-shell-plumber"]], stdin=SlowSource(), registry=registry)
        assert exc_info.value.started is None
        assert len(registry) == 0

    def test_closed_descriptor_rejected(self):
        registry = PipeRegistry()
        # stdin from a file opened first, so nothing can take the closed number
        with open(os.devnull, "rb") as devnull:
            fd = os.open(os.devnull, os.O_WRONLY)
            os.close(fd)
            with pytest.raises(SpawnError) as exc_info:
                run(["true"], stdin=devnull, stdout=fd, registry=registry)
        assert exc_info.value.errno == errno.EBADF
        assert exc_info.value.started is None
        assert len(registry) == 0

    def test_exec_failure_has_no_pid(self):
        running = start(["/nonexistent/shell-plumber-prog"], stderr=NULL)
        assert running.pids == [None]
        running.kill()
        assert running.wait().exitstatus == EXIT_NOT_FOUND

    def test_no_fork_warning_beside_bridge_threads(self):
        data = b"hi\n" * 100000
        out = io.BytesIO()
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            result = run([["cat"], ["cat"]], stdin=data, stdout=out)
        assert result.succeeded
        assert out.getvalue() == data


class TestResources:
    """Test that pipes are always closed."""

    def test_registry_empty_after_run(self):
        registry = PipeRegistry()
        out = io.StringIO()
        run([["cat"], DOUBLE_CHARS_CMD, ["cat"]], stdin=FOX, stdout=out, registry=registry)
        assert out.getvalue() == FOX_DOUBLED
        assert len(registry) == 0

    def test_registry_holds_bridge_ends_while_running(self):
        registry = PipeRegistry()
        running = start(["cat"], stdin=ZERO, stdout=NULL, registry=registry)
        try:
            assert len(registry) == 2
            assert all(not e.closed for e in running.endpoints)
        finally:
            running.kill()
            running.wait()
        assert len(registry) == 0
        assert all(e.closed for e in running.endpoints)

    def test_no_descriptor_leak(self, open_fds):
        out = io.StringIO()
        run([["echo", "warm"], ["cat"]], stdout=out)
        before = open_fds()
        run([["echo", "x"], ["cat"], ["cat"]], stdin="", stdout=out, stderr=io.StringIO())
        run(["false"], stdout=NULL)
        assert open_fds() == before

    def test_concurrent_pipelines(self):
        registry = PipeRegistry()
        outputs = {}

        def worker(n):
            out = io.StringIO()
            run([["cat"], ["cat"]], stdin=f"worker {n}\n" * 500, stdout=out, registry=registry)
            outputs[n] = out.getvalue()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert {n: v for n, v in outputs.items()} == {n: f"worker {n}\n" * 500 for n in range(6)}
        assert len(registry) == 0

    def test_spec_not_modified(self):
        first = cmd("echo", "x")
        second = cmd("cat")
        run([first, second], stdout=io.StringIO())
        assert first.stdout is second.stdout
        assert first.stdin is second.stdin


class TestRunningPipeline:
    """Test start() handles and caller-side termination."""

    def test_wait_is_idempotent(self):
        running = start([["true"], ["false"]])
        assert len(running.pids) == 2
        assert running.wait() is running.wait()

    def test_infinite_producer_needs_caller_deadline(self):
        running = start([["cat"], ["cat"]], stdin=ZERO, stdout=NULL)
        timer = threading.Timer(0.3, running.kill)
        timer.start()
        try:
            result = running.wait()
        finally:
            timer.cancel()
        assert result[0].termsig == signal.SIGKILL
        assert not result.succeeded

    def test_terminate(self):
        running = start(["sleep", "10"])
        running.terminate()
        result = running.wait()
        assert result.termsig == signal.SIGTERM

    def test_kill_after_exit_is_harmless(self):
        running = start(["true"])
        running.wait()
        running.kill()
        assert running.wait().succeeded

    def test_kill_while_another_thread_waits(self):
        running = start(["sleep", "10"])
        results = []
        waiter = threading.Thread(target=lambda: results.append(running.wait()))
        waiter.start()
        time.sleep(0.2)
        running.kill()
        waiter.join(timeout=10)
        assert not waiter.is_alive()
        assert results[0].termsig == signal.SIGKILL

    def test_no_signal_once_reaped(self, monkeypatch):
        running = start(["true"])
        running.wait()

        def refuse(pid, signum):
            raise AssertionError(f"signal {signum} sent to reaped pid {pid}")

        monkeypatch.setattr(os, "kill", refuse)
        running.kill()
        running.terminate()

    def test_context_manager_waits(self):
        out = io.StringIO()
        with start(["echo", "ctx"], stdout=out) as running:
            pass
        assert running.processes[0].status.succeeded
        assert out.getvalue() == "ctx\n"


class TestAsync:
    """Test the asyncio front end."""

    async def test_async_simple_command(self):
        out = io.StringIO()
        result = await run_async(["echo", "async"], stdout=out)
        assert result.succeeded
        assert out.getvalue() == "async\n"

    async def test_async_pipeline(self):
        out = io.StringIO()
        result = await (cmd("printf", "a\\nb\\nc\\n") | cmd("grep", "-v", "b")).run_async(stdout=out)
        assert out.getvalue() == "a\nc\n"
        assert result.succeeded

    async def test_async_check_raises(self):
        with pytest.raises(CommandError):
            await run_async(["false"], check=True)

    async def test_async_timeout_kills_zero_producer(self):
        with pytest.raises(TimeoutExpired) as exc_info:
            await run_async(["cat"], stdin=ZERO, stdout=NULL, timeout=0.3)
        assert exc_info.value.timeout == 0.3
        assert "cat" in str(exc_info.value.args_list)

    async def test_async_cancellation(self):
        task = asyncio.ensure_future(run_async(["sleep", "10"]))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestPipelineBuilder:
    """Test ProcessSpec and Pipeline construction."""

    def test_argv_is_tuple_of_str(self, tmp_path):
        spec = cmd("ls", tmp_path)
        assert spec.argv == ("ls", str(tmp_path))

    def test_or_builds_pipeline(self):
        p = cmd("ls") | cmd("grep", "foo")
        assert isinstance(p, Pipeline)
        assert len(p) == 2

    def test_or_with_pipeline(self):
        p = cmd("a") | (cmd("b") | cmd("c"))
        assert [s.argv[0] for s in p] == ["a", "b", "c"]

    def test_or_rejects_other_types(self):
        with pytest.raises(TypeError):
            cmd("ls") | "grep"

    def test_pipeline_repr(self):
        p = cmd("ls") | cmd("grep", "foo")
        assert repr(p) == "Pipeline(['ls'] | ['grep', 'foo'])"

    def test_spec_repr(self):
        assert "ls" in repr(cmd("ls", "-la"))

    def test_close_accepts_file_objects(self, tmp_path):
        with open(tmp_path / "f", "w") as f:
            spec = cmd("true", close=[f, 99])
            assert spec.close == (f.fileno(), 99)

    def test_specs_are_immutable(self):
        spec = ProcessSpec(["true"])
        with pytest.raises(AttributeError):
            spec.argv = ("false",)
