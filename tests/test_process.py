"""Tests for the cancellation token and subprocess runner."""

import asyncio
import sys
import time

import pytest

from melt.errors import AbortedError, CommandError
from melt.process import CancelToken, _get_clean_env, run_command


class TestGetCleanEnv:
    """Tests for _get_clean_env function."""

    def test_removes_tmpdir(self, monkeypatch):
        monkeypatch.setenv('TMPDIR', '/tmp/nix-shell-123')
        env = _get_clean_env()
        assert 'TMPDIR' not in env

    def test_disables_git_prompt(self):
        assert _get_clean_env()['GIT_TERMINAL_PROMPT'] == '0'

    def test_preserves_other_vars(self, monkeypatch):
        monkeypatch.setenv('MY_TEST_VAR', 'test_value')
        assert _get_clean_env()['MY_TEST_VAR'] == 'test_value'


class TestCancelToken:
    """Tests for CancelToken."""

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        assert await CancelToken().guard(asyncio.sleep(0, result=42)) == 42

    @pytest.mark.asyncio
    async def test_guard_after_cancel(self):
        """Test that guarded work is refused once cancelled."""
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(AbortedError, match='Command aborted'):
            await cancel.guard(asyncio.sleep(0))

    @pytest.mark.asyncio
    async def test_guard_interrupted(self):
        """Test that cancelling wakes a long wait early."""
        cancel = CancelToken()
        asyncio.get_running_loop().call_later(0.05, cancel.cancel)
        start = time.monotonic()
        with pytest.raises(AbortedError):
            await cancel.guard(asyncio.sleep(10))
        assert time.monotonic() - start < 5

    @pytest.mark.asyncio
    async def test_sleep_zero_checks_cancel(self):
        cancel = CancelToken()
        await cancel.sleep(0)
        cancel.cancel()
        with pytest.raises(AbortedError):
            await cancel.sleep(0)

    def test_cancel_is_sticky(self):
        cancel = CancelToken()
        cancel.cancel()
        cancel.cancel()
        assert cancel.cancelled
        with pytest.raises(AbortedError):
            cancel.raise_if_cancelled()


class TestRunCommand:
    """Tests for run_command function."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        cmd = [sys.executable, '-c', 'import sys; print("out"); print("err", file=sys.stderr); sys.exit(3)']
        result = await run_command(cmd, CancelToken())
        assert result.returncode == 3
        assert result.stdout.strip() == 'out'
        assert result.stderr.strip() == 'err'

    @pytest.mark.asyncio
    async def test_abort_kills_process(self):
        """Test that a cancelled token ends a running process promptly."""
        cmd = [sys.executable, '-c', 'import time; time.sleep(10)']
        cancel = CancelToken()
        asyncio.get_running_loop().call_later(0.2, cancel.cancel)
        start = time.monotonic()
        with pytest.raises(AbortedError):
            await run_command(cmd, cancel)
        assert time.monotonic() - start < 5

    @pytest.mark.asyncio
    async def test_refuses_after_cancel(self):
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(AbortedError):
            await run_command([sys.executable, '-c', 'pass'], cancel)

    @pytest.mark.asyncio
    async def test_timeout(self):
        cmd = [sys.executable, '-c', 'import time; time.sleep(10)']
        with pytest.raises(CommandError, match='timed out'):
            await run_command(cmd, CancelToken(), timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(CommandError) as exc_info:
            await run_command(['melt-no-such-command-xyz'], CancelToken())
        assert exc_info.value.returncode == 127

    @pytest.mark.asyncio
    async def test_verbose_echo(self, capsys):
        await run_command([sys.executable, '-c', 'pass'], CancelToken(), verbose=True)
        assert '+ ' in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_quiet_by_default(self, capsys):
        await run_command([sys.executable, '-c', 'pass'], CancelToken())
        assert capsys.readouterr().err == ''
