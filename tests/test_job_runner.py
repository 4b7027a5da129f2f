"""Tests for the in-job runner."""

import sys
from unittest.mock import patch

import httpx

from src.job import runner
from src.supervisor.process import SessionState, SupervisorResult


def _result(state: SessionState, token: str | None = None) -> SupervisorResult:
    return SupervisorResult(state, 0, token, "", "", 1.0)


def test_exit_codes():
    assert runner.exit_code_for(_result(SessionState.SUCCEEDED, "https://x")) == 0
    assert runner.exit_code_for(_result(SessionState.SUCCEEDED)) == runner.EXIT_NO_TOKEN
    assert runner.exit_code_for(_result(SessionState.FAILED)) == 1
    assert runner.exit_code_for(_result(SessionState.TIMED_OUT)) == 2
    assert runner.exit_code_for(_result(SessionState.CANCELLED)) == 3


async def test_cancel_check_reads_cancelled_flag():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["executionId"] == "e1"
        return httpx.Response(200, json={"cancelled": True, "executionId": "e1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        check = runner.make_cancel_check(client, "https://dispatch.example/api/v1/check-cancelled?executionId=e1")
        assert await check() is True


async def test_run_job_supervises_command():
    command = [sys.executable, "-c", "import sys; sys.stdin.read(); print('DEPLOYED_URL=https://done.example')"]

    result = await runner.run_job("prompt", execution_id="e1", command=command)

    assert result.state is SessionState.SUCCEEDED
    assert result.result_token == "https://done.example"


def test_main_prints_token_and_exits_zero(tmp_path, capsys):
    prompt = tmp_path / "prompt.txt"
    prompt.write_text("analyse this")
    fake = _result(SessionState.SUCCEEDED, "https://site.example")

    async def fake_run_job(*args, **kwargs):
        return fake

    with patch.object(runner, "run_job", fake_run_job):
        code = runner.main(["--prompt-file", str(prompt)])

    assert code == 0
    assert "DEPLOYED_URL=https://site.example" in capsys.readouterr().out


def test_main_rejects_empty_prompt(tmp_path):
    prompt = tmp_path / "prompt.txt"
    prompt.write_text("  \n")
    assert runner.main(["--prompt-file", str(prompt)]) == 1
