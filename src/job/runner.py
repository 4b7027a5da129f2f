"""Job entry point: supervise the worker process for one dispatched execution.

Run inside the job container with the env set by the dispatcher:

    python -m src.job.runner --prompt-file /work/prompt.txt

``JOB_EXECUTION_ID`` and ``CANCEL_CHECK_URL`` enable cooperative
cancellation: the check URL is polled while the worker runs and the worker
is killed once it reports ``cancelled``. The result token is printed as the
last line of output so the job's own logs carry it.

Exit codes: 0 success with a result token, 1 failure, 2 timed out,
3 cancelled, 4 succeeded without a result token.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import httpx

from src.config import settings
from src.supervisor.process import ProcessSupervisor, SessionState, SupervisorResult

logger = logging.getLogger(__name__)

EXIT_CODES = {
    SessionState.SUCCEEDED: 0,
    SessionState.FAILED: 1,
    SessionState.TIMED_OUT: 2,
    SessionState.CANCELLED: 3,
}
EXIT_NO_TOKEN = 4


def make_cancel_check(client: httpx.AsyncClient, check_url: str):
    async def _check() -> bool:
        resp = await client.get(check_url)
        resp.raise_for_status()
        return bool(resp.json().get("cancelled"))
    return _check


def exit_code_for(result: SupervisorResult) -> int:
    if result.succeeded and not result.result_token:
        return EXIT_NO_TOKEN
    return EXIT_CODES.get(result.state, 1)


async def run_job(
    prompt: str,
    execution_id: str = "",
    check_url: str = "",
    command: list[str] | str | None = None,
) -> SupervisorResult:
    async with httpx.AsyncClient(timeout=10.0) as client:
        cancel_check = make_cancel_check(client, check_url) if check_url else None
        supervisor = ProcessSupervisor(command, cancel_check=cancel_check)
        logger.info("Running execution_id=%s (cancellation polling: %s)", execution_id or "-", bool(check_url))
        return await supervisor.run(prompt)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Supervise the worker for one job execution")
    parser.add_argument("--prompt-file", type=Path, help="Prompt to send on stdin (default: read stdin)")
    parser.add_argument("--command", help="Worker command line (default: DISPATCH_SUPERVISOR_COMMAND)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    prompt = args.prompt_file.read_text() if args.prompt_file else sys.stdin.read()
    if not prompt.strip():
        logger.error("Empty prompt")
        return 1

    result = asyncio.run(run_job(
        prompt,
        execution_id=os.environ.get("JOB_EXECUTION_ID", ""),
        check_url=os.environ.get("CANCEL_CHECK_URL", ""),
        command=args.command,
    ))
    if result.error:
        logger.error(result.error)
    if result.result_token:
        print(f"{settings.supervisor_result_marker}={result.result_token}")
    elif result.succeeded:
        logger.error("Worker exited cleanly but printed no %s line", settings.supervisor_result_marker)
    return exit_code_for(result)


if __name__ == "__main__":
    sys.exit(main())
