"""Sell trigger dispatch.

Each one-shot threshold crossing launches the external sell executor as
a child process and returns immediately. Completion (exit code 0 or
anything else) is published as a TriggerResult to ``on_result`` and kept
in ``results``. Executor failures are logged, never raised.

Executor command lines (``npm run`` by default):
    instant: <command> <sell_type> <mint> 0 <priority>
    staged:  <command> <staged_script> <mint> <stageN> <priority>
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from solwatch.config.settings import ExecutorConfig
from solwatch.core.models import TriggerContext, TriggerResult, TriggerStage
from solwatch.utils.logger import get_logger

logger = get_logger("trigger")

_READ_CHUNK = 4096
_MAX_LINE = 8192

_STAGE_LABELS: dict[TriggerStage, str] = {
    TriggerStage.INSTANT: "instant sell",
    TriggerStage.STAGE1: "stage 1 (30% of wallets)",
    TriggerStage.STAGE2: "stage 2 (30% of wallets)",
    TriggerStage.STAGE3: "stage 3 (40% + DEV wallet)",
}


class TriggerDispatcher:
    """Fire-and-observe launcher for the external sell executor.

    Args:
        executor: Command, working directory, staged script and priority.
        sell_type: Script used for INSTANT triggers.
        simulation: Skip the process launch but still publish results.
        on_result: Completion callback.
    """

    def __init__(
        self,
        executor: ExecutorConfig | None = None,
        sell_type: str = "rapid-sell",
        simulation: bool = False,
        on_result: Callable[[TriggerResult], None] | None = None,
    ) -> None:
        self._executor = executor or ExecutorConfig()
        self._sell_type = sell_type
        self._simulation = simulation
        self._on_result = on_result
        self._tasks: set[asyncio.Task[TriggerResult]] = set()
        self._results: list[TriggerResult] = []
        self._fired = 0

    @property
    def simulation(self) -> bool:
        return self._simulation

    @property
    def results(self) -> list[TriggerResult]:
        return list(self._results)

    @property
    def fired(self) -> int:
        return self._fired

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def build_command(self, ctx: TriggerContext) -> list[str]:
        """Positional executor arguments for a trigger."""
        cfg = self._executor
        if ctx.stage == TriggerStage.INSTANT:
            return [*cfg.command, self._sell_type, ctx.mint, "0", cfg.priority]
        return [*cfg.command, cfg.staged_script, ctx.mint, ctx.stage.value, cfg.priority]

    def fire(self, ctx: TriggerContext) -> asyncio.Task[TriggerResult]:
        """Launch the executor in the background and return its task."""
        self._fired += 1
        logger.warning(
            "sell_triggered",
            stage=ctx.stage.value,
            label=_STAGE_LABELS[ctx.stage],
            mint=ctx.mint,
            net_volume=str(ctx.net_volume),
            threshold=str(ctx.threshold),
            elapsed_ms=int(ctx.elapsed_s * 1000),
            simulation=self._simulation,
        )
        task = asyncio.create_task(self._run(ctx))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for all in-flight executor runs to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _run(self, ctx: TriggerContext) -> TriggerResult:
        if self._simulation:
            result = TriggerResult(stage=ctx.stage, mint=ctx.mint, success=True, simulated=True)
            self._publish(result)
            return result

        command = self.build_command(ctx)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._executor.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            result = TriggerResult(
                stage=ctx.stage,
                mint=ctx.mint,
                success=False,
                error=str(e),
                duration_s=time.monotonic() - start,
            )
            self._publish(result)
            return result

        logger.info("executor_started", stage=ctx.stage.value, pid=proc.pid, command=command)
        try:
            await asyncio.gather(
                self._relay(proc.stdout, ctx.stage, is_error=False),
                self._relay(proc.stderr, ctx.stage, is_error=True),
            )
        finally:
            # The sell keeps running once started; always reap it
            exit_code = await proc.wait()

        result = TriggerResult(
            stage=ctx.stage,
            mint=ctx.mint,
            success=exit_code == 0,
            exit_code=exit_code,
            duration_s=time.monotonic() - start,
        )
        self._publish(result)
        return result

    async def _relay(
        self, stream: asyncio.StreamReader | None, stage: TriggerStage, is_error: bool
    ) -> None:
        """Forward executor output to the log line by line.

        Reads fixed-size chunks so an unterminated or oversized line is
        split at _MAX_LINE bytes instead of failing the reader.
        """
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                self._log_output(raw, stage, is_error)
            while len(pending) >= _MAX_LINE:
                self._log_output(pending[:_MAX_LINE], stage, is_error)
                pending = pending[_MAX_LINE:]
        if pending:
            self._log_output(pending, stage, is_error)

    def _log_output(self, raw: bytes, stage: TriggerStage, is_error: bool) -> None:
        line = raw.decode(errors="replace").rstrip()
        if not line:
            return
        if is_error:
            logger.warning("executor_stderr", stage=stage.value, line=line)
        else:
            logger.info("executor_stdout", stage=stage.value, line=line)

    def _publish(self, result: TriggerResult) -> None:
        self._results.append(result)
        if result.success:
            logger.info(
                "sell_completed",
                stage=result.stage.value,
                simulated=result.simulated,
                duration_s=round(result.duration_s, 3),
            )
        else:
            logger.error(
                "sell_failed",
                stage=result.stage.value,
                exit_code=result.exit_code,
                error=result.error,
            )
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception as e:
                logger.warning("trigger_result_callback_error", error=str(e))
