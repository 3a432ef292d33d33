"""Registry of analysis runs; at most one active run per token"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from hedera_analyzer.analyzer import TokenAnalyzer
from hedera_analyzer.models import AnalysisResult
from hedera_analyzer.models import AnalysisStats
from hedera_analyzer.utils import validate_token_id

_logger = logging.getLogger(__name__)

AnalyzerFactory = Callable[[str, AnalysisStats], TokenAnalyzer]


@dataclass
class AnalysisRun:
    token_id: str
    analyzer: TokenAnalyzer
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    result: AnalysisResult | None = None
    error: str | None = None

    @property
    def stats(self) -> AnalysisStats:
        return self.analyzer.stats

    def get_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            'status': self.analyzer.status.value,
            'progress': self.stats.get_progress(),
        }
        if self.result is not None:
            status['result'] = self.result.to_json()
        if self.error is not None:
            status['error'] = self.error
        return status


class RunManager:
    """Starts analysis runs in background tasks and keeps track of them.

    `start_or_attach` has no awaits inside, so check-and-insert can't interleave with another call on the same
    event loop. The last finished run of every token is kept until the next one starts.
    """

    def __init__(self, factory: AnalyzerFactory) -> None:
        self._factory = factory
        self._active: dict[str, AnalysisRun] = {}
        self._finished: dict[str, AnalysisRun] = {}

    def start_or_attach(self, token_id: str) -> tuple[AnalysisRun, bool]:
        """Return the active run of the token or start a new one; the flag is True for a new run"""
        validate_token_id(token_id)
        if (run := self._active.get(token_id)) is not None:
            _logger.info('Analysis of `%s` is in progress, attaching', token_id)
            return run, False

        analyzer = self._factory(token_id, AnalysisStats())
        run = AnalysisRun(token_id=token_id, analyzer=analyzer)
        self._active[token_id] = run
        run.task = asyncio.create_task(self._run(run), name=f'analysis:{token_id}')
        _logger.info('Analysis of `%s` started', token_id)
        return run, True

    async def _run(self, run: AnalysisRun) -> None:
        try:
            run.result = await run.analyzer.run()
        except asyncio.CancelledError:
            run.error = 'Analysis was cancelled'
            raise
        except Exception as e:
            _logger.exception('Analysis of `%s` failed', run.token_id)
            run.error = str(e)
        finally:
            self._active.pop(run.token_id, None)
            self._finished[run.token_id] = run

    def get(self, token_id: str) -> AnalysisRun | None:
        validate_token_id(token_id)
        return self._active.get(token_id) or self._finished.get(token_id)

    def get_status(self, token_id: str) -> dict[str, Any] | None:
        run = self.get(token_id)
        return run.get_status() if run else None

    def ongoing(self) -> list[dict[str, Any]]:
        return [{'tokenId': token_id, 'progress': run.stats.get_progress()} for token_id, run in self._active.items()]

    async def wait(self, token_id: str) -> AnalysisRun | None:
        run = self.get(token_id)
        if run and run.task:
            await asyncio.wait((run.task,))
        return run

    async def close(self) -> None:
        """Cancel active runs on shutdown"""
        tasks = [run.task for run in self._active.values() if run.task]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
