from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field

from .domain import JudgeResult, Problem, Submission, SubmissionStatus
from .errors import SubmissionStateError
from .service import LeaderboardService
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class SimulatedJudge:
    """実行環境を持たない疑似ジャッジ。一定時間待ってからランダムに合否を決める。"""

    store: Store
    leaderboards: LeaderboardService
    delay_seconds: float = 2.0
    rng: random.Random = field(default_factory=random.Random)
    _tasks: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def schedule(self, submission: Submission, problem: Problem) -> asyncio.Task:
        task = asyncio.create_task(self._run(submission, problem), name=f"judge-{submission.id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Judge task %s failed", task.get_name(), exc_info=exc)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def evaluate(self, problem: Problem) -> JudgeResult:
        total = problem.test_case_count
        passed = self.rng.randint(0, total)
        execution_time = self.rng.randint(0, 999)
        accepted = passed == total
        return JudgeResult(
            status=SubmissionStatus.ACCEPTED if accepted else SubmissionStatus.WRONG_ANSWER,
            score=problem.points * passed // total,
            execution_time_ms=execution_time,
            test_cases_passed=passed,
            feedback="All test cases passed!" if accepted else "Some test cases failed.",
        )

    async def judge(self, submission: Submission, problem: Problem) -> Submission | None:
        try:
            judged = await self.store.complete_submission(
                submission.scope_id, submission.id, self.evaluate(problem)
            )
        except SubmissionStateError:
            logger.warning("Submission %s was already judged", submission.id)
            return None
        except Exception:
            logger.exception("Judging failed for submission %s", submission.id)
            return await self._mark_error(submission)

        logger.info(
            "Judged submission %s: %s (%d pts)", judged.id, judged.status.value, judged.score
        )
        if judged.status is SubmissionStatus.ACCEPTED:
            # 順位表の更新失敗は提出結果に影響させない
            await self.leaderboards.on_submission_accepted(judged)
        return judged

    async def _run(self, submission: Submission, problem: Problem) -> None:
        await asyncio.sleep(self.delay_seconds)
        await self.judge(submission, problem)

    async def _mark_error(self, submission: Submission) -> Submission | None:
        result = JudgeResult(
            status=SubmissionStatus.ERROR, feedback="An error occurred during judging."
        )
        try:
            return await self.store.complete_submission(submission.scope_id, submission.id, result)
        except (KeyError, SubmissionStateError):
            logger.exception("Could not mark submission %s as errored", submission.id)
            return None
