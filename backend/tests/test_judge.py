from __future__ import annotations

import asyncio
import logging
import random

from standings.domain import Problem, ProblemSpec, ScopeKind, SubmissionStatus
from standings.judge import SimulatedJudge
from standings.service import LeaderboardService
from standings.store import InMemoryStore


class _AllPass(random.Random):
    def randint(self, a: int, b: int) -> int:
        return b


class _NonePass(random.Random):
    def randint(self, a: int, b: int) -> int:
        return a


def _setup(rng: random.Random):
    store = InMemoryStore.create()
    judge = SimulatedJudge(
        store=store,
        leaderboards=LeaderboardService(store=store),
        delay_seconds=0,
        rng=rng,
    )
    return store, judge


def test_accepted_submission_updates_leaderboard():
    """全ケース通過ならACとなり順位表に反映される。"""

    async def scenario():
        store, judge = _setup(_AllPass())
        contest = await store.create_contest(
            "c", None, [ProblemSpec(title="A", points=100, test_case_count=4)]
        )
        problem = contest.problems[0]
        sub = await store.insert_submission(contest.id, "u1", problem.id, "python")

        judged = await judge.judge(sub, problem)
        assert judged.status is SubmissionStatus.ACCEPTED
        assert judged.score == 100
        assert judged.test_cases_passed == 4
        assert judged.execution_time_ms == 999

        board = await store.get_leaderboard(contest.id, ScopeKind.CONTEST)
        assert [(e.competitor_id, e.score, e.rank) for e in board.entries] == [("u1", 100, 1)]

    asyncio.run(scenario())


def test_wrong_answer_does_not_touch_leaderboard():
    async def scenario():
        store, judge = _setup(_NonePass())
        contest = await store.create_contest(
            "c", None, [ProblemSpec(title="A", points=100, test_case_count=3)]
        )
        problem = contest.problems[0]
        sub = await store.insert_submission(contest.id, "u1", problem.id, "python")

        judged = await judge.judge(sub, problem)
        assert judged.status is SubmissionStatus.WRONG_ANSWER
        assert judged.score == 0
        assert await store.get_leaderboard(contest.id, ScopeKind.CONTEST) is None

        # 二重判定はしない
        assert await judge.judge(sub, problem) is None

    asyncio.run(scenario())


def test_partial_score_is_floored():
    class _TwoOfThree(random.Random):
        def randint(self, a: int, b: int) -> int:
            return 2 if b == 3 else a

    _store, judge = _setup(_TwoOfThree())
    result = judge.evaluate(Problem(id="p", title="A", points=100, test_case_count=3))
    assert result.status is SubmissionStatus.WRONG_ANSWER
    assert result.score == 66
    assert result.test_cases_passed == 2


def test_scheduled_judging_runs_in_background():
    async def scenario():
        store, judge = _setup(_AllPass())
        contest = await store.create_contest(
            "c", None, [ProblemSpec(title="A", points=10, test_case_count=1)]
        )
        problem = contest.problems[0]
        sub = await store.insert_submission(contest.id, "u1", problem.id, "python")

        judge.schedule(sub, problem)
        await judge.drain()

        stored = await store.get_submission(contest.id, sub.id)
        assert stored.status is SubmissionStatus.ACCEPTED

    asyncio.run(scenario())


def test_failed_background_judging_is_logged(caplog):
    """判定タスクの例外は握りつぶさずログに残す。"""

    class _BrokenStore(InMemoryStore):
        async def complete_submission(self, scope_id, submission_id, result):
            raise RuntimeError("table unavailable")

    async def scenario():
        store = _BrokenStore(contests={}, submissions={}, leaderboards={})
        judge = SimulatedJudge(
            store=store,
            leaderboards=LeaderboardService(store=store),
            delay_seconds=0,
            rng=_AllPass(),
        )
        contest = await store.create_contest(
            "c", None, [ProblemSpec(title="A", points=10, test_case_count=1)]
        )
        problem = contest.problems[0]
        sub = await store.insert_submission(contest.id, "u1", problem.id, "python")

        task = judge.schedule(sub, problem)
        await judge.drain()
        assert task.done()
        assert judge._tasks == set()

    with caplog.at_level(logging.ERROR, logger="standings.judge"):
        asyncio.run(scenario())

    failures = [r for r in caplog.records if r.getMessage().startswith("Judge task")]
    assert len(failures) == 1
    assert isinstance(failures[0].exc_info[1], RuntimeError)
