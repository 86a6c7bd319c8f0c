from __future__ import annotations

import logging
import random
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from .config import Settings, load_env_file
from .domain import (
    GLOBAL_SCOPE_ID,
    Contest,
    ContestStatus,
    CreateContestRequest,
    CreateContestResponse,
    CreateSubmissionRequest,
    CreateSubmissionResponse,
    Leaderboard,
    ParticipationRequest,
    ScopeKind,
    Submission,
    SubmissionStatus,
)
from .errors import ComputeError
from .judge import SimulatedJudge
from .service import LeaderboardService
from .store import Store, build_store

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    rng: random.Random | None = None,
) -> FastAPI:
    if settings is None:
        repo_root = Path(__file__).resolve().parents[3]
        load_env_file(repo_root)
        settings = Settings.from_env()
    _configure_logging(settings)

    if store is None:
        store = build_store(settings)
    leaderboards = LeaderboardService(store=store)
    judge = SimulatedJudge(
        store=store,
        leaderboards=leaderboards,
        delay_seconds=settings.judge_delay_seconds,
        rng=rng or random.Random(),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        # 判定中のタスクは中断せず最後まで走らせる
        await judge.drain()

    app = FastAPI(title="Standings", lifespan=lifespan)
    app.state.store = store
    app.state.leaderboards = leaderboards
    app.state.judge = judge

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def _require_contest(contest_id: str) -> Contest:
        contest = await store.get_contest(contest_id)
        if contest is None:
            raise HTTPException(status_code=404, detail="contest not found")
        return contest

    @app.get("/health")
    def health():
        return {"ok": True, "store": settings.store.kind}

    @app.post("/api/contests", response_model=CreateContestResponse)
    async def create_contest(req: CreateContestRequest):
        contest = await store.create_contest(
            req.title, req.community_id, req.problems, req.start_date, req.end_date
        )
        try:
            await leaderboards.initialize_contest(contest)
        except ComputeError:
            # 最初のACで遅延生成される
            logger.warning("Leaderboard for %s was not initialized", contest.id, exc_info=True)
        return CreateContestResponse(contest_id=contest.id)

    @app.get("/api/contests", response_model=list[Contest])
    async def list_contests(
        status: ContestStatus | None = None, community_id: str | None = None
    ):
        now = _now()
        contests = await store.list_contests(community_id)
        if status is not None:
            contests = [c for c in contests if c.status_at(now) is status]
        return sorted(contests, key=lambda c: c.start_date or c.created_at)

    @app.get("/api/contests/{contest_id}", response_model=Contest)
    async def get_contest(contest_id: str):
        return await _require_contest(contest_id)

    @app.post("/api/contests/{contest_id}/join", response_model=Contest)
    async def join_contest(contest_id: str, req: ParticipationRequest):
        contest = await _require_contest(contest_id)
        if contest.status_at(_now()) is ContestStatus.COMPLETED:
            raise HTTPException(status_code=400, detail="contest has already ended")
        if req.competitor_id in contest.participants:
            raise HTTPException(status_code=400, detail="already participating in this contest")
        joined = await store.join_contest(contest_id, req.competitor_id)
        if joined is None:
            raise HTTPException(status_code=404, detail="contest not found")
        return joined

    @app.post("/api/contests/{contest_id}/leave", response_model=Contest)
    async def leave_contest(contest_id: str, req: ParticipationRequest):
        contest = await _require_contest(contest_id)
        if contest.status_at(_now()) is not ContestStatus.UPCOMING:
            raise HTTPException(status_code=400, detail="contest has already started")
        if req.competitor_id not in contest.participants:
            raise HTTPException(status_code=400, detail="not participating in this contest")
        left = await store.leave_contest(contest_id, req.competitor_id)
        if left is None:
            raise HTTPException(status_code=404, detail="contest not found")
        return left

    @app.delete("/api/contests/{contest_id}")
    async def delete_contest(contest_id: str):
        if not await leaderboards.delete_contest(contest_id):
            raise HTTPException(status_code=404, detail="contest not found")
        return {"ok": True}

    @app.post(
        "/api/contests/{contest_id}/submissions",
        response_model=CreateSubmissionResponse,
        status_code=201,
    )
    async def submit(contest_id: str, req: CreateSubmissionRequest):
        contest = await _require_contest(contest_id)
        if contest.status_at(_now()) is not ContestStatus.ACTIVE:
            raise HTTPException(status_code=400, detail="contest is not active")
        if req.competitor_id not in contest.participants:
            raise HTTPException(status_code=403, detail="not participating in this contest")
        problem = contest.find_problem(req.problem_id)
        if problem is None:
            raise HTTPException(status_code=404, detail="problem not found in this contest")
        submission = await store.insert_submission(
            contest.id, req.competitor_id, problem.id, req.language
        )
        judge.schedule(submission, problem)
        return CreateSubmissionResponse(submission_id=submission.id)

    @app.get("/api/contests/{contest_id}/submissions", response_model=list[Submission])
    async def list_submissions(
        contest_id: str,
        competitor_id: str | None = None,
        problem_id: str | None = None,
        status: SubmissionStatus | None = None,
    ):
        await _require_contest(contest_id)
        submissions = await store.find_submissions(
            contest_id, competitor_id=competitor_id, status=status, problem_id=problem_id
        )
        # 新しい順
        return list(reversed(submissions))

    @app.get("/api/contests/{contest_id}/submissions/{submission_id}", response_model=Submission)
    async def get_submission(contest_id: str, submission_id: str):
        submission = await store.get_submission(contest_id, submission_id)
        if submission is None:
            raise HTTPException(status_code=404, detail="submission not found")
        return submission

    @app.get("/api/leaderboards/contests/{contest_id}", response_model=Leaderboard)
    async def contest_leaderboard(
        contest_id: str, limit: int | None = Query(default=None, ge=1, le=1000)
    ):
        await _require_contest(contest_id)
        return await leaderboards.get_leaderboard(contest_id, ScopeKind.CONTEST, limit)

    @app.post("/api/leaderboards/contests/{contest_id}/recalculate")
    async def recalculate(contest_id: str):
        await _require_contest(contest_id)
        if not await leaderboards.recalculate(contest_id):
            raise HTTPException(status_code=500, detail="leaderboard recalculation failed")
        return {"ok": True}

    @app.get("/api/leaderboards/communities/{community_id}", response_model=Leaderboard)
    async def community_leaderboard(
        community_id: str, limit: int | None = Query(default=None, ge=1, le=1000)
    ):
        return await leaderboards.get_leaderboard(community_id, ScopeKind.COMMUNITY, limit)

    @app.get("/api/leaderboards/global", response_model=Leaderboard)
    async def global_leaderboard(limit: int | None = Query(default=None, ge=1, le=1000)):
        return await leaderboards.get_leaderboard(GLOBAL_SCOPE_ID, ScopeKind.GLOBAL, limit)

    return app


def _now() -> datetime:
    return datetime.now(timezone.utc)


app = create_app()
handler = Mangum(app)
