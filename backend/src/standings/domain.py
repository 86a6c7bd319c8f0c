from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

GLOBAL_SCOPE_ID = "global"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    WRONG_ANSWER = "wrong_answer"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    COMPILATION_ERROR = "compilation_error"
    ERROR = "error"


class ScopeKind(str, Enum):
    CONTEST = "contest"
    COMMUNITY = "community"
    GLOBAL = "global"


class Problem(BaseModel):
    id: str
    title: str
    points: int = Field(ge=0)
    test_case_count: int = Field(ge=1)


class ContestStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


class Contest(BaseModel):
    id: str
    title: str
    community_id: str | None = None
    problems: list[Problem]
    start_date: datetime | None = None
    end_date: datetime | None = None
    participants: list[str] = Field(default_factory=list)
    created_at: datetime

    def find_problem(self, problem_id: str) -> Problem | None:
        for problem in self.problems:
            if problem.id == problem_id:
                return problem
        return None

    def status_at(self, now: datetime) -> ContestStatus:
        # 期間未設定の側は無制限
        if self.start_date is not None and now < self.start_date:
            return ContestStatus.UPCOMING
        if self.end_date is not None and now > self.end_date:
            return ContestStatus.COMPLETED
        return ContestStatus.ACTIVE


class Submission(BaseModel):
    id: str
    competitor_id: str
    scope_id: str
    problem_id: str
    language: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    score: int = Field(default=0, ge=0)
    execution_time_ms: int = Field(default=0, ge=0)
    test_cases_passed: int = Field(default=0, ge=0)
    feedback: str | None = None
    submitted_at: datetime


class JudgeResult(BaseModel):
    """判定結果。pending→終端ステータスへの遷移に使う。"""

    status: SubmissionStatus
    score: int | None = Field(default=None, ge=0)
    execution_time_ms: int = Field(default=0, ge=0)
    test_cases_passed: int = Field(default=0, ge=0)
    feedback: str | None = None

    @model_validator(mode="after")
    def _check_terminal(self) -> "JudgeResult":
        if self.status is SubmissionStatus.PENDING:
            raise ValueError("judge result must have a terminal status")
        if self.status is SubmissionStatus.ACCEPTED and self.score is None:
            raise ValueError("accepted result requires a score")
        return self


class RankingEntry(BaseModel):
    competitor_id: str
    score: int = 0
    problems_solved: int = 0
    submission_count: int = 0
    accuracy: float | None = None
    average_time_ms: float | None = None
    contests: int = 1
    rank: int = 0


class Leaderboard(BaseModel):
    scope_id: str
    scope_kind: ScopeKind
    entries: list[RankingEntry] = Field(default_factory=list)
    last_updated: datetime


class ProblemSpec(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    points: int = Field(ge=0, le=10000)
    test_case_count: int = Field(ge=1, le=1000)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: object) -> str:
        if not isinstance(v, str):
            raise TypeError("title must be a string")
        s = v.strip()
        if not s:
            raise ValueError("title must not be blank")
        return s


class CreateContestRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    community_id: str | None = None
    problems: list[ProblemSpec] = Field(min_length=1, max_length=50)
    start_date: AwareDatetime
    end_date: AwareDatetime

    @model_validator(mode="after")
    def _check_period(self) -> "CreateContestRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: object) -> str:
        if not isinstance(v, str):
            raise TypeError("title must be a string")
        s = v.strip()
        if not s:
            raise ValueError("title must not be blank")
        return s

    @field_validator("community_id", mode="before")
    @classmethod
    def _blank_community_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CreateContestResponse(BaseModel):
    contest_id: str


class CreateSubmissionRequest(BaseModel):
    competitor_id: str = Field(min_length=1, max_length=64)
    problem_id: str = Field(min_length=1)
    language: Literal["javascript", "python", "java", "cpp", "c"]
    code: str = Field(min_length=1, max_length=65536)

    @field_validator("competitor_id", "problem_id", mode="before")
    @classmethod
    def _strip_ids(cls, v: object) -> str:
        if not isinstance(v, str):
            raise TypeError("ids must be strings")
        s = v.strip()
        if not s:
            raise ValueError("ids must not be blank")
        return s


class CreateSubmissionResponse(BaseModel):
    submission_id: str


class ParticipationRequest(BaseModel):
    competitor_id: str = Field(min_length=1, max_length=64)

    @field_validator("competitor_id", mode="before")
    @classmethod
    def _strip_id(cls, v: object) -> str:
        if not isinstance(v, str):
            raise TypeError("competitor_id must be a string")
        s = v.strip()
        if not s:
            raise ValueError("competitor_id must not be blank")
        return s


class StoreBackend(BaseModel):
    kind: Literal["inmemory", "dynamodb"]
