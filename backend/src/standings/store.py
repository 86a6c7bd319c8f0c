from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .config import Settings
from .domain import (
    Contest,
    JudgeResult,
    Leaderboard,
    Problem,
    ProblemSpec,
    ScopeKind,
    Submission,
    SubmissionStatus,
    new_id,
)
from .errors import ItemTooLargeError, SubmissionStateError

TABLE_KEY_SCHEMA = [
    {"AttributeName": "pk", "KeyType": "HASH"},
    {"AttributeName": "sk", "KeyType": "RANGE"},
]
TABLE_ATTRIBUTE_DEFINITIONS = [
    {"AttributeName": "pk", "AttributeType": "S"},
    {"AttributeName": "sk", "AttributeType": "S"},
]

# DynamoDBの1アイテム上限は400KB。順位表は1アイテムに収める
MAX_ITEM_BYTES = 400 * 1024


class ScopeRegistry(Protocol):
    async def create_contest(
        self,
        title: str,
        community_id: str | None,
        problems: list[ProblemSpec],
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Contest: ...

    async def get_contest(self, contest_id: str) -> Contest | None: ...

    async def list_contests(self, community_id: str | None = None) -> list[Contest]: ...

    async def delete_contest(self, contest_id: str) -> bool: ...

    async def join_contest(self, contest_id: str, competitor_id: str) -> Contest | None: ...

    async def leave_contest(self, contest_id: str, competitor_id: str) -> Contest | None: ...


class SubmissionStore(Protocol):
    async def insert_submission(
        self, scope_id: str, competitor_id: str, problem_id: str, language: str
    ) -> Submission: ...

    async def get_submission(self, scope_id: str, submission_id: str) -> Submission | None: ...

    async def find_submissions(
        self,
        scope_id: str,
        competitor_id: str | None = None,
        status: SubmissionStatus | None = None,
        problem_id: str | None = None,
    ) -> list[Submission]: ...

    async def complete_submission(
        self, scope_id: str, submission_id: str, result: JudgeResult
    ) -> Submission: ...


class LeaderboardStore(Protocol):
    async def get_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> Leaderboard | None: ...

    async def put_leaderboard(self, leaderboard: Leaderboard) -> None: ...

    async def delete_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> None: ...


class Store(ScopeRegistry, SubmissionStore, LeaderboardStore, Protocol):
    pass


def _build_contest(
    title: str,
    community_id: str | None,
    problems: list[ProblemSpec],
    start_date: datetime | None,
    end_date: datetime | None,
) -> Contest:
    return Contest(
        id=new_id("cst"),
        title=title.strip(),
        community_id=community_id,
        problems=[
            Problem(
                id=new_id("prb"),
                title=p.title,
                points=p.points,
                test_case_count=p.test_case_count,
            )
            for p in problems
        ],
        start_date=start_date,
        end_date=end_date,
        created_at=_now(),
    )


def _build_submission(
    scope_id: str, competitor_id: str, problem_id: str, language: str
) -> Submission:
    return Submission(
        id=new_id("sub"),
        competitor_id=competitor_id,
        scope_id=scope_id,
        problem_id=problem_id,
        language=language,
        submitted_at=_now(),
    )


def _matches(
    sub: Submission,
    competitor_id: str | None,
    status: SubmissionStatus | None,
    problem_id: str | None,
) -> bool:
    if competitor_id is not None and sub.competitor_id != competitor_id:
        return False
    if status is not None and sub.status is not status:
        return False
    if problem_id is not None and sub.problem_id != problem_id:
        return False
    return True


def _judged(sub: Submission, result: JudgeResult) -> Submission:
    return sub.model_copy(
        update={
            "status": result.status,
            "score": result.score or 0,
            "execution_time_ms": result.execution_time_ms,
            "test_cases_passed": result.test_cases_passed,
            "feedback": result.feedback,
        }
    )


@dataclass
class InMemoryStore(Store):
    contests: dict[str, Contest]
    submissions: dict[str, Submission]
    leaderboards: dict[tuple[str, ScopeKind], Leaderboard]

    @classmethod
    def create(cls) -> "InMemoryStore":
        return cls(contests={}, submissions={}, leaderboards={})

    async def create_contest(
        self,
        title: str,
        community_id: str | None,
        problems: list[ProblemSpec],
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Contest:
        contest = _build_contest(title, community_id, problems, start_date, end_date)
        self.contests[contest.id] = contest
        return contest

    async def get_contest(self, contest_id: str) -> Contest | None:
        return self.contests.get(contest_id)

    async def list_contests(self, community_id: str | None = None) -> list[Contest]:
        return [
            c
            for c in self.contests.values()
            if community_id is None or c.community_id == community_id
        ]

    async def delete_contest(self, contest_id: str) -> bool:
        if self.contests.pop(contest_id, None) is None:
            return False
        for sid in [sid for sid, s in self.submissions.items() if s.scope_id == contest_id]:
            del self.submissions[sid]
        return True

    async def join_contest(self, contest_id: str, competitor_id: str) -> Contest | None:
        contest = self.contests.get(contest_id)
        if contest is None or competitor_id in contest.participants:
            return contest
        joined = contest.model_copy(
            update={"participants": [*contest.participants, competitor_id]}
        )
        self.contests[contest_id] = joined
        return joined

    async def leave_contest(self, contest_id: str, competitor_id: str) -> Contest | None:
        contest = self.contests.get(contest_id)
        if contest is None or competitor_id not in contest.participants:
            return contest
        left = contest.model_copy(
            update={"participants": [p for p in contest.participants if p != competitor_id]}
        )
        self.contests[contest_id] = left
        return left

    async def insert_submission(
        self, scope_id: str, competitor_id: str, problem_id: str, language: str
    ) -> Submission:
        submission = _build_submission(scope_id, competitor_id, problem_id, language)
        self.submissions[submission.id] = submission
        return submission

    async def get_submission(self, scope_id: str, submission_id: str) -> Submission | None:
        sub = self.submissions.get(submission_id)
        if sub is None or sub.scope_id != scope_id:
            return None
        return sub

    async def find_submissions(
        self,
        scope_id: str,
        competitor_id: str | None = None,
        status: SubmissionStatus | None = None,
        problem_id: str | None = None,
    ) -> list[Submission]:
        subs = [
            s
            for s in self.submissions.values()
            if s.scope_id == scope_id and _matches(s, competitor_id, status, problem_id)
        ]
        return sorted(subs, key=lambda s: s.submitted_at)

    async def complete_submission(
        self, scope_id: str, submission_id: str, result: JudgeResult
    ) -> Submission:
        sub = await self.get_submission(scope_id, submission_id)
        if sub is None:
            raise KeyError("submission not found")
        if sub.status is not SubmissionStatus.PENDING:
            raise SubmissionStateError(submission_id, sub.status.value)
        judged = _judged(sub, result)
        self.submissions[submission_id] = judged
        return judged

    async def get_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> Leaderboard | None:
        board = self.leaderboards.get((scope_id, scope_kind))
        return board.model_copy(deep=True) if board is not None else None

    async def put_leaderboard(self, leaderboard: Leaderboard) -> None:
        key = (leaderboard.scope_id, leaderboard.scope_kind)
        self.leaderboards[key] = leaderboard.model_copy(deep=True)

    async def delete_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> None:
        self.leaderboards.pop((scope_id, scope_kind), None)


def to_item(data: dict[str, Any]) -> dict[str, Any]:
    """JSON互換のdictをDynamoDB用に変換する（floatはDecimalへ）。"""

    return json.loads(json.dumps(data), parse_float=Decimal)


def from_item(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_item(v) for v in value]
    return value


def contest_pk(contest_id: str) -> str:
    return f"CONTEST#{contest_id}"


def leaderboard_pk(scope_id: str, scope_kind: ScopeKind) -> str:
    return f"LEADERBOARD#{scope_kind.value}#{scope_id}"


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response["Error"]["Code"] == "ConditionalCheckFailedException"


@dataclass
class DynamoDBStore(Store):
    """単一テーブルのDynamoDBストア。

    boto3の呼び出しはワーカースレッドで実行する。セッションとリソースは
    スレッド間で共有できないため、スレッドごとに作ってキャッシュする。
    """

    table_name: str
    table_factory: Callable[[], Any] | None = None
    _local: threading.local = field(default_factory=threading.local, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DynamoDBStore":
        if not settings.ddb_table_name:
            raise RuntimeError("DDB_TABLE_NAME is required for dynamodb store")
        return cls(table_name=settings.ddb_table_name)

    def _table(self):
        table = getattr(self._local, "table", None)
        if table is None:
            if self.table_factory is not None:
                table = self.table_factory()
            else:
                table = boto3.session.Session().resource("dynamodb").Table(self.table_name)
            self._local.table = table
        return table

    def _call(self, method: str, **kwargs: Any) -> dict[str, Any]:
        return getattr(self._table(), method)(**kwargs)

    async def _run(self, method: str, **kwargs: Any) -> dict[str, Any]:
        return await asyncio.to_thread(self._call, method, **kwargs)

    def _paginate(self, method: str, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while True:
            resp = self._call(method, **kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    # scope registry

    async def create_contest(
        self,
        title: str,
        community_id: str | None,
        problems: list[ProblemSpec],
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Contest:
        contest = _build_contest(title, community_id, problems, start_date, end_date)
        item = to_item(contest.model_dump(mode="json"))
        item.update({"pk": contest_pk(contest.id), "sk": "META", "entity": "contest"})
        await self._run("put_item", Item=item)
        return contest

    async def get_contest(self, contest_id: str) -> Contest | None:
        resp = await self._run("get_item", Key={"pk": contest_pk(contest_id), "sk": "META"})
        item = resp.get("Item")
        if not item:
            return None
        return Contest.model_validate(from_item(item))

    async def list_contests(self, community_id: str | None = None) -> list[Contest]:
        condition = Attr("entity").eq("contest")
        if community_id is not None:
            condition = condition & Attr("community_id").eq(community_id)
        items = await asyncio.to_thread(self._paginate, "scan", FilterExpression=condition)
        return [Contest.model_validate(from_item(it)) for it in items]

    async def delete_contest(self, contest_id: str) -> bool:
        return await asyncio.to_thread(self._delete_partition, contest_pk(contest_id))

    def _delete_partition(self, pk: str) -> bool:
        items = self._paginate(
            "query",
            KeyConditionExpression=Key("pk").eq(pk),
            ProjectionExpression="pk, sk",
        )
        if not items:
            return False
        with self._table().batch_writer() as batch:
            for it in items:
                batch.delete_item(Key={"pk": it["pk"], "sk": it["sk"]})
        return True

    async def join_contest(self, contest_id: str, competitor_id: str) -> Contest | None:
        try:
            resp = await self._run(
                "update_item",
                Key={"pk": contest_pk(contest_id), "sk": "META"},
                UpdateExpression=(
                    "SET participants = list_append(if_not_exists(participants, :empty), :me)"
                ),
                ConditionExpression="attribute_exists(pk) AND NOT contains(participants, :cid)",
                ExpressionAttributeValues={
                    ":empty": [],
                    ":me": [competitor_id],
                    ":cid": competitor_id,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            # 存在しないか参加済み
            return await self.get_contest(contest_id)
        return Contest.model_validate(from_item(resp["Attributes"]))

    async def leave_contest(self, contest_id: str, competitor_id: str) -> Contest | None:
        for _attempt in range(3):
            contest = await self.get_contest(contest_id)
            if contest is None or competitor_id not in contest.participants:
                return contest
            index = contest.participants.index(competitor_id)
            try:
                resp = await self._run(
                    "update_item",
                    Key={"pk": contest_pk(contest_id), "sk": "META"},
                    UpdateExpression=f"REMOVE participants[{index}]",
                    ConditionExpression=f"participants[{index}] = :cid",
                    ExpressionAttributeValues={":cid": competitor_id},
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                if not _is_conditional_failure(e):
                    raise
                # 並行して参加者リストが変わったので読み直す
                continue
            return Contest.model_validate(from_item(resp["Attributes"]))
        raise RuntimeError(f"participants of {contest_id} kept changing")

    # submissions

    async def insert_submission(
        self, scope_id: str, competitor_id: str, problem_id: str, language: str
    ) -> Submission:
        submission = _build_submission(scope_id, competitor_id, problem_id, language)
        item = to_item(submission.model_dump(mode="json"))
        item.update(
            {"pk": contest_pk(scope_id), "sk": f"SUBMISSION#{submission.id}", "entity": "submission"}
        )
        await self._run("put_item", Item=item)
        return submission

    async def get_submission(self, scope_id: str, submission_id: str) -> Submission | None:
        resp = await self._run(
            "get_item", Key={"pk": contest_pk(scope_id), "sk": f"SUBMISSION#{submission_id}"}
        )
        item = resp.get("Item")
        if not item:
            return None
        return Submission.model_validate(from_item(item))

    async def find_submissions(
        self,
        scope_id: str,
        competitor_id: str | None = None,
        status: SubmissionStatus | None = None,
        problem_id: str | None = None,
    ) -> list[Submission]:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("pk").eq(contest_pk(scope_id))
            & Key("sk").begins_with("SUBMISSION#")
        }
        filters = []
        if competitor_id is not None:
            filters.append(Attr("competitor_id").eq(competitor_id))
        if status is not None:
            filters.append(Attr("status").eq(status.value))
        if problem_id is not None:
            filters.append(Attr("problem_id").eq(problem_id))
        if filters:
            condition = filters[0]
            for extra in filters[1:]:
                condition = condition & extra
            kwargs["FilterExpression"] = condition

        items = await asyncio.to_thread(self._paginate, "query", **kwargs)
        subs = [Submission.model_validate(from_item(it)) for it in items]
        return sorted(subs, key=lambda s: s.submitted_at)

    async def complete_submission(
        self, scope_id: str, submission_id: str, result: JudgeResult
    ) -> Submission:
        key = {"pk": contest_pk(scope_id), "sk": f"SUBMISSION#{submission_id}"}
        try:
            resp = await self._run(
                "update_item",
                Key=key,
                UpdateExpression=(
                    "SET #status = :status, score = :score, execution_time_ms = :time, "
                    "test_cases_passed = :passed, feedback = :feedback"
                ),
                ConditionExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":status": result.status.value,
                    ":score": result.score or 0,
                    ":time": result.execution_time_ms,
                    ":passed": result.test_cases_passed,
                    ":feedback": result.feedback,
                    ":pending": SubmissionStatus.PENDING.value,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise
            existing = await self.get_submission(scope_id, submission_id)
            if existing is None:
                raise KeyError("submission not found") from e
            raise SubmissionStateError(submission_id, existing.status.value) from e
        return Submission.model_validate(from_item(resp["Attributes"]))

    # leaderboards

    async def get_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> Leaderboard | None:
        resp = await self._run(
            "get_item", Key={"pk": leaderboard_pk(scope_id, scope_kind), "sk": "META"}
        )
        item = resp.get("Item")
        if not item:
            return None
        return Leaderboard.model_validate(from_item(item))

    async def put_leaderboard(self, leaderboard: Leaderboard) -> None:
        data = leaderboard.model_dump(mode="json")
        size = len(json.dumps(data).encode("utf-8"))
        if size > MAX_ITEM_BYTES:
            raise ItemTooLargeError(leaderboard.scope_id, size, MAX_ITEM_BYTES)

        item = to_item(data)
        item.update(
            {
                "pk": leaderboard_pk(leaderboard.scope_id, leaderboard.scope_kind),
                "sk": "META",
                "entity": "leaderboard",
            }
        )
        await self._run("put_item", Item=item)

    async def delete_leaderboard(self, scope_id: str, scope_kind: ScopeKind) -> None:
        await self._run("delete_item", Key={"pk": leaderboard_pk(scope_id, scope_kind), "sk": "META"})


def build_store(settings: Settings) -> Store:
    if settings.store.kind == "dynamodb":
        return DynamoDBStore.from_settings(settings)
    return InMemoryStore.create()


def _now() -> datetime:
    return datetime.now(timezone.utc)
