from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone

from .domain import (
    GLOBAL_SCOPE_ID,
    Contest,
    Leaderboard,
    RankingEntry,
    ScopeKind,
    Submission,
    SubmissionStatus,
)
from .errors import ComputeError
from .ranking import aggregate_submissions, combine_entries, merge_entry, rank_contest
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class LeaderboardService:
    """判定済みの提出から順位表を維持する。

    コンテストの順位表はAC時に差分更新し、提出履歴全体からいつでも再構築できる。
    コミュニティ/全体の順位表は読み出しのたびに配下のコンテスト順位表から導出する。

    更新は順位表ドキュメント単位の後勝ち。並行更新で失われた分は再計算で戻る。
    """

    store: Store

    async def on_submission_accepted(self, submission: Submission) -> Leaderboard | None:
        if submission.status is not SubmissionStatus.ACCEPTED:
            raise ValueError(f"submission {submission.id} is not accepted")

        try:
            board = await self._update_competitor(submission.scope_id, submission.competitor_id)
        except ComputeError:
            logger.exception(
                "Dropped leaderboard update for %s in %s",
                submission.competitor_id,
                submission.scope_id,
            )
            return None

        await self._refresh_parent(submission.scope_id)
        return board

    async def recalculate(self, scope_id: str) -> bool:
        if await self.store.get_contest(scope_id) is None:
            logger.warning("Refusing to recalculate unknown contest %s", scope_id)
            return False
        try:
            board = await self.rebuild_contest(scope_id)
        except ComputeError:
            logger.exception("Leaderboard recalculation failed for %s", scope_id)
            return False
        logger.info("Recalculated leaderboard %s (%d entries)", scope_id, len(board.entries))
        return True

    async def rebuild_contest(self, scope_id: str) -> Leaderboard:
        try:
            submissions = await self.store.find_submissions(scope_id)
            by_competitor: dict[str, list[Submission]] = defaultdict(list)
            for sub in submissions:
                by_competitor[sub.competitor_id].append(sub)

            board = Leaderboard(
                scope_id=scope_id,
                scope_kind=ScopeKind.CONTEST,
                entries=rank_contest(by_competitor),
                last_updated=_now(),
            )
            await self.store.put_leaderboard(board)
        except Exception as e:
            raise ComputeError(scope_id, f"rebuild failed: {e}") from e
        return board

    async def initialize_contest(self, contest: Contest) -> Leaderboard:
        return await self.rebuild_contest(contest.id)

    async def delete_contest(self, contest_id: str) -> bool:
        deleted = await self.store.delete_contest(contest_id)
        await self.store.delete_leaderboard(contest_id, ScopeKind.CONTEST)
        return deleted

    async def get_leaderboard(
        self, scope_id: str, scope_kind: ScopeKind, limit: int | None = None
    ) -> Leaderboard:
        if scope_kind is ScopeKind.CONTEST:
            board = await self.store.get_leaderboard(scope_id, scope_kind)
        else:
            board = await self._refresh_derived(scope_id, scope_kind)

        if board is None:
            board = Leaderboard(scope_id=scope_id, scope_kind=scope_kind, last_updated=_now())
        if limit is not None:
            board = board.model_copy(update={"entries": board.entries[:limit]})
        return board

    async def _update_competitor(self, scope_id: str, competitor_id: str) -> Leaderboard:
        try:
            history = await self.store.find_submissions(scope_id, competitor_id=competitor_id)
            if not history:
                raise ValueError(f"no submissions for {competitor_id}")
            entry = aggregate_submissions(competitor_id, history)

            current = await self.store.get_leaderboard(scope_id, ScopeKind.CONTEST)
            entries = current.entries if current is not None else []
            board = Leaderboard(
                scope_id=scope_id,
                scope_kind=ScopeKind.CONTEST,
                entries=merge_entry(entries, entry),
                last_updated=_now(),
            )
            await self.store.put_leaderboard(board)
        except Exception as e:
            raise ComputeError(scope_id, f"update for {competitor_id} failed: {e}") from e

        logger.info(
            "Updated leaderboard %s for %s (score=%d, rank=%d)",
            scope_id,
            competitor_id,
            entry.score,
            _rank_of(board.entries, competitor_id),
        )
        return board

    async def _refresh_parent(self, contest_id: str) -> None:
        try:
            contest = await self.store.get_contest(contest_id)
            if contest is None or not contest.community_id:
                return
            await self._refresh_derived(contest.community_id, ScopeKind.COMMUNITY)
        except Exception:
            logger.exception("Could not refresh parent leaderboard of %s", contest_id)

    async def _refresh_derived(self, scope_id: str, scope_kind: ScopeKind) -> Leaderboard | None:
        try:
            board = await self._derive(scope_id, scope_kind)
            await self.store.put_leaderboard(board)
        except Exception:
            # 失敗時は最後に保存した順位表を返す
            logger.exception("Could not derive %s leaderboard %s", scope_kind.value, scope_id)
            return await self.store.get_leaderboard(scope_id, scope_kind)
        return board

    async def _derive(self, scope_id: str, scope_kind: ScopeKind) -> Leaderboard:
        if scope_kind is ScopeKind.COMMUNITY:
            contests = await self.store.list_contests(community_id=scope_id)
        elif scope_kind is ScopeKind.GLOBAL:
            contests = await self.store.list_contests()
        else:
            raise ValueError(f"{scope_kind.value} leaderboards are not derived")

        children = await asyncio.gather(
            *(self.store.get_leaderboard(c.id, ScopeKind.CONTEST) for c in contests)
        )
        entries = combine_entries(board.entries for board in children if board is not None)
        return Leaderboard(
            scope_id=scope_id if scope_kind is ScopeKind.COMMUNITY else GLOBAL_SCOPE_ID,
            scope_kind=scope_kind,
            entries=entries,
            last_updated=_now(),
        )


def _rank_of(entries: list[RankingEntry], competitor_id: str) -> int:
    for entry in entries:
        if entry.competitor_id == competitor_id:
            return entry.rank
    return 0


def _now() -> datetime:
    return datetime.now(timezone.utc)
