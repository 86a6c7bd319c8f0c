from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from typing import Any

from .domain import RankingEntry, Submission, SubmissionStatus

SortKey = Callable[[RankingEntry], tuple[Any, ...]]


def contest_sort_key(entry: RankingEntry) -> tuple[int, int, float, int]:
    """コンテスト順位の並び順。

    得点(降順) → 解答数(降順) → 平均実行時間(昇順) → 提出数(昇順)。
    平均実行時間が未定義なら+∞として扱う。
    """

    average = entry.average_time_ms if entry.average_time_ms is not None else math.inf
    return (-entry.score, -entry.problems_solved, average, entry.submission_count)


def aggregate_sort_key(entry: RankingEntry) -> tuple[int, int, int]:
    """コミュニティ/全体順位の並び順。平均実行時間は使わない。"""

    return (-entry.score, -entry.problems_solved, entry.submission_count)


def compare_entries(a: RankingEntry, b: RankingEntry, key: SortKey = contest_sort_key) -> int:
    ka, kb = key(a), key(b)
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def assign_ranks(entries: Iterable[RankingEntry], key: SortKey = contest_sort_key) -> list[RankingEntry]:
    """並べ替えて1始まりの連番を振る。同点でも順位は重複しない。"""

    ordered = sorted(entries, key=key)
    return [entry.model_copy(update={"rank": i}) for i, entry in enumerate(ordered, start=1)]


def aggregate_submissions(competitor_id: str, submissions: list[Submission]) -> RankingEntry:
    if not submissions:
        raise ValueError("aggregate_submissions requires at least one submission")

    accepted = [s for s in submissions if s.status is SubmissionStatus.ACCEPTED]

    # 同じ問題の再AC分もそのまま加算する
    score = sum(s.score for s in accepted)
    problems_solved = len({s.problem_id for s in accepted})
    average_time = (
        sum(s.execution_time_ms for s in accepted) / len(accepted) if accepted else None
    )
    accuracy = len(accepted) / len(submissions) * 100

    return RankingEntry(
        competitor_id=competitor_id,
        score=score,
        problems_solved=problems_solved,
        submission_count=len(accepted),
        accuracy=accuracy,
        average_time_ms=average_time,
    )


def merge_entry(entries: list[RankingEntry], entry: RankingEntry) -> list[RankingEntry]:
    """同じ参加者の行を置き換え、無ければ末尾に追加して順位を振り直す。"""

    merged = [e for e in entries if e.competitor_id != entry.competitor_id]
    merged.append(entry)
    return assign_ranks(merged, contest_sort_key)


def rank_contest(
    submissions_by_competitor: dict[str, list[Submission]],
) -> list[RankingEntry]:
    entries = [
        aggregate_submissions(competitor_id, subs)
        for competitor_id, subs in sorted(submissions_by_competitor.items())
        if subs
    ]
    return assign_ranks(entries, contest_sort_key)


def combine_entries(children: Iterable[list[RankingEntry]]) -> list[RankingEntry]:
    """子コンテストの順位表を参加者ごとに合算する。"""

    totals: dict[str, RankingEntry] = {}
    for entries in children:
        for entry in entries:
            current = totals.get(entry.competitor_id)
            if current is None:
                totals[entry.competitor_id] = RankingEntry(
                    competitor_id=entry.competitor_id,
                    score=entry.score,
                    problems_solved=entry.problems_solved,
                    submission_count=entry.submission_count,
                    contests=1,
                )
                continue
            totals[entry.competitor_id] = current.model_copy(
                update={
                    "score": current.score + entry.score,
                    "problems_solved": current.problems_solved + entry.problems_solved,
                    "submission_count": current.submission_count + entry.submission_count,
                    "contests": current.contests + 1,
                }
            )

    return assign_ranks(
        (totals[cid] for cid in sorted(totals)), aggregate_sort_key
    )
