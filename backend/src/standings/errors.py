from __future__ import annotations


class StandingsError(Exception):
    pass


class ComputeError(StandingsError):
    """順位の集計・並べ替え・保存に失敗した。直前の順位表はそのまま残る。"""

    def __init__(self, scope_id: str, message: str) -> None:
        super().__init__(f"{scope_id}: {message}")
        self.scope_id = scope_id


class SubmissionStateError(StandingsError):
    def __init__(self, submission_id: str, status: str) -> None:
        super().__init__(f"submission {submission_id} is already judged ({status})")
        self.submission_id = submission_id
        self.status = status


class ItemTooLargeError(StandingsError):
    """順位表が1アイテムの上限を超えた。"""

    def __init__(self, scope_id: str, size: int, limit: int) -> None:
        super().__init__(f"leaderboard {scope_id} is {size} bytes (limit {limit})")
        self.scope_id = scope_id
        self.size = size
        self.limit = limit
