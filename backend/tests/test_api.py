from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from standings.config import Settings
from standings.domain import ScopeKind, SubmissionStatus
from standings.main import create_app
from standings.store import InMemoryStore


class _AllPass(random.Random):
    def randint(self, a: int, b: int) -> int:
        return b


def _client(store: InMemoryStore) -> TestClient:
    app = create_app(settings=Settings(judge_delay_seconds=0), store=store, rng=_AllPass())
    return TestClient(app)


def _create_contest(
    client: TestClient,
    community_id: str | None = None,
    starts_in: timedelta = timedelta(hours=-1),
    lasts: timedelta = timedelta(hours=2),
    title: str = "Weekly",
) -> str:
    start = datetime.now(timezone.utc) + starts_in
    resp = client.post(
        "/api/contests",
        json={
            "title": title,
            "community_id": community_id,
            "problems": [{"title": "Two Sum", "points": 100, "test_case_count": 2}],
            "start_date": start.isoformat(),
            "end_date": (start + lasts).isoformat(),
        },
    )
    assert resp.status_code == 200
    return resp.json()["contest_id"]


def _problem_id(client: TestClient, contest_id: str) -> str:
    return client.get(f"/api/contests/{contest_id}").json()["problems"][0]["id"]


def _submit(client: TestClient, contest_id: str, competitor_id: str, problem_id: str):
    return client.post(
        f"/api/contests/{contest_id}/submissions",
        json={
            "competitor_id": competitor_id,
            "problem_id": problem_id,
            "language": "python",
            "code": "x",
        },
    )


def test_create_contest_initializes_empty_leaderboard():
    store = InMemoryStore.create()
    with _client(store) as client:
        contest_id = _create_contest(client)

        resp = client.get(f"/api/leaderboards/contests/{contest_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["scope_kind"] == "contest"
        assert body["entries"] == []

    assert asyncio.run(store.get_leaderboard(contest_id, ScopeKind.CONTEST)) is not None


def test_create_contest_rejects_reversed_period():
    with _client(InMemoryStore.create()) as client:
        start = datetime.now(timezone.utc)
        resp = client.post(
            "/api/contests",
            json={
                "title": "t",
                "problems": [{"title": "A", "points": 1, "test_case_count": 1}],
                "start_date": start.isoformat(),
                "end_date": (start - timedelta(hours=1)).isoformat(),
            },
        )
        assert resp.status_code == 422


def test_unknown_contest_and_problem_are_404():
    store = InMemoryStore.create()
    with _client(store) as client:
        assert client.get("/api/contests/nope").status_code == 404
        assert client.get("/api/contests/nope/submissions").status_code == 404
        assert client.get("/api/leaderboards/contests/nope").status_code == 404
        assert client.post("/api/leaderboards/contests/nope/recalculate").status_code == 404
        assert client.post("/api/contests/nope/join", json={"competitor_id": "u1"}).status_code == 404

        contest_id = _create_contest(client)
        client.post(f"/api/contests/{contest_id}/join", json={"competitor_id": "u1"})
        assert _submit(client, contest_id, "u1", "nope").status_code == 404


def test_submission_outside_contest_period_is_400():
    """開催期間外の提出は受け付けない。"""

    store = InMemoryStore.create()
    with _client(store) as client:
        upcoming = _create_contest(client, starts_in=timedelta(hours=1))
        finished = _create_contest(client, starts_in=timedelta(hours=-3))

        assert client.post(
            f"/api/contests/{upcoming}/join", json={"competitor_id": "u1"}
        ).status_code == 200
        resp = _submit(client, upcoming, "u1", _problem_id(client, upcoming))
        assert resp.status_code == 400

        resp = _submit(client, finished, "u1", _problem_id(client, finished))
        assert resp.status_code == 400

    assert asyncio.run(store.find_submissions(upcoming)) == []


def test_submission_from_non_participant_is_403():
    """参加していない人の提出は弾き、順位表にも載せない。"""

    store = InMemoryStore.create()
    with _client(store) as client:
        contest_id = _create_contest(client)
        resp = _submit(client, contest_id, "stranger", _problem_id(client, contest_id))
        assert resp.status_code == 403

    assert asyncio.run(store.find_submissions(contest_id)) == []
    board = asyncio.run(store.get_leaderboard(contest_id, ScopeKind.CONTEST))
    assert board.entries == []


def test_join_and_leave_rules():
    store = InMemoryStore.create()
    with _client(store) as client:
        upcoming = _create_contest(client, starts_in=timedelta(hours=1))
        running = _create_contest(client)
        finished = _create_contest(client, starts_in=timedelta(hours=-3))
        body = {"competitor_id": "u1"}

        resp = client.post(f"/api/contests/{upcoming}/join", json=body)
        assert resp.status_code == 200
        assert resp.json()["participants"] == ["u1"]
        assert client.post(f"/api/contests/{upcoming}/join", json=body).status_code == 400

        resp = client.post(f"/api/contests/{upcoming}/leave", json=body)
        assert resp.status_code == 200
        assert resp.json()["participants"] == []
        assert client.post(f"/api/contests/{upcoming}/leave", json=body).status_code == 400

        assert client.post(f"/api/contests/{finished}/join", json=body).status_code == 400

        assert client.post(f"/api/contests/{running}/join", json=body).status_code == 200
        assert client.post(f"/api/contests/{running}/leave", json=body).status_code == 400


def test_list_contests_by_status():
    with _client(InMemoryStore.create()) as client:
        upcoming = _create_contest(client, starts_in=timedelta(hours=1), title="next")
        running = _create_contest(client, community_id="com1", title="now")
        finished = _create_contest(client, starts_in=timedelta(hours=-3), title="past")

        assert [c["id"] for c in client.get("/api/contests").json()] == [
            finished,
            running,
            upcoming,
        ]
        for status, expected in (("active", running), ("upcoming", upcoming), ("completed", finished)):
            body = client.get("/api/contests", params={"status": status}).json()
            assert [c["id"] for c in body] == [expected]

        body = client.get("/api/contests", params={"community_id": "com1"}).json()
        assert [c["id"] for c in body] == [running]
        assert client.get("/api/contests", params={"status": "bogus"}).status_code == 422


def test_list_submissions_filters():
    store = InMemoryStore.create()
    with _client(store) as client:
        contest_id = _create_contest(client)
        problem_id = _problem_id(client, contest_id)
        for cid in ("u1", "u2"):
            client.post(f"/api/contests/{contest_id}/join", json={"competitor_id": cid})
        first = _submit(client, contest_id, "u1", problem_id).json()["submission_id"]
        second = _submit(client, contest_id, "u1", problem_id).json()["submission_id"]
        _submit(client, contest_id, "u2", problem_id)

    with _client(store) as client:
        url = f"/api/contests/{contest_id}/submissions"
        assert len(client.get(url).json()) == 3

        mine = client.get(url, params={"competitor_id": "u1"}).json()
        assert [s["id"] for s in mine] == [second, first]

        by_problem = client.get(url, params={"problem_id": problem_id, "competitor_id": "u2"}).json()
        assert [s["competitor_id"] for s in by_problem] == ["u2"]
        assert client.get(url, params={"problem_id": "other"}).json() == []

        accepted = client.get(url, params={"status": "accepted"}).json()
        assert len(accepted) == 3
        assert client.get(url, params={"status": "wrong_answer"}).json() == []


def test_submission_is_judged_and_ranked():
    """提出→判定→順位表反映までの流れ。"""

    store = InMemoryStore.create()
    with _client(store) as client:
        contest_id = _create_contest(client, community_id="com1")
        client.post(f"/api/contests/{contest_id}/join", json={"competitor_id": "u1"})

        resp = _submit(client, contest_id, "u1", _problem_id(client, contest_id))
        assert resp.status_code == 201
        submission_id = resp.json()["submission_id"]

    # シャットダウン時に判定タスクの完了を待つ
    judged = asyncio.run(store.get_submission(contest_id, submission_id))
    assert judged.status is SubmissionStatus.ACCEPTED

    with _client(store) as client:
        body = client.get(f"/api/contests/{contest_id}/submissions/{submission_id}").json()
        assert body["status"] == "accepted"

        board = client.get(f"/api/leaderboards/contests/{contest_id}").json()
        assert [(e["competitor_id"], e["score"], e["rank"]) for e in board["entries"]] == [
            ("u1", 100, 1)
        ]

        community = client.get("/api/leaderboards/communities/com1").json()
        assert [e["competitor_id"] for e in community["entries"]] == ["u1"]

        overall = client.get("/api/leaderboards/global", params={"limit": 10}).json()
        assert overall["scope_id"] == "global"
        assert overall["entries"][0]["score"] == 100

        assert client.post(f"/api/leaderboards/contests/{contest_id}/recalculate").json() == {
            "ok": True
        }
        assert client.delete(f"/api/contests/{contest_id}").json() == {"ok": True}
        assert client.delete(f"/api/contests/{contest_id}").status_code == 404


def test_health():
    with _client(InMemoryStore.create()) as client:
        assert client.get("/health").json() == {"ok": True, "store": "inmemory"}
