"""Progress reconciler tests.

Tests focus on merging the event and poll channels:
- A row seen through both channels is counted once
- Newest updated_at wins
- Stage settle rules (all rows finished, or enough visible completions)
- Stages started while older batches exist ignore the older finished rows
"""

from idforge.services.progress import UNCATEGORIZED, ProgressReconciler, StageState

EARLY = "2026-10-18T10:00:00"
LATE = "2026-10-18T10:05:00"


def row(
    gen_id: str,
    index: int,
    username: str | None = "alice",
    src: str = "anc",
    status: str = "processing",
    gen_st: str | None = "gen",
    url: str | None = None,
    updated_at: str = EARLY,
    created_at: str = EARLY,
) -> dict:
    return {
        "id": f"{gen_id}-{index}",
        "name": f"Anchor {index + 1} - Oct 18, 2026",
        "status": status,
        "src": src,
        "gen_id": gen_id,
        "gen_st": gen_st,
        "generated_image_url": url,
        "instagram_username": username,
        "is_primary": False,
        "created_at": created_at,
        "updated_at": updated_at,
    }


def completed(gen_id: str, index: int, gen_st: str = "gen", **kwargs) -> dict:
    return row(
        gen_id,
        index,
        status="completed",
        gen_st=gen_st,
        url=f"https://cdn.test/{gen_id}_{index}.jpg",
        updated_at=LATE,
        **kwargs,
    )


def insert(record: dict) -> dict:
    return {"eventType": "INSERT", "table": "identities", "new": record, "old": {}}


def update(record: dict) -> dict:
    return {"eventType": "UPDATE", "table": "identities", "new": record, "old": {}}


def test_row_seen_through_event_and_poll_is_counted_once():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "anc")
    rows = [row("g1", i) for i in range(10)]

    for record in rows:
        reconciler.apply_event(insert(record))
    reconciler.apply_poll(rows, username="alice")

    progress = reconciler.stage_progress("alice", "anc")
    assert progress.present == 10
    assert progress.processing == 10
    assert progress.state == StageState.GENERATING


def test_older_snapshot_never_overwrites_newer():
    reconciler = ProgressReconciler()
    reconciler.merge([completed("g1", 0)])

    reconciler.merge([row("g1", 0, updated_at=EARLY)])

    assert reconciler.stage_progress("alice", "anc").completed == 1


def test_settles_when_every_row_is_done_or_failed():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "anc")
    reconciler.merge([row("g1", i) for i in range(10)])

    finished = [completed("g1", i, gen_st="done") for i in range(9)]
    finished.append(row("g1", 9, status="failed", updated_at=LATE))
    for record in finished:
        reconciler.apply_event(update(record))

    progress = reconciler.stage_progress("alice", "anc")
    assert progress.state == StageState.SETTLED
    assert (progress.completed, progress.failed) == (9, 1)
    assert reconciler.generating_usernames() == []


def test_settles_on_visible_completions_before_done_flag():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "var")

    reconciler.merge([completed("g1", i, src="var") for i in range(5)])

    assert reconciler.stage_progress("alice", "var").state == StageState.SETTLED


def test_completed_rows_without_url_do_not_count():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "var")

    reconciler.merge([row("g1", i, src="var", status="completed") for i in range(5)])

    progress = reconciler.stage_progress("alice", "var")
    assert progress.completed == 0
    assert progress.state == StageState.GENERATING


def test_does_not_settle_before_all_rows_exist():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "anc")

    reconciler.merge([completed("g1", i, gen_st="done") for i in range(4)])

    progress = reconciler.stage_progress("alice", "anc")
    assert progress.present == 4
    assert progress.state == StageState.GENERATING


def test_start_ignores_batches_that_already_existed():
    reconciler = ProgressReconciler()
    reconciler.merge([completed("old", i, gen_st="done") for i in range(10)])

    reconciler.start("alice", "anc")

    progress = reconciler.stage_progress("alice", "anc")
    assert progress.state == StageState.GENERATING
    assert progress.present == 0

    reconciler.merge([row("new", i, created_at=LATE) for i in range(10)])
    progress = reconciler.stage_progress("alice", "anc")
    assert progress.gen_id == "new"
    assert progress.present == 10

    reconciler.merge([completed("new", i, gen_st="done", created_at=LATE) for i in range(10)])
    assert reconciler.stage_progress("alice", "anc").state == StageState.SETTLED


def test_start_without_username_is_not_tracked():
    reconciler = ProgressReconciler()

    reconciler.start(None, "sd", expected=3)
    reconciler.start("", "sd", expected=3)

    assert not reconciler.is_generating


def test_stage_without_known_size_settles_on_done_signal():
    reconciler = ProgressReconciler()
    reconciler.start("alice", "sd")

    reconciler.apply_poll([completed("g1", i, src="sd") for i in range(3)], username="alice")
    assert reconciler.stage_progress("alice", "sd").state == StageState.GENERATING

    reconciler.apply_poll(
        [completed("g1", i, src="sd", gen_st="done") for i in range(3)], username="alice"
    )
    progress = reconciler.stage_progress("alice", "sd")
    assert progress.state == StageState.SETTLED
    assert progress.completed == 3


def test_start_keeps_following_a_restored_batch():
    reconciler = ProgressReconciler()
    reconciler.restore_in_flight([row("g1", i) for i in range(10)])

    reconciler.start("alice", "anc")

    progress = reconciler.stage_progress("alice", "anc")
    assert progress.state == StageState.GENERATING
    assert (progress.gen_id, progress.present) == ("g1", 10)

    reconciler.apply_poll([completed("g1", i, gen_st="done") for i in range(10)], username="alice")
    assert reconciler.stage_progress("alice", "anc").state == StageState.SETTLED


def test_start_follows_a_batch_that_is_still_generating():
    reconciler = ProgressReconciler()
    reconciler.merge([completed("old", i, gen_st="done") for i in range(10)])
    reconciler.merge([row("running", i, created_at=LATE) for i in range(10)])

    reconciler.start("alice", "anc")

    assert reconciler.stage_progress("alice", "anc").gen_id == "running"
    reconciler.merge(
        [completed("running", i, gen_st="done", created_at=LATE) for i in range(10)]
    )
    assert reconciler.stage_progress("alice", "anc").state == StageState.SETTLED


def test_restore_in_flight_rewatches_running_batches():
    reconciler = ProgressReconciler()

    reconciler.restore_in_flight(
        [row("g1", i) for i in range(3)]
        + [completed("g1", i) for i in range(3, 10)]
        + [completed("g0", i, src="sd", gen_st="done") for i in range(2)]
    )

    assert reconciler.generating_usernames() == ["alice"]
    anchor = reconciler.stage_progress("alice", "anc")
    assert anchor.state == StageState.GENERATING
    assert (anchor.present, anchor.completed, anchor.processing) == (10, 7, 3)
    assert reconciler.stage_progress("alice", "sd").state == StageState.SETTLED
    assert reconciler.stage_progress("alice", "var").state == StageState.IDLE


def test_restore_in_flight_uses_batch_size_for_seedream():
    reconciler = ProgressReconciler()

    reconciler.restore_in_flight([row("g1", i, src="sd") for i in range(3)])
    assert reconciler.stage_progress("alice", "sd").expected == 3

    reconciler.apply_poll([completed("g1", i, src="sd") for i in range(3)], username="alice")
    assert reconciler.generating_usernames() == []


def test_poll_drops_deleted_rows_within_scope_only():
    reconciler = ProgressReconciler()
    reconciler.merge([row("g1", 0), row("g1", 1), row("g2", 0, username="bob")])

    reconciler.apply_poll([row("g1", 0)], username="alice")

    assert reconciler.stage_progress("alice", "anc").present == 1
    assert reconciler.stage_progress("bob", "anc").present == 1


def test_delete_event_removes_row():
    reconciler = ProgressReconciler()
    reconciler.merge([row("g1", 0), row("g1", 1)])

    reconciler.apply_event({"eventType": "DELETE", "new": {}, "old": {"id": "g1-0"}})

    assert reconciler.stage_progress("alice", "anc").present == 1


def test_groups_hide_failed_rows_and_collect_uncategorized():
    reconciler = ProgressReconciler()
    reconciler.merge(
        [
            completed("g1", 0, src="sd", gen_st="done"),
            row("g1", 1, src="sd", status="failed", gen_st="done"),
            completed("g2", 0, src="sd", gen_st="done", username=None),
        ]
    )

    groups = reconciler.groups()

    assert set(groups) == {"alice", UNCATEGORIZED}
    assert [r["id"] for r in groups["alice"]] == ["g1-0"]


def test_summary_and_primary():
    reconciler = ProgressReconciler()
    primary = completed("g1", 2, gen_st="done")
    primary["is_primary"] = True
    reconciler.merge([completed("g1", i, gen_st="done") for i in range(2)] + [primary])

    summary = reconciler.summary("alice")

    assert set(summary) == {"sd", "anc", "var"}
    assert summary["anc"]["state"] == "settled"
    assert summary["anc"]["completed"] == 3
    assert reconciler.primary_for("alice")["id"] == "g1-2"
    assert reconciler.primary_for("bob") is None
