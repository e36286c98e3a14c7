"""Progress reconciliation for identity batches.

Two channels feed the reconciler: change events (pushed, may be dropped) and
periodic polls (complete but late). Both deliver row snapshots. Snapshots
are merged by id, the newest ``updated_at`` wins, and every aggregate is
recomputed from the merged rows. Seeing the same row through both channels
therefore never counts it twice.

Per (username, stage) the state moves idle → generating → settled. A stage
is settled once the expected number of rows exists and either every row has
gen_st='done' or status='failed', or the visible completions (status
completed with a URL) reach the expected total.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

import structlog

from idforge.models.identity import GenerationState, IdentitySource, IdentityStatus

logger = structlog.get_logger()

UNCATEGORIZED = "Uncategorized"

EXPECTED_TOTALS = {
    IdentitySource.ANCHOR.value: 10,
    IdentitySource.VARIANT.value: 5,
}


class StageState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SETTLED = "settled"


@dataclass
class StageProgress:
    """Derived view of one stage for one username."""

    username: str
    src: str
    state: StageState
    gen_id: str | None
    expected: int
    present: int
    completed: int
    failed: int
    processing: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class _TrackedStage:
    expected: int
    gen_id: str | None
    state: StageState = StageState.GENERATING
    # Batches that already existed when the stage was started
    stale_gen_ids: frozenset = frozenset()


def group_key(username: str | None) -> str:
    return username if username else UNCATEGORIZED


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return datetime.min
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)


def is_visible_complete(row: dict[str, Any]) -> bool:
    return row.get("status") == IdentityStatus.COMPLETED.value and bool(
        row.get("generated_image_url")
    )


class ProgressReconciler:
    """Merges identity snapshots and derives per-username stage progress."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._stages: dict[tuple[str, str], _TrackedStage] = {}

    # Snapshot intake

    def merge(self, rows: Iterable[dict[str, Any]]) -> None:
        """Merge row snapshots; an older snapshot never overwrites a newer one."""
        for row in rows:
            row_id = str(row["id"])
            current = self._rows.get(row_id)
            if current is None or _parse_ts(row.get("updated_at")) >= _parse_ts(
                current.get("updated_at")
            ):
                self._rows[row_id] = dict(row)
        self._refresh()

    def apply_poll(self, rows: Iterable[dict[str, Any]], username: str | None = None) -> None:
        """Merge a complete poll result and drop rows the poll no longer returns.

        Args:
            rows: Every row in scope, failed ones included
            username: Scope of the poll (None means every username)
        """
        rows = list(rows)
        seen = {str(row["id"]) for row in rows}
        for row_id, row in list(self._rows.items()):
            in_scope = username is None or row.get("instagram_username") == username
            if in_scope and row_id not in seen:
                del self._rows[row_id]
        self.merge(rows)

    def apply_event(self, event: dict[str, Any]) -> None:
        """Apply one change event from the event stream."""
        event_type = event.get("eventType")
        if event_type in ("INSERT", "UPDATE") and event.get("new"):
            self.merge([event["new"]])
        elif event_type == "DELETE":
            row_id = str((event.get("old") or {}).get("id"))
            if self._rows.pop(row_id, None) is not None:
                self._refresh()

    # Stage tracking

    def start(
        self, username: str | None, src: str, expected: int | None = None, gen_id: str | None = None
    ) -> None:
        """Mark a stage generating right after its request was sent.

        Null or empty usernames are never tracked. A stage already following
        a running batch keeps following it. Batches seen before the request
        are ignored unless they are still generating.
        """
        if not username:
            return
        current = self._stages.get((username, src))
        if (
            gen_id is None
            and current is not None
            and current.state == StageState.GENERATING
            and current.gen_id is not None
        ):
            logger.debug("progress.stage_already_tracked", username=username, src=src)
            return
        total = expected or EXPECTED_TOTALS.get(src, 0)
        seen = [
            row
            for row in self._rows.values()
            if row.get("instagram_username") == username and row.get("src") == src
        ]
        running = {
            str(row.get("gen_id"))
            for row in seen
            if row.get("gen_st") == GenerationState.GENERATING.value
        }
        stale = frozenset(str(row.get("gen_id")) for row in seen) - running
        self._stages[(username, src)] = _TrackedStage(
            expected=total, gen_id=gen_id, stale_gen_ids=stale if gen_id is None else frozenset()
        )
        logger.debug("progress.stage_started", username=username, src=src, expected=total)
        self._refresh()

    def restore_in_flight(self, rows: Iterable[dict[str, Any]]) -> None:
        """Seed generating stages from rows that still have gen_st='gen'.

        Used on load, so a batch started before the page or process was
        restarted is watched again.
        """
        rows = list(rows)
        self.merge(rows)
        in_flight: set[tuple[str, str, str]] = set()
        for row in self._rows.values():
            username = row.get("instagram_username")
            if row.get("gen_st") != GenerationState.GENERATING.value or not username:
                continue
            in_flight.add((username, row["src"], str(row.get("gen_id"))))
        for username, src, gen_id in in_flight:
            size = sum(1 for row in self._rows.values() if str(row.get("gen_id")) == gen_id)
            expected = EXPECTED_TOTALS.get(src, size)
            self._stages[(username, src)] = _TrackedStage(expected=expected, gen_id=gen_id)
        self._refresh()

    @property
    def is_generating(self) -> bool:
        return any(stage.state == StageState.GENERATING for stage in self._stages.values())

    def generating_usernames(self) -> list[str]:
        return sorted(
            {
                username
                for (username, _), stage in self._stages.items()
                if stage.state == StageState.GENERATING
            }
        )

    # Derived views

    def _batch_rows(
        self,
        username: str,
        src: str,
        gen_id: str | None,
        stale_gen_ids: frozenset = frozenset(),
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self._rows.values()
            if row.get("instagram_username") == username
            and row.get("src") == src
            and (gen_id is not None or str(row.get("gen_id")) not in stale_gen_ids)
        ]
        if gen_id is None:
            # Request still in flight: follow the newest batch seen for this stage
            newest = max(rows, key=lambda r: _parse_ts(r.get("created_at")), default=None)
            gen_id = str(newest["gen_id"]) if newest and newest.get("gen_id") else None
        if gen_id is None:
            return []
        return [row for row in rows if str(row.get("gen_id")) == gen_id]

    def _settled(self, rows: list[dict[str, Any]], expected: int) -> bool:
        every_row_finished = all(
            row.get("gen_st") == GenerationState.DONE.value
            or row.get("status") == IdentityStatus.FAILED.value
            for row in rows
        )
        if expected <= 0:
            # Batch size unknown: only the batch-level done signal settles it
            return bool(rows) and every_row_finished
        if len(rows) < expected:
            return False
        completed = sum(1 for row in rows if is_visible_complete(row))
        return every_row_finished or completed >= expected

    def _refresh(self) -> None:
        for (username, src), stage in self._stages.items():
            if stage.state != StageState.GENERATING:
                continue
            rows = self._batch_rows(username, src, stage.gen_id, stage.stale_gen_ids)
            if stage.gen_id is None and rows:
                stage.gen_id = str(rows[0].get("gen_id"))
            if self._settled(rows, stage.expected):
                stage.state = StageState.SETTLED
                logger.info("progress.stage_settled", username=username, src=src)

    def stage_progress(self, username: str, src: str) -> StageProgress:
        """Current progress of one stage, tracked or not."""
        stage = self._stages.get((username, src))
        if stage is not None:
            rows = self._batch_rows(username, src, stage.gen_id, stage.stale_gen_ids)
            state, gen_id, expected = stage.state, stage.gen_id, stage.expected
        else:
            rows = self._batch_rows(username, src, None)
            gen_id = str(rows[0].get("gen_id")) if rows else None
            if any(row.get("gen_st") == GenerationState.GENERATING.value for row in rows):
                state = StageState.GENERATING
            else:
                state = StageState.SETTLED if rows else StageState.IDLE
            expected = EXPECTED_TOTALS.get(src, len(rows))

        return StageProgress(
            username=username,
            src=src,
            state=state,
            gen_id=gen_id,
            expected=expected,
            present=len(rows),
            completed=sum(1 for row in rows if is_visible_complete(row)),
            failed=sum(1 for row in rows if row.get("status") == IdentityStatus.FAILED.value),
            processing=sum(
                1 for row in rows if row.get("status") == IdentityStatus.PROCESSING.value
            ),
        )

    def summary(self, username: str) -> dict[str, dict[str, Any]]:
        """Progress of every stage for a username, keyed by src."""
        return {
            src.value: self.stage_progress(username, src.value).to_dict() for src in IdentitySource
        }

    def groups(self) -> dict[str, list[dict[str, Any]]]:
        """Visible (non-failed) rows grouped by username, newest first."""
        grouped: dict[str, list[dict[str, Any]]] = {}
        rows = sorted(
            self._rows.values(), key=lambda r: _parse_ts(r.get("created_at")), reverse=True
        )
        for row in rows:
            if row.get("status") == IdentityStatus.FAILED.value:
                continue
            grouped.setdefault(group_key(row.get("instagram_username")), []).append(row)
        return grouped

    def primary_for(self, username: str) -> dict[str, Any] | None:
        for row in self._rows.values():
            if row.get("instagram_username") == username and row.get("is_primary"):
                return row
        return None
