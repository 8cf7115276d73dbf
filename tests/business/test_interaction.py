"""Drag-to-reschedule and drag-to-resize interaction tests."""
from datetime import datetime

import pytest

from business.errors import ValidationError
from business.interaction import (
    AppointmentSnapshot, CommitResult, DragPreview, Idle, InteractionEngine,
    RescheduleCommand, ResizeCommand, ResizePreview, RowBounds, TimelineArea,
    begin_drag, begin_resize, drag_move, end_drag, end_resize, resize_move,
    snap_duration
)
from business.timeline import TimelineWindow

WINDOW = TimelineWindow()
# 960 px wide area: one pixel per minute
AREA = TimelineArea(left=0, width=960)


def snapshot(appointment_id=1, worker_id=1, hour=9, minute=0, duration=60):
    return AppointmentSnapshot(
        id=appointment_id, worker_id=worker_id,
        start_time=datetime(2025, 11, 19, hour, minute),
        duration_minutes=duration,
    )


def rows(first, second):
    return [RowBounds(first, 0, 50), RowBounds(second, 50, 100)]


class TestSnapshot:

    def test_from_dict(self):
        snap = AppointmentSnapshot.of({
            "id": 3, "worker_id": 2, "start_time": "2025-11-19 09:00:00",
            "duration_minutes": 45,
        })
        assert snap.start_time == datetime(2025, 11, 19, 9, 0)
        assert snap.as_dict()["start_time"] == "2025-11-19 09:00:00"

    def test_hit_test(self):
        assert RowBounds(7, 10, 20).contains(10)
        assert not RowBounds(7, 10, 20).contains(20)


class TestDrag:

    def test_drag_to_other_row_and_time(self):
        state = begin_drag(snapshot(), pointer_x=190, block_left_px=180)
        assert state.grab_offset_px == 10
        state = drag_move(state, 300, 75, AREA, rows(1, 2), WINDOW)
        assert state.preview_time == "11:00:00"
        assert state.target_worker_id == 2

        command = end_drag(state)
        assert command == RescheduleCommand(
            appointment_id=1, new_start=datetime(2025, 11, 19, 11, 0), new_worker_id=2
        )

    def test_commit_uses_pointer_not_block_edge(self):
        # grabbed 50 px into the block, dropped at x=300 -> 11:00, not 10:10
        state = begin_drag(snapshot(), pointer_x=230, block_left_px=180)
        state = drag_move(state, 300, 10, AREA, rows(1, 2), WINDOW)
        assert end_drag(state).new_start == datetime(2025, 11, 19, 11, 0)

    def test_pointer_outside_rows_keeps_previous_target(self):
        state = begin_drag(snapshot(), 190, 180)
        state = drag_move(state, 300, 75, AREA, rows(1, 2), WINDOW)
        state = drag_move(state, 360, 500, AREA, rows(1, 2), WINDOW)
        assert state.target_worker_id == 2
        assert state.preview_time == "12:00:00"

    def test_release_without_target_is_abandoned(self):
        state = begin_drag(snapshot(), 190, 180)
        assert end_drag(state) is None
        state = drag_move(state, 300, 500, AREA, rows(1, 2), WINDOW)
        assert state.target_worker_id is None
        assert end_drag(state) is None

    def test_drop_is_clamped_to_window(self):
        state = begin_drag(snapshot(), 190, 180)
        state = drag_move(state, 2000, 10, AREA, rows(1, 2), WINDOW)
        assert state.preview_time == "22:00:00"

    def test_viewed_day_is_used(self):
        state = begin_drag(snapshot(), 190, 180, day=datetime(2025, 11, 20).date())
        state = drag_move(state, 300, 10, AREA, rows(1, 2), WINDOW)
        assert end_drag(state).new_start == datetime(2025, 11, 20, 11, 0)

    def test_transitions_ignore_foreign_states(self):
        assert drag_move(Idle(), 1, 1, AREA, [], WINDOW) == Idle()
        assert resize_move(Idle(), 1, WINDOW) == Idle()
        assert end_drag(Idle()) is None
        assert end_resize(Idle()) is None


class TestResize:

    def test_initial_geometry(self):
        state = begin_resize(snapshot(), pointer_x=500, area_width_px=960, window=WINDOW)
        assert state.initial_left_px == pytest.approx(180)
        assert state.initial_width_px == pytest.approx(60)

    def test_grow_and_snap(self):
        state = begin_resize(snapshot(), 500, 960, WINDOW)
        state = resize_move(state, 530, WINDOW)
        assert state.preview_minutes == pytest.approx(90)
        assert state.width_pct == pytest.approx(9.375)
        assert end_resize(state) == ResizeCommand(appointment_id=1, duration_minutes=90)

    def test_preview_is_smooth_but_commit_snaps(self):
        state = begin_resize(snapshot(), 500, 960, WINDOW)
        state = resize_move(state, 508, WINDOW)
        assert state.preview_minutes == pytest.approx(68)
        assert end_resize(state).duration_minutes == 75

    def test_shrinking_stops_at_minimum(self):
        state = begin_resize(snapshot(), 500, 960, WINDOW)
        state = resize_move(state, 100, WINDOW)
        assert state.preview_minutes == pytest.approx(15)
        assert end_resize(state).duration_minutes == 15

    def test_release_without_move_is_abandoned(self):
        state = begin_resize(snapshot(), 500, 960, WINDOW)
        assert end_resize(state) is None

    def test_zero_width_area(self):
        with pytest.raises(ValidationError):
            begin_resize(snapshot(), 500, 0, WINDOW)

    @pytest.mark.parametrize("minutes,expected", [
        (5, 15), (15, 15), (22, 15), (23, 30), (52.5, 60), (61, 60), (240, 240),
    ])
    def test_snap_duration(self, minutes, expected):
        assert snap_duration(minutes) == expected


class TestEngine:

    def test_drag_commit_moves_appointment(self, book, appointments, seeded):
        appt = book("2025-11-19 09:00:00")
        engine = InteractionEngine(appointments, WINDOW)
        engine.begin_drag(appt, pointer_x=190, block_left_px=180)
        engine.drag_move(300, 75, AREA, rows(seeded.ana, seeded.bruna))
        result = engine.finish()

        assert isinstance(result, CommitResult)
        assert result.ok
        assert result.appointment["start_time"] == "2025-11-19 11:00:00"
        assert result.appointment["worker_id"] == seeded.bruna
        assert isinstance(engine.state, Idle)

    def test_failed_commit_reverts_to_snapshot(self, book, appointments, seeded):
        appt = book("2025-11-19 09:00:00")
        book("2025-11-19 11:00:00", worker=seeded.bruna)
        engine = InteractionEngine(appointments, WINDOW)
        engine.begin_drag(appt, 190, 180)
        engine.drag_move(300, 75, AREA, rows(seeded.ana, seeded.bruna))
        result = engine.finish()

        assert not result.ok
        assert "already has appointment" in result.error
        assert result.appointment["start_time"] == "2025-11-19 09:00:00"
        assert result.appointment["worker_id"] == seeded.ana
        assert isinstance(engine.state, Idle)
        # storage unchanged
        assert appointments.get(appt["id"])["start_time"] == "2025-11-19 09:00:00"

    def test_resize_commit(self, book, appointments, temp_db):
        appt = book("2025-11-19 09:00:00")
        engine = InteractionEngine(appointments, WINDOW)
        engine.begin_resize(appt, 500, 960)
        assert isinstance(engine.state, ResizePreview)
        engine.resize_move(530)
        result = engine.finish()
        assert result.ok
        assert result.appointment["duration_minutes"] == 90
        assert temp_db.get_ledger_entry(appt["ledger_entry_id"])["end_time"] == "10:30"

    def test_finish_without_command(self, book, appointments):
        appt = book()
        engine = InteractionEngine(appointments, WINDOW)
        engine.begin_drag(appt, 190, 180)
        assert isinstance(engine.state, DragPreview)
        assert engine.finish() is None
        assert isinstance(engine.state, Idle)

    def test_abort(self, book, appointments):
        engine = InteractionEngine(appointments, WINDOW)
        engine.begin_resize(book(), 500, 960)
        engine.abort()
        assert isinstance(engine.state, Idle)

    def test_direct_commit_of_unknown_appointment(self, appointments, seeded):
        engine = InteractionEngine(appointments, WINDOW)
        result = engine.commit(ResizeCommand(appointment_id=999, duration_minutes=30))
        assert not result.ok
        assert "not found" in result.error
        assert isinstance(engine.state, Idle)
