"""
Booking sweeper.

Runs as a background asyncio task on app startup. Every few seconds it
re-evaluates bookings against the clock:

1. confirmed bookings whose window covers now become ongoing;
2. ongoing bookings whose end has passed become finished;
3. confirmed bookings whose whole window passed unseen (downtime) are
   walked through ongoing to finished;
4. every room's occupancy is re-derived to correct drift.

Status is the only source of truth. Each row moves by compare-and-set, so a
repeated or concurrent sweep cannot fire a transition's side effects twice.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Sequence, Tuple

from . import lifecycle
from .errors import BookingEngineError, TransientStoreError, ValidationError
from .intervals import RoomKey
from .models import BookingStatus
from .repository import SweepCandidate

if TYPE_CHECKING:
    from .engine import BookingEngine

logger = logging.getLogger(__name__)

STALE_PATH: Sequence[Tuple[BookingStatus, BookingStatus]] = (
    (BookingStatus.CONFIRMED, BookingStatus.ONGOING),
    (BookingStatus.ONGOING, BookingStatus.FINISHED),
)


@dataclass
class SweepReport:
    started: List[int] = field(default_factory=list)
    finished: List[int] = field(default_factory=list)
    expired: List[int] = field(default_factory=list)
    rooms_corrected: List[RoomKey] = field(default_factory=list)
    failures: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.started or self.finished or self.expired or self.rooms_corrected)


class Sweeper:
    def __init__(self, engine: "BookingEngine"):
        self.engine = engine

    async def tick(self) -> SweepReport:
        """
        Run one full sweep at the engine clock's current time.

        Returns
        -------
        SweepReport
            Ids moved in each step, rooms whose occupancy was corrected, and
            the number of rows or steps that failed and will be retried.
        """
        now = self.engine.clock.now()
        report = SweepReport()

        for candidate in await self._select("start", report, lambda repo: repo.due_to_start(now)):
            if await self._advance(candidate, ((BookingStatus.CONFIRMED, BookingStatus.ONGOING),), now, report):
                report.started.append(candidate.booking_id)

        for candidate in await self._select("finish", report, lambda repo: repo.due_to_finish(now)):
            if await self._advance(candidate, ((BookingStatus.ONGOING, BookingStatus.FINISHED),), now, report):
                report.finished.append(candidate.booking_id)

        for candidate in await self._select("expire", report, lambda repo: repo.stale_confirmations(now)):
            if await self._advance(candidate, STALE_PATH, now, report):
                report.expired.append(candidate.booking_id)

        await self._reconcile_rooms(now, report)

        if report.changed:
            logger.info(
                "Sweep: %d started, %d finished, %d expired, %d rooms corrected",
                len(report.started),
                len(report.finished),
                len(report.expired),
                len(report.rooms_corrected),
            )
        return report

    async def _select(self, step: str, report: SweepReport, query) -> List[SweepCandidate]:
        try:
            async with self.engine.transaction() as repo:
                return await query(repo)
        except TransientStoreError as exc:
            logger.error("Sweep step %r skipped, retrying next cycle: %s", step, exc.detail)
            report.failures += 1
            return []

    async def _advance(
        self,
        candidate: SweepCandidate,
        path: Sequence[Tuple[BookingStatus, BookingStatus]],
        now: datetime,
        report: SweepReport,
    ) -> bool:
        """
        Move one booking along ``path`` if it is still due for it.

        A multi-step path is the stale-confirmation walk; it emits only the
        notification of its final status.

        Returns True only for the caller whose compare-and-set won; only that
        caller fires the side effects.
        """
        expected, target = path[0][0], path[-1][1]
        kind = lifecycle.TRANSITION_NOTIFICATIONS[target]
        key = RoomKey(candidate.building_number, candidate.room_number)
        try:
            for source, step_target in path:
                lifecycle.ensure_transition(source, step_target)
            async with self.engine.locks.hold(key):
                async with self.engine.transaction() as repo:
                    room = (await self.engine.lock_room_rows(repo, key))[key]
                    booking = await repo.get_booking(candidate.booking_id, for_update=True)
                    if booking is None or booking.status != expected:
                        return False
                    if booking.end_time <= booking.start_time:
                        raise ValidationError("end_time is not after start_time")
                    if len(path) > 1:
                        due = lifecycle.is_stale_confirmation(booking.status, booking.end_time, now)
                    else:
                        due = lifecycle.due_transition(booking.status, booking.start_time, booking.end_time, now) == target
                    if not due:
                        return False
                    if not await repo.compare_and_set_status(booking.id, expected, target, now):
                        return False
                    change = await self.engine.reproject_room(repo, room, now) if room is not None else None
        except BookingEngineError as exc:
            logger.warning("Skipping booking %s this sweep: %s", candidate.booking_id, exc.detail)
            report.failures += 1
            return False
        except Exception:
            # A row that cannot even be loaded must not stop the sweep.
            logger.exception("Skipping malformed booking %s", candidate.booking_id)
            report.failures += 1
            return False

        await self.engine.publish(kind, (booking.owner_id,), booking, [change])
        return True

    async def _reconcile_rooms(self, now: datetime, report: SweepReport) -> None:
        try:
            async with self.engine.transaction() as repo:
                keys = [RoomKey(r.building_number, r.room_number) for r in await repo.list_rooms()]
        except TransientStoreError as exc:
            logger.error("Room reconciliation skipped, retrying next cycle: %s", exc.detail)
            report.failures += 1
            return

        for key in keys:
            try:
                async with self.engine.locks.hold(key):
                    async with self.engine.transaction() as repo:
                        room = await repo.get_room(key.room_number, key.building_number, for_update=True)
                        if room is None:
                            continue
                        change = await self.engine.reproject_room(repo, room, now)
            except TransientStoreError as exc:
                logger.error("Could not reconcile room %s: %s", key, exc.detail)
                report.failures += 1
                continue
            if change.changed:
                report.rooms_corrected.append(key)
                await self.engine.best_effort(
                    "cache invalidation",
                    self.engine.cache.invalidate(key.room_number, key.building_number),
                )
                await self.engine.best_effort(
                    "room status broadcast",
                    self.engine.broadcaster.broadcast_room_status(
                        key.room_number, key.building_number, change.current.value
                    ),
                )

    async def run(self, interval_seconds: float) -> None:
        """
        Call ``tick()`` every ``interval_seconds`` until cancelled.

        Designed to be launched as an asyncio background task from the app
        lifespan. Runs once immediately to catch transitions missed while
        the process was down.
        """
        logger.info("Booking sweeper started (interval: %ss)", interval_seconds)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Sweep cycle failed")
            await asyncio.sleep(interval_seconds)
