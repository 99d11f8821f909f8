import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date as date_type, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from common.cache import NullRoomStatusCache, RoomStatusCache

from . import lifecycle
from .bulk import BULK_NOTES, BulkResult, RecurrenceRule, occurrences
from .clock import SystemClock
from .config import BOOKING_TIMEZONE
from .conflicts import ConflictDetector
from .errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from .intervals import Interval, RoomKey
from .locks import RoomLocks
from .models import Booking, BookingStatus, Room, RoomStatus
from .notifications import EVERYONE, LoggingNotificationSink, NotificationKind, NotificationSink, booking_payload
from .occupancy import project_status, reproject
from .realtime import Broadcaster, NullBroadcaster
from .repository import BookingRepository
from .sweeper import Sweeper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingMeta:
    """Immutable descriptive fields captured when a booking is created."""
    owner_name: Optional[str] = None
    subject: Optional[str] = None
    number_of_students: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RoomChange:
    key: RoomKey
    previous: RoomStatus
    current: RoomStatus

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class BookingEngine:
    """
    Conflict resolution and lifecycle for room bookings.

    Every mutation follows the same shape: take the room lock(s), run the
    pure decision and persist it in one transaction, commit, then fire the
    side effects (cache invalidation, notification, broadcast). The booking
    row is the source of truth; side effects are best-effort and the
    sweeper re-derives occupancy if one of them is lost.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Must be configured with ``expire_on_commit=False``.
    clock : object with ``now()``
        Source of the current time.
    cache : RoomStatusCache
        Room-status cache; a no-op cache is fine.
    notifier : NotificationSink
    broadcaster : Broadcaster
    timezone : str
        Zone used to derive a booking's calendar date from its start.
    """

    def __init__(
        self,
        session_factory,
        clock=None,
        cache: Optional[RoomStatusCache] = None,
        notifier: Optional[NotificationSink] = None,
        broadcaster: Optional[Broadcaster] = None,
        timezone: str = BOOKING_TIMEZONE,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.cache = cache or NullRoomStatusCache()
        self.notifier = notifier or LoggingNotificationSink()
        self.broadcaster = broadcaster or NullBroadcaster()
        self.timezone = timezone
        self.locks = RoomLocks()
        self.sweeper = Sweeper(self)

    # ---------- Plumbing ----------

    @asynccontextmanager
    async def transaction(self):
        """
        Yield a repository inside one committed-or-rolled-back transaction.

        Datastore failures surface as TransientStoreError.
        """
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    yield BookingRepository(db)
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"Datastore error: {exc.__class__.__name__}") from exc

    async def best_effort(self, what: str, awaitable) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("%s failed; state will be re-derived by the sweeper", what)

    async def publish(
        self,
        kind: Optional[NotificationKind],
        recipients: Iterable[str],
        booking: Booking,
        rooms: Sequence[Optional[RoomChange]] = (),
        **extra,
    ) -> None:
        """
        Fire the side effects of a committed change.

        Never raises: each failure is logged and swallowed.
        """
        payload = booking_payload(booking, **extra)
        for change in rooms:
            if change is None:
                continue
            await self.best_effort(
                "cache invalidation",
                self.cache.invalidate(change.key.room_number, change.key.building_number),
            )
            if change.changed:
                await self.best_effort(
                    "room status broadcast",
                    self.broadcaster.broadcast_room_status(
                        change.key.room_number, change.key.building_number, change.current.value
                    ),
                )
        if kind is not None:
            await self.best_effort(
                f"{kind.value} notification",
                self.notifier.notify(kind, tuple(recipients), payload),
            )
        await self.best_effort(
            "booking update broadcast",
            self.broadcaster.broadcast_booking_update(booking.owner_id, payload),
        )

    async def reproject_room(self, repo: BookingRepository, room: Room, now: datetime) -> RoomChange:
        previous, current = await reproject(repo, room, now)
        return RoomChange(RoomKey(room.building_number, room.room_number), previous, current)

    async def _room_or_error(self, repo: BookingRepository, key: RoomKey) -> Room:
        room = await repo.get_room(key.room_number, key.building_number, for_update=True)
        if room is None:
            raise ValidationError(f"Room {key.room_number} (Building {key.building_number}) not found")
        return room

    async def lock_room_rows(self, repo: BookingRepository, *keys: RoomKey) -> Dict[RoomKey, Optional[Room]]:
        """
        Row-lock the rooms in sorted key order, before any booking row.

        Every writer that touches more than one row goes through here first,
        so two transactions can never hold each other's rows across processes.
        """
        rooms = {}
        for key in sorted(set(keys)):
            rooms[key] = await repo.get_room(key.room_number, key.building_number, for_update=True)
        return rooms

    @staticmethod
    def _check_capacity(room: Room, number_of_students: Optional[int]) -> None:
        if number_of_students is None:
            return
        if number_of_students < 0:
            raise ValidationError("number_of_students cannot be negative")
        if room.capacity and number_of_students > room.capacity:
            raise ValidationError(
                f"Room {room.room_number} (Building {room.building_number}) holds "
                f"{room.capacity}, requested {number_of_students}"
            )

    async def _owned_booking_key(self, booking_id: int, owner_id: str) -> RoomKey:
        async with self.transaction() as repo:
            booking = await repo.get_booking(booking_id, owner_id=owner_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return RoomKey(booking.building_number, booking.room_number)

    async def _locked_owned_booking(self, repo: BookingRepository, booking_id: int, owner_id: str, key: RoomKey) -> Booking:
        booking = await repo.get_booking(booking_id, owner_id=owner_id, for_update=True)
        # The room could only differ if the row was replaced between reads.
        if booking is None or RoomKey(booking.building_number, booking.room_number) != key:
            raise NotFoundError("Booking not found")
        return booking

    async def _transition(self, repo: BookingRepository, booking: Booking, target: BookingStatus, now: datetime) -> None:
        lifecycle.ensure_transition(booking.status, target)
        if not await repo.compare_and_set_status(booking.id, booking.status, target, now):
            raise TransientStoreError("Booking changed concurrently, retry the request")

    # ---------- Create ----------

    async def _create_locked(
        self,
        key: RoomKey,
        day: date_type,
        window: Interval,
        owner_id: str,
        meta: BookingMeta,
    ) -> Tuple[Booking, RoomChange]:
        async with self.locks.hold(key):
            async with self.transaction() as repo:
                room = await self._room_or_error(repo, key)
                self._check_capacity(room, meta.number_of_students)
                await ConflictDetector(repo).ensure_free(key.room_number, key.building_number, day, window)

                now = self.clock.now()
                booking = Booking(
                    owner_id=owner_id,
                    owner_name=meta.owner_name,
                    room_number=key.room_number,
                    building_number=key.building_number,
                    date=day,
                    start_time=window.start,
                    end_time=window.end,
                    status=lifecycle.initial_status(window.start, window.end, now),
                    subject=meta.subject,
                    number_of_students=meta.number_of_students,
                    notes=meta.notes,
                    created_at=now,
                    updated_at=now,
                )
                await repo.add_booking(booking)
                change = await self.reproject_room(repo, room, now)
        return booking, change

    async def create_booking(
        self,
        room_number: str,
        building_number: int,
        date: Optional[date_type],
        start_time: datetime,
        end_time: datetime,
        owner_id: str,
        meta: Optional[BookingMeta] = None,
    ) -> Booking:
        """
        Book a room for ``[start_time, end_time)``.

        Parameters
        ----------
        room_number, building_number : str, int
            Target room.
        date : date or None
            Calendar date of the booking; derived from ``start_time`` in the
            engine's timezone when omitted.
        start_time, end_time : datetime
            Timezone-aware window.
        owner_id : str
            Requesting user.
        meta : BookingMeta
            Owner display name, subject, occupant count, notes.

        Returns
        -------
        Booking
            The new booking, status ``confirmed``.

        Raises
        ------
        ValidationError
            Bad times, unknown room, or too many occupants.
        ConflictError
            The window overlaps an active booking in the room.
        TransientStoreError
            The datastore failed; nothing was persisted.
        """
        window = Interval(start_time, end_time)
        meta = meta or BookingMeta()
        if date is None:
            date = window.start.astimezone(ZoneInfo(self.timezone)).date()
        key = RoomKey(int(building_number), str(room_number))

        booking, change = await self._create_locked(key, date, window, owner_id, meta)
        logger.info("Booking %s created for room %s by %s", booking.id, key, owner_id)
        await self.publish(NotificationKind.BOOKING_CREATED, (EVERYONE,), booking, [change])
        return booking

    # ---------- Cancel / delete ----------

    async def cancel_booking(self, booking_id: int, owner_id: str) -> Booking:
        """
        Cancel one of the caller's bookings.

        Raises
        ------
        NotFoundError
            No such booking for this owner.
        IllegalTransitionError
            The booking is already finished, cancelled or swapped.
        """
        key = await self._owned_booking_key(booking_id, owner_id)
        async with self.locks.hold(key):
            async with self.transaction() as repo:
                room = (await self.lock_room_rows(repo, key))[key]
                booking = await self._locked_owned_booking(repo, booking_id, owner_id, key)
                now = self.clock.now()
                await self._transition(repo, booking, BookingStatus.CANCELLED, now)
                change = await self.reproject_room(repo, room, now) if room is not None else None

        logger.info("Booking %s cancelled by %s", booking_id, owner_id)
        await self.publish(NotificationKind.BOOKING_CANCELLED, (EVERYONE,), booking, [change])
        return booking

    async def delete_booking(self, booking_id: int, owner_id: str) -> None:
        """
        Permanently remove one of the caller's bookings.

        Ongoing bookings cannot be deleted; cancel them instead. Occupancy is
        re-derived in the same transaction as the delete.
        """
        key = await self._owned_booking_key(booking_id, owner_id)
        async with self.locks.hold(key):
            async with self.transaction() as repo:
                room = (await self.lock_room_rows(repo, key))[key]
                booking = await self._locked_owned_booking(repo, booking_id, owner_id, key)
                if booking.status == BookingStatus.ONGOING:
                    raise ValidationError("An ongoing booking cannot be deleted; cancel it instead")
                now = self.clock.now()
                await repo.delete_booking(booking)
                change = await self.reproject_room(repo, room, now) if room is not None else None

        logger.info("Booking %s deleted by %s", booking_id, owner_id)
        await self.publish(NotificationKind.BOOKING_DELETED, (EVERYONE,), booking, [change], deleted=True)

    # ---------- Swap ----------

    async def swap_booking(
        self,
        source_id: int,
        dest_room_number: str,
        dest_building_number: int,
        owner_id: str,
        meta: Optional[BookingMeta] = None,
    ) -> Booking:
        """
        Move a booking to another room for the same window, atomically.

        The source is marked ``swapped`` and a new booking is created in the
        destination in one transaction, under both rooms' locks. If the
        window already covers now, the new booking starts out ``ongoing``.

        Raises
        ------
        NotFoundError
            The source does not exist or is not the caller's.
        ValidationError
            Destination is the source room, is unknown, or is too small;
            or the source is no longer active.
        ConflictError
            The destination is taken for the source's window.
        """
        meta = meta or BookingMeta()
        source_key = await self._owned_booking_key(source_id, owner_id)
        dest_key = RoomKey(int(dest_building_number), str(dest_room_number))
        if dest_key == source_key:
            raise ValidationError("You cannot swap to the same room you are currently in")

        async with self.locks.hold(source_key, dest_key):
            async with self.transaction() as repo:
                rooms = await self.lock_room_rows(repo, source_key, dest_key)
                dest_room = rooms[dest_key]
                if dest_room is None:
                    raise ValidationError(
                        f"Room {dest_key.room_number} (Building {dest_key.building_number}) not found"
                    )
                source_room = rooms[source_key]
                source = await self._locked_owned_booking(repo, source_id, owner_id, source_key)
                lifecycle.ensure_transition(source.status, BookingStatus.SWAPPED)

                number_of_students = (
                    meta.number_of_students
                    if meta.number_of_students is not None
                    else source.number_of_students
                )
                self._check_capacity(dest_room, number_of_students)

                window = Interval(source.start_time, source.end_time)
                await ConflictDetector(repo).ensure_free(
                    dest_key.room_number, dest_key.building_number, source.date, window
                )

                now = self.clock.now()
                replacement = Booking(
                    owner_id=owner_id,
                    owner_name=meta.owner_name or source.owner_name,
                    room_number=dest_key.room_number,
                    building_number=dest_key.building_number,
                    date=source.date,
                    start_time=source.start_time,
                    end_time=source.end_time,
                    status=lifecycle.initial_status(window.start, window.end, now, carry_over=True),
                    subject=meta.subject or source.subject,
                    number_of_students=number_of_students,
                    notes=meta.notes or source.notes,
                    swapped_from_id=source.id,
                    created_at=now,
                    updated_at=now,
                )
                await repo.add_booking(replacement)
                await self._transition(repo, source, BookingStatus.SWAPPED, now)

                changes = [await self.reproject_room(repo, dest_room, now)]
                if source_room is not None:
                    changes.append(await self.reproject_room(repo, source_room, now))

        logger.info("Booking %s swapped from %s to %s as %s", source_id, source_key, dest_key, replacement.id)
        await self.publish(
            NotificationKind.BOOKING_SWAPPED,
            (EVERYONE,),
            replacement,
            changes,
            from_room_number=source_key.room_number,
            from_building_number=source_key.building_number,
        )
        await self.publish(None, (), source)
        return replacement

    # ---------- Bulk ----------

    async def expand_bulk_schedule(self, rule: RecurrenceRule) -> BulkResult:
        """
        Create one booking per occurrence of ``rule``, skipping conflicts.

        Each occurrence goes through the same locked detect-then-create as
        ``create_booking``. A conflict or a datastore failure skips that
        date and the batch goes on.

        Returns
        -------
        BulkResult
            Created bookings and ``(date, reason)`` for every skip.
        """
        key = RoomKey(int(rule.building_number), str(rule.room_number))
        meta = BookingMeta(
            owner_name=rule.owner_name,
            subject=rule.subject,
            notes=rule.notes or BULK_NOTES,
        )
        result = BulkResult()
        for day, window in occurrences(rule, self.timezone):
            try:
                booking, change = await self._create_locked(key, day, window, rule.owner_id, meta)
            except ConflictError as exc:
                result.skipped.append((day, exc.detail))
                continue
            except TransientStoreError as exc:
                logger.warning("Bulk occurrence %s for room %s not created: %s", day, key, exc.detail)
                result.skipped.append((day, exc.detail))
                continue
            result.created.append(booking)
            await self.publish(NotificationKind.BOOKING_CREATED, (EVERYONE,), booking, [change])

        logger.info(
            "Bulk schedule for room %s: %d created, %d skipped",
            key,
            result.created_count,
            result.skipped_count,
        )
        return result

    # ---------- Sweeper ----------

    async def tick(self):
        """Run one sweep cycle. Idempotent."""
        return await self.sweeper.tick()

    # ---------- Occupancy / room directory ----------

    async def project_status(self, room_number: str, building_number: int) -> RoomStatus:
        """
        Current display status of a room, read through the cache.

        A miss is read and written back under the room lock, so a fill can
        never land after a writer's invalidation with pre-write state.
        """
        cached = await self._cached_status(room_number, building_number)
        if cached is not None:
            return cached

        key = RoomKey(int(building_number), str(room_number))
        async with self.locks.hold(key):
            async with self.transaction() as repo:
                room = await repo.get_room(key.room_number, key.building_number)
                if room is None:
                    raise ValidationError(f"Room {room_number} (Building {building_number}) not found")
                now = self.clock.now()
                bookings = await repo.bookings_covering(room.room_number, room.building_number, now)
                status = project_status(room.admin_status, bookings, now)

            await self.best_effort(
                "cache fill",
                self.cache.set_room_status(key.room_number, key.building_number, status.value),
            )
        return status

    async def _cached_status(self, room_number: str, building_number: int) -> Optional[RoomStatus]:
        try:
            value = await self.cache.get_room_status(str(room_number), int(building_number))
        except Exception:
            logger.exception("cache read failed; falling back to the datastore")
            return None
        if value is None:
            return None
        try:
            return RoomStatus(value)
        except ValueError:
            return None

    async def set_room_maintenance(self, room_number: str, building_number: int, on: bool) -> RoomStatus:
        """
        Flip the administrative Maintenance flag and re-derive occupancy.
        """
        key = RoomKey(int(building_number), str(room_number))
        async with self.locks.hold(key):
            async with self.transaction() as repo:
                room = await self._room_or_error(repo, key)
                room.admin_status = RoomStatus.MAINTENANCE if on else RoomStatus.AVAILABLE
                change = await self.reproject_room(repo, room, self.clock.now())

        logger.info("Room %s maintenance %s", key, "on" if on else "off")
        await self.best_effort("cache invalidation", self.cache.invalidate(key.room_number, key.building_number))
        if change.changed:
            await self.best_effort(
                "room status broadcast",
                self.broadcaster.broadcast_room_status(key.room_number, key.building_number, change.current.value),
            )
        return change.current

    # ---------- Queries ----------

    async def available_rooms(
        self,
        date: Optional[date_type],
        start_time: datetime,
        end_time: datetime,
        building_number: Optional[int] = None,
    ) -> List[Room]:
        """Rooms free for the whole window and not under Maintenance."""
        window = Interval(start_time, end_time)
        free = []
        async with self.transaction() as repo:
            detector = ConflictDetector(repo)
            for room in await repo.list_rooms(building_number):
                if room.admin_status == RoomStatus.MAINTENANCE:
                    continue
                if await detector.find_conflict(room.room_number, room.building_number, date, window) is None:
                    free.append(room)
        return free

    async def list_bookings(self, owner_id: str) -> Sequence[Booking]:
        async with self.transaction() as repo:
            return await repo.bookings_for_owner(owner_id)

    async def active_bookings(self, building_number: int) -> Sequence[Booking]:
        async with self.transaction() as repo:
            return await repo.active_in_building(int(building_number), self.clock.now())
