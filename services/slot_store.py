import logging
from datetime import date as date_cls, datetime, time, timedelta

from sqlalchemy import and_, delete, or_, select, update

from models.booking import Booking, BookingStatus
from models.slot import Slot, SlotStatus
from services.errors import InvalidRequest, NotFound, SlotLocked, Unauthorized
from utils.money import to_amount
from utils.timeutil import naive_utc

logger = logging.getLogger(__name__)

AVAILABLE = SlotStatus.AVAILABLE.value
HELD = SlotStatus.HELD.value
BOOKED = SlotStatus.BOOKED.value

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
CONFLICT_STRATEGIES = ("skip", "overwrite")


def _minutes(t) -> int:
    return t.hour * 60 + t.minute


def _time_from_minutes(total: int):
    return time(total // 60, total % 60)


class SlotStore:
    """Slot rows are the serialization point for availability.

    Every state change is a single conditional UPDATE whose WHERE clause
    states the expected prior state; callers compare the affected row
    count against what they asked for. Nothing here commits: the caller
    owns the transaction boundary.
    """

    def __init__(self, session, clock, hold_ttl_seconds: int = 600):
        self.session = session
        self.clock = clock
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)

    def _now(self) -> datetime:
        return naive_utc(self.clock())

    def _update(self, *criteria, **values) -> int:
        stmt = (
            update(Slot)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    # ---------- reads ----------
    def get(self, slot_id: int):
        return self.session.execute(
            select(Slot).where(Slot.id == slot_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_many(self, slot_ids):
        rows = self.session.execute(
            select(Slot).where(Slot.id.in_(slot_ids)).execution_options(populate_existing=True)
        ).scalars().all()
        return sorted(rows, key=lambda s: slot_ids.index(s.id))

    def unclaimable(self, slot_ids, user_id: int):
        """Ids out of ``slot_ids`` that ``user_id`` could not claim right now."""
        now = self._now()
        claimable = set(self.session.execute(
            select(Slot.id).where(Slot.id.in_(slot_ids), self._claimable(user_id, now))
        ).scalars().all())
        return [sid for sid in slot_ids if sid not in claimable]

    @staticmethod
    def _claimable(user_id: int, now: datetime):
        return or_(
            Slot.status == AVAILABLE,
            and_(Slot.status == HELD, Slot.held_by == user_id),
            and_(Slot.status == HELD, Slot.hold_expires_at <= now),
        )

    # ---------- compare-and-swap transitions ----------
    def claim(self, slot_ids, user_id: int) -> int:
        """available (or re-held by the same user, or lapsed) -> held."""
        now = self._now()
        return self._update(
            Slot.id.in_(slot_ids),
            self._claimable(user_id, now),
            status=HELD,
            held_by=user_id,
            hold_expires_at=now + self.hold_ttl,
            is_booked=False,
        )

    def refresh_hold(self, slot_ids, user_id: int) -> int:
        now = self._now()
        return self._update(
            Slot.id.in_(slot_ids),
            Slot.status == HELD,
            Slot.held_by == user_id,
            hold_expires_at=now + self.hold_ttl,
        )

    def release_hold(self, slot_ids, user_id: int) -> int:
        return self._update(
            Slot.id.in_(slot_ids),
            Slot.status == HELD,
            Slot.held_by == user_id,
            status=AVAILABLE,
            held_by=None,
            hold_expires_at=None,
            is_booked=False,
        )

    def mark_booked(self, slot_ids, user_id: int) -> int:
        return self._update(
            Slot.id.in_(slot_ids),
            Slot.status == HELD,
            Slot.held_by == user_id,
            status=BOOKED,
            hold_expires_at=None,
            is_booked=True,
        )

    def book_directly(self, slot_id: int) -> int:
        return self._update(
            Slot.id == slot_id,
            Slot.status == AVAILABLE,
            status=BOOKED,
            held_by=None,
            hold_expires_at=None,
            is_booked=True,
        )

    def release(self, slot_id: int, holder_id: int) -> int:
        """booked, or held by ``holder_id`` -> available."""
        return self._update(
            Slot.id == slot_id,
            or_(Slot.status == BOOKED, and_(Slot.status == HELD, Slot.held_by == holder_id)),
            status=AVAILABLE,
            held_by=None,
            hold_expires_at=None,
            is_booked=False,
        )

    def release_expired_holds(self, turf_id=None) -> int:
        """Free lapsed holds and expire the pending bookings left on them."""
        now = self._now()
        q = select(Slot.id).where(Slot.status == HELD, Slot.hold_expires_at <= now)
        if turf_id is not None:
            q = q.where(Slot.turf_id == turf_id)
        slot_ids = self.session.execute(q).scalars().all()
        if not slot_ids:
            return 0

        released = self._update(
            Slot.id.in_(slot_ids),
            Slot.status == HELD,
            Slot.hold_expires_at <= now,
            status=AVAILABLE,
            held_by=None,
            hold_expires_at=None,
            is_booked=False,
        )
        # a pending booking on an available slot is always stale
        now_available = select(Slot.id).where(Slot.id.in_(slot_ids), Slot.status == AVAILABLE)
        self.session.execute(
            update(Booking)
            .where(Booking.slot_id.in_(now_available), Booking.status == BookingStatus.PENDING.value)
            .values(status=BookingStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        if released:
            logger.info("Released %s expired slot holds", released)
        return released

    # ---------- owner slot management ----------
    def _owned_turf(self, turf, owner_id: int):
        if turf is None:
            raise NotFound("Turf not found")
        if turf.owner_id != owner_id:
            raise Unauthorized()
        return turf

    def _overlapping(self, turf_id: int, day, start, end):
        return self.session.execute(
            select(Slot).where(
                Slot.turf_id == turf_id,
                Slot.date == day,
                Slot.start_time < end,
                Slot.end_time > start,
            )
        ).scalars().all()

    def create_slot(self, turf, owner_id: int, day, start, end, price, label=None):
        self._owned_turf(turf, owner_id)
        if end <= start:
            raise InvalidRequest("end_time must be after start_time")
        if self._overlapping(turf.id, day, start, end):
            raise InvalidRequest("Slot already exists for this time. Delete the existing slot first.")

        slot = Slot(
            turf_id=turf.id,
            date=day,
            start_time=start,
            end_time=end,
            price=to_amount(price),
            label=label,
            status=AVAILABLE,
            is_booked=False,
        )
        self.session.add(slot)
        self.session.flush()
        return slot

    def bulk_generate(self, turf, owner_id: int, start_date, end_date, active_days,
                      time_blocks, slot_duration: int, conflict_strategy: str = "skip"):
        """Recurring schedule: every active weekday in the range, each time block cut into
        ``slot_duration``-minute slots. Returns (created, skipped)."""
        self._owned_turf(turf, owner_id)
        if conflict_strategy not in CONFLICT_STRATEGIES:
            raise InvalidRequest(f"conflict_strategy must be one of {', '.join(CONFLICT_STRATEGIES)}")
        if slot_duration <= 0:
            raise InvalidRequest("slot_duration must be positive")
        if end_date < start_date:
            raise InvalidRequest("end_date must not be before start_date")
        days = {d.lower() for d in active_days}
        unknown = days.difference(WEEKDAYS)
        if unknown:
            raise InvalidRequest(f"Unknown days: {', '.join(sorted(unknown))}")

        created, skipped = [], []
        day = start_date
        while day <= end_date:
            if WEEKDAYS[day.weekday()] in days:
                for block in time_blocks:
                    cursor = _minutes(block["start"])
                    block_end = _minutes(block["end"])
                    while cursor + slot_duration <= block_end:
                        start = _time_from_minutes(cursor)
                        end = _time_from_minutes(cursor + slot_duration)
                        cursor += slot_duration

                        clashes = self._overlapping(turf.id, day, start, end)
                        if clashes:
                            locked = [s for s in clashes if s.status != AVAILABLE or self._has_bookings(s.id)]
                            replaced = 0
                            if conflict_strategy == "overwrite" and not locked:
                                replaced = self.session.execute(
                                    delete(Slot)
                                    .where(Slot.id.in_([s.id for s in clashes]), Slot.status == AVAILABLE)
                                    .execution_options(synchronize_session=False)
                                ).rowcount
                            if replaced != len(clashes):
                                skipped.append({"date": day.isoformat(), "start": start.strftime("%H:%M"),
                                                "end": end.strftime("%H:%M")})
                                continue
                            for s in clashes:
                                self.session.expunge(s)

                        slot = Slot(
                            turf_id=turf.id,
                            date=day,
                            start_time=start,
                            end_time=end,
                            price=to_amount(block["price"]),
                            label=block.get("label"),
                            status=AVAILABLE,
                            is_booked=False,
                        )
                        self.session.add(slot)
                        self.session.flush()
                        created.append(slot)
            day += timedelta(days=1)
        return created, skipped

    def update_slot(self, slot, owner_id: int, **changes):
        if slot is None:
            raise NotFound("Slot not found")
        self._owned_turf(slot.turf, owner_id)

        values = {k: v for k, v in changes.items() if v is not None}
        if "price" in values:
            values["price"] = to_amount(values["price"])
        start = values.get("start_time", slot.start_time)
        end = values.get("end_time", slot.end_time)
        if start and end and end <= start:
            raise InvalidRequest("end_time must be after start_time")
        if not values:
            return slot

        # only an available slot may change; a concurrent claim wins
        changed = self._update(Slot.id == slot.id, Slot.status == AVAILABLE, **values)
        if changed != 1:
            raise SlotLocked()
        return self.get(slot.id)

    def delete_slot(self, slot, owner_id: int):
        if slot is None:
            raise NotFound("Slot not found")
        self._owned_turf(slot.turf, owner_id)
        if slot.status != AVAILABLE:
            raise SlotLocked("Cannot delete a held or booked slot")
        if self._has_bookings(slot.id):
            raise SlotLocked("Slot has booking history; update it instead")
        removed = self.session.execute(
            delete(Slot)
            .where(Slot.id == slot.id, Slot.status == AVAILABLE)
            .execution_options(synchronize_session=False)
        ).rowcount
        if removed != 1:
            raise SlotLocked("Cannot delete a held or booked slot")

    @staticmethod
    def _bulk_filter(turf_id: int, day=None, start_date=None, end_date=None, label=None):
        # held and booked slots are never touched in bulk
        criteria = [Slot.turf_id == turf_id, Slot.status == AVAILABLE]
        if day is not None:
            criteria.append(Slot.date == day)
        if start_date is not None:
            criteria.append(Slot.date >= start_date)
        if end_date is not None:
            criteria.append(Slot.date <= end_date)
        if label:
            criteria.append(Slot.label == label)
        return criteria

    def bulk_update(self, turf, owner_id: int, price=None, new_label=None, **filters) -> int:
        """Reprice or relabel every available slot matching ``filters``; returns the count."""
        self._owned_turf(turf, owner_id)
        values = {}
        if price is not None:
            values["price"] = to_amount(price)
        if new_label is not None:
            values["label"] = new_label
        if not values:
            raise InvalidRequest("Nothing to update; send price or label")
        return self._update(*self._bulk_filter(turf.id, **filters), **values)

    def bulk_delete(self, turf, owner_id: int, **filters) -> int:
        """Delete available slots matching ``filters`` that were never booked; returns the count."""
        self._owned_turf(turf, owner_id)
        never_booked = ~select(Booking.id).where(Booking.slot_id == Slot.id).exists()
        return self.session.execute(
            delete(Slot)
            .where(*self._bulk_filter(turf.id, **filters), never_booked)
            .execution_options(synchronize_session=False)
        ).rowcount

    def _has_bookings(self, slot_id: int) -> bool:
        return self.session.execute(
            select(Booking.id).where(Booking.slot_id == slot_id).limit(1)
        ).first() is not None

    def list_for_turf(self, turf_id: int, day=None, start_date=None, end_date=None, status=None):
        q = select(Slot).where(Slot.turf_id == turf_id)
        if day is not None:
            q = q.where(Slot.date == day)
        if start_date is not None:
            q = q.where(Slot.date >= start_date)
        if end_date is not None:
            q = q.where(Slot.date <= end_date)
        if status:
            q = q.where(Slot.status == status)
        q = q.order_by(Slot.date.asc(), Slot.start_time.asc())
        return self.session.execute(q.execution_options(populate_existing=True)).scalars().all()


def parse_date(value: str):
    return date_cls.fromisoformat(value)


def parse_time(value: str):
    return datetime.strptime(value, "%H:%M").time()
