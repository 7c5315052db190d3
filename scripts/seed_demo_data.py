from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from reservation_engine.domain.booking_rules import BookingPolicy
from reservation_engine.domain.models import DiscountType
from reservation_engine.infrastructure.db.models import Base, DiscountCode, Player, TrainingSession
from reservation_engine.infrastructure.db.session import create_session_factory, get_engine


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_sessions(db) -> None:
    session_defs = [
        {
            "title": "U10 Boys Skills Clinic",
            "location": "Riverside Field 2",
            "starts_at": _dt(days_from_now=1, hour=17, minute=0),
            "capacity": 16,
            "price_cents": 2500,
            "age_groups": ["U9", "U10"],
            "genders": ["boys"],
            "booking_policy": BookingPolicy.HOURS_BEFORE,
            "booking_open_hours_before": 48,
        },
        {
            "title": "U12 Mixed Finishing Session",
            "location": "Riverside Field 1",
            "starts_at": _dt(days_from_now=0, hour=23, minute=0),
            "capacity": 12,
            "price_cents": 3000,
            "age_groups": ["U11", "U12"],
            "genders": ["mixed"],
            "booking_policy": BookingPolicy.SAME_DAY,
        },
        {
            "title": "Invite-only Keeper Training",
            "location": "Indoor Dome",
            "starts_at": _dt(days_from_now=2, hour=18, minute=30),
            "capacity": 6,
            "price_cents": 4000,
            "age_groups": ["U11", "U12", "U13"],
            "genders": ["boys", "girls"],
            "booking_policy": BookingPolicy.IMMEDIATE,
            "access_code": "KEEPERS",
        },
    ]

    for item in session_defs:
        existing = db.execute(
            select(TrainingSession).where(TrainingSession.title == item["title"])
        ).scalar_one_or_none()
        values = dict(item, ends_at=item["starts_at"] + timedelta(minutes=90))
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            continue
        db.add(TrainingSession(**values))


def seed_players(db) -> None:
    this_year = datetime.now(timezone.utc).year
    player_defs = [
        {"first_name": "Sam", "last_name": "Ortiz", "birth_year": this_year - 9, "gender": "boys", "parent_id": "parent-ortiz"},
        {"first_name": "Mia", "last_name": "Chen", "birth_year": this_year - 11, "gender": "girls", "parent_id": "parent-chen"},
        {"first_name": "Leo", "last_name": "Chen", "birth_year": this_year - 12, "gender": "boys", "parent_id": "parent-chen"},
    ]

    for item in player_defs:
        existing = db.execute(
            select(Player)
            .where(Player.first_name == item["first_name"])
            .where(Player.last_name == item["last_name"])
        ).scalar_one_or_none()
        if existing:
            existing.birth_year = item["birth_year"]
            continue
        db.add(Player(**item))


def seed_discount_codes(db) -> None:
    code_defs = [
        {"code": "FIRSTFREE", "discount_type": DiscountType.FULL, "value": 0, "max_uses": 1},
        {"code": "SPRING20", "discount_type": DiscountType.PERCENTAGE, "value": 20, "max_uses": 50},
        {"code": "SIBLING5", "discount_type": DiscountType.FIXED, "value": 500, "max_uses": None, "locked_to_parent_id": "parent-chen"},
    ]

    for item in code_defs:
        existing = db.execute(
            select(DiscountCode)
            .where(DiscountCode.tenant_id == "default")
            .where(DiscountCode.code == item["code"])
        ).scalar_one_or_none()
        if existing:
            existing.is_active = True
            continue
        db.add(DiscountCode(tenant_id="default", **item))


def main() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    db = create_session_factory(engine)()
    try:
        seed_sessions(db)
        seed_players(db)
        seed_discount_codes(db)
        db.commit()
        print("Seed complete: 3 sessions, 3 players and 3 discount codes added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
