from dispatchline.database.session import get_session_local, init_db
from dispatchline.database.models import Business, Technician
from dispatchline.logging_context import configure_logging, get_call_logger

logger = get_call_logger("seed_data")


def seed_database():
    init_db()
    db = get_session_local()()

    try:
        existing = db.query(Business).first()
        if existing:
            logger.info("Database already seeded")
            return

        business = Business(
            name="Premier Plumbing & HVAC",
            trade="plumbing",
            phone_number="+15551234567",
            timezone="America/Chicago",
            business_hours={
                "mon": {"open": "08:00", "close": "18:00", "enabled": True},
                "tue": {"open": "08:00", "close": "18:00", "enabled": True},
                "wed": {"open": "08:00", "close": "18:00", "enabled": True},
                "thu": {"open": "08:00", "close": "18:00", "enabled": True},
                "fri": {"open": "08:00", "close": "18:00", "enabled": True},
                "sat": {"open": "09:00", "close": "14:00", "enabled": True},
                "sun": {"open": "09:00", "close": "14:00", "enabled": False},
            },
            allow_weekend_booking=True,
            require_on_call_for_weekend=True,
            policy={"emergency_keywords": ["water heater leaking"]},
            calendar_integration={"event_type_id": None},
            forwarding_number="+15551230000",
            notifications_email="office@premierplumbing.example",
        )
        db.add(business)
        db.commit()
        db.refresh(business)

        technicians = [
            Technician(
                business_id=business.id,
                name="Mike Johnson",
                phone="+15559876543",
                home_address="1100 Congress Ave, Austin, TX",
                priority=3,
                is_on_call=True,
            ),
            Technician(
                business_id=business.id,
                name="Sarah Williams",
                phone="+15554567890",
                home_address="201 E Main St, Round Rock, TX",
                priority=2,
            ),
            Technician(
                business_id=business.id,
                name="Carlos Rodriguez",
                phone="+15552345678",
                home_address="600 N Bell Blvd, Cedar Park, TX",
                priority=2,
            ),
            Technician(
                business_id=business.id,
                name="Dana Lee",
                phone="+15553456789",
                home_address="100 W 8th St, Georgetown, TX",
                priority=1,
                is_on_call=True,
                emergency_only=True,
            ),
        ]

        for tech in technicians:
            db.add(tech)
        db.commit()

        logger.info("Database seeded: business %s with %d technicians", business.name, len(technicians))

    except Exception:
        logger.exception("Error seeding database")
        db.rollback()
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    seed_database()
