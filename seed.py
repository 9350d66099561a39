"""
Seed script -- populates the database with a sample party for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 1 active event (batch mode on) with a fresh access code
  - 6 drivers, 4 of them online around the venue
  - 8 waiting ride requests in two pickup clusters
"""

import asyncio
from datetime import timedelta

from src.domain.entities import utcnow
from src.domain.enums import DriverStatus
from src.infrastructure.database import async_session_factory, engine
from src.services.drivers import DriverService
from src.services.events import EventService
from src.services.rides import RideService

# Venue coordinates (approx, downtown Austin)
VENUE_LAT, VENUE_LNG = 30.2672, -97.7431


DRIVERS = [
    {"name": "Maya Chen", "capacity": 4, "lat": 30.2680, "lng": -97.7420, "online": True},
    {"name": "Luis Ortega", "capacity": 6, "lat": 30.2650, "lng": -97.7450, "online": True},
    {"name": "Sam Okafor", "capacity": 4, "lat": 30.2700, "lng": -97.7400, "online": True},
    {"name": "Jo Becker", "capacity": 3, "lat": 30.2630, "lng": -97.7480, "online": True},
    {"name": "Priya Rao", "capacity": 4, "lat": None, "lng": None, "online": False},
    {"name": "Tom Walsh", "capacity": 7, "lat": None, "lng": None, "online": False},
]

RIDES = [
    # Cluster near the venue entrance
    {"rider": "Ava", "address": "Main entrance", "lat": 30.26721, "lng": -97.74312, "party": 2},
    {"rider": "Ben", "address": "Main entrance", "lat": 30.26725, "lng": -97.74305, "party": 1},
    {"rider": "Cleo", "address": "Side door", "lat": 30.26710, "lng": -97.74320, "party": 1},
    {"rider": "Dev", "address": "Parking lot B", "lat": 30.26730, "lng": -97.74300, "party": 3},
    # Cluster a few blocks east
    {"rider": "Eli", "address": "5th & Red River", "lat": 30.26640, "lng": -97.73640, "party": 1},
    {"rider": "Fay", "address": "5th & Red River", "lat": 30.26645, "lng": -97.73650, "party": 2},
    {"rider": "Gus", "address": "6th & Sabine", "lat": 30.26700, "lng": -97.73600, "party": 1},
    # Straggler
    {"rider": "Hana", "address": "Rainey St", "lat": 30.25880, "lng": -97.73870, "party": 1},
]


async def seed():
    async with async_session_factory() as session:
        # ── Event ─────────────────────────────────────────────────────
        now = utcnow()
        event = await EventService(session).create_event(
            event_name="Spring Formal",
            organization_name="Sigma Demo",
            start_time=now - timedelta(hours=1),
            end_time=now + timedelta(hours=5),
            admin_email="safety@example.com",
            batch_mode_enabled=True,
        )
        print(f"  Created event {event.id} (access code {event.access_code})")

        # ── Drivers ───────────────────────────────────────────────────
        drivers = DriverService(session)
        for d in DRIVERS:
            driver = await drivers.add_driver_to_event(event.id, d["name"], d["capacity"])
            if d["lat"] is not None:
                await drivers.update_driver_location(driver.id, d["lat"], d["lng"])
            if d["online"]:
                await drivers.set_driver_status(driver.id, DriverStatus.AVAILABLE)
        print(f"  Created {len(DRIVERS)} drivers")

        # ── Rides ─────────────────────────────────────────────────────
        rides = RideService(session)
        for r in RIDES:
            await rides.create_ride(
                event_id=event.id,
                rider_name=r["rider"],
                pickup_address=r["address"],
                pickup_lat=r["lat"],
                pickup_lng=r["lng"],
                passenger_count=r["party"],
            )
        print(f"  Created {len(RIDES)} rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
