"""Seed the subscription plan catalog and, optionally, issue gift cards.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_plans
    docker compose exec backend python -m scripts.seed_plans --gift-cards 5 --hours 720
"""

import argparse
import asyncio
import secrets
import sys
from datetime import timedelta
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.billing.plans import get_plan_by_provider_plan_id, seed_plans
from app.database import async_session_factory, engine, utcnow
from app.models.subscription import GiftCard, SubscriptionProvider


def _gift_card_code() -> str:
    return secrets.token_hex(8).upper()


async def seed(gift_cards: int, hours: int, valid_days: int | None) -> None:
    async with async_session_factory() as session:
        added = await seed_plans(session)
        print(f"✅ Added {added} subscription plan(s)")

        if gift_cards:
            plan = await get_plan_by_provider_plan_id(session, SubscriptionProvider.GIFT_CARD, "gift-card")
            expires_at = utcnow() + timedelta(days=valid_days) if valid_days else None
            for _ in range(gift_cards):
                code = _gift_card_code()
                session.add(GiftCard(code=code, hour_credits=hours, plan=plan, expires_at=expires_at))
                print(f"   🎁 {code} ({hours}h)")
            await session.flush()

        await session.commit()

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--gift-cards", type=int, default=0, help="number of gift cards to issue")
    parser.add_argument("--hours", type=int, default=720, help="hours credited by each gift card")
    parser.add_argument("--valid-days", type=int, default=None, help="days until the gift cards expire")
    args = parser.parse_args()
    asyncio.run(seed(args.gift_cards, args.hours, args.valid_days))


if __name__ == "__main__":
    main()
