from __future__ import annotations

from dataclasses import dataclass

from jobboard_api.core.config import Settings


@dataclass(frozen=True, slots=True)
class Plan:
    key: str
    name: str
    description: str
    price_id: str | None
    features: tuple[str, ...]

    @property
    def purchasable(self) -> bool:
        return bool(self.price_id and self.price_id.startswith("price_"))


def get_plans(settings: Settings) -> dict[str, Plan]:
    return {
        "pro": Plan(
            key="pro",
            name="Pro Talent",
            description="For teams hiring for several roles at once.",
            price_id=settings.stripe_pro_price_id,
            features=(
                "Unlimited job postings",
                "Unlimited candidate messaging",
                "Advanced candidate search",
                "Verified status badge",
            ),
        ),
        "premium": Plan(
            key="premium",
            name="Premium Search",
            description="Full-service hiring with priority support.",
            price_id=settings.stripe_premium_price_id,
            features=(
                "Everything in Pro",
                "Priority job placement",
                "Dedicated account manager",
                "Early access to top talent",
            ),
        ),
    }
