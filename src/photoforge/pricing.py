"""Subscription tiers, à la carte packs and the batch discount schedule.

Batch cost is the sum of each image's marginal rate. Rates are whole credits
and never increase from one band to the next, so the total never decreases as
the batch grows and the average cost per image never increases.
"""

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

FREE_TIER = "free"


class TierConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    monthly_price: int
    monthly_credits: int
    rollover_cap: int
    features: tuple[str, ...] = ()
    popular: bool = False


class AlaCarteOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    credits: int
    price: int


class PriceBand(BaseModel):
    model_config = ConfigDict(frozen=True)

    up_to: int | None
    credits_per_image: int


class DiscountInfo(BaseModel):
    discount_fraction: float
    full_price: int
    total: int


PRICING_TIERS: dict[str, TierConfig] = {
    "free": TierConfig(
        name="free",
        display_name="Free",
        monthly_price=0,
        monthly_credits=5,
        rollover_cap=0,
        features=("5 credits/month", "No rollover", "Basic features", "Community support"),
    ),
    "starter": TierConfig(
        name="starter",
        display_name="Starter",
        monthly_price=49,
        monthly_credits=100,
        rollover_cap=50,
        features=("100 credits/month", "Rollover up to 50 credits", "Basic AI models", "Email support"),
    ),
    "professional": TierConfig(
        name="professional",
        display_name="Professional",
        monthly_price=149,
        monthly_credits=400,
        rollover_cap=200,
        features=(
            "400 credits/month",
            "Rollover up to 200 credits",
            "Advanced AI models",
            "Priority support",
            "Bulk upload",
            "Custom backgrounds",
        ),
        popular=True,
    ),
    "enterprise": TierConfig(
        name="enterprise",
        display_name="Enterprise",
        monthly_price=449,
        monthly_credits=2000,
        rollover_cap=500,
        features=(
            "2,000 credits/month",
            "Rollover up to 500 credits",
            "Custom model training",
            "Dedicated support",
            "API access",
        ),
    ),
}

ALA_CARTE_OPTIONS: tuple[AlaCarteOption, ...] = (
    AlaCarteOption(credits=50, price=29),
    AlaCarteOption(credits=100, price=49),
    AlaCarteOption(credits=500, price=199),
)

DEFAULT_BANDS: tuple[PriceBand, ...] = (
    PriceBand(up_to=10, credits_per_image=4),
    PriceBand(up_to=50, credits_per_image=3),
    PriceBand(up_to=None, credits_per_image=2),
)


def get_tier_config(tier_name: str) -> TierConfig:
    try:
        return PRICING_TIERS[tier_name]
    except KeyError:
        raise ValueError(f"Unknown tier: {tier_name}") from None


def calculate_rollover(current_balance: int, monthly_credits: int, rollover_cap: int) -> int:
    return monthly_credits + min(max(0, current_balance), rollover_cap)


def get_ala_carte_option(credits: int) -> AlaCarteOption | None:
    return next((o for o in ALA_CARTE_OPTIONS if o.credits == credits), None)


def has_enough_credits(balance: int, required: int) -> bool:
    return balance >= required


class PricingCalculator:
    def __init__(self, bands: Sequence[PriceBand] = DEFAULT_BANDS) -> None:
        self.bands = tuple(bands)
        self._check_bands()

    def _check_bands(self) -> None:
        if not self.bands:
            raise ValueError("at least one price band is required")
        if self.bands[-1].up_to is not None:
            raise ValueError("last price band must be open-ended")
        prev_bound = 0
        prev_rate = None
        for band in self.bands:
            if band.credits_per_image < 0:
                raise ValueError("credits_per_image must be >= 0")
            if prev_rate is not None and band.credits_per_image > prev_rate:
                raise ValueError("band rates must not increase")
            if band.up_to is not None:
                if band.up_to <= prev_bound:
                    raise ValueError("band bounds must be strictly increasing")
                prev_bound = band.up_to
            prev_rate = band.credits_per_image

    @property
    def base_rate(self) -> int:
        return self.bands[0].credits_per_image

    def compute_cost(self, quantity: int) -> int:
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        total = 0
        lower = 0
        for band in self.bands:
            upper = quantity if band.up_to is None else min(quantity, band.up_to)
            if upper > lower:
                total += (upper - lower) * band.credits_per_image
            if band.up_to is None or band.up_to >= quantity:
                break
            lower = band.up_to
        return total

    def get_discount_info(self, quantity: int) -> DiscountInfo | None:
        total = self.compute_cost(quantity)
        full_price = quantity * self.base_rate
        if full_price == 0 or total >= full_price:
            return None
        return DiscountInfo(
            discount_fraction=round(1 - total / full_price, 4),
            full_price=full_price,
            total=total,
        )

    def has_enough_credits(self, balance: int, required: int) -> bool:
        return has_enough_credits(balance, required)
