import math
from typing import Optional, Tuple

import structlog

from .config import settings
from .error_handling import InvalidEntryPriceError
from .models import ILAssessment, PoolSnapshot, Vault
from .price_source import UsdPriceTable

logger = structlog.get_logger()


def impermanent_loss_fraction(price_ratio: float) -> float:
    """Constant-product IL as a positive loss fraction.

    IL = 1 - 2*sqrt(r) / (1 + r), where r = current_price / entry_price.
    Symmetric under r -> 1/r and exactly zero at r == 1.
    """
    if price_ratio <= 0:
        raise ValueError("price ratio must be positive")
    if price_ratio == 1:
        return 0.0
    return 1 - (2 * math.sqrt(price_ratio)) / (1 + price_ratio)


def classify_urgency(il_percentage: float, threshold_percentage: float) -> str:
    """How far past the threshold a reading is: low, medium or high"""
    excess = il_percentage - threshold_percentage
    if excess <= 1:
        return "low"
    if excess <= 5:
        return "medium"
    return "high"


def is_near_threshold(il_percentage: float, threshold_percentage: float, alert_ratio: float = 0.8) -> bool:
    """Whether IL has reached the alert band (80% of the threshold by default) without breaching"""
    return threshold_percentage * alert_ratio < il_percentage <= threshold_percentage


class ImpermanentLossCalculator:
    """Assesses a vault's impermanent loss against one pool snapshot"""

    def __init__(self, price_table: Optional[UsdPriceTable] = None):
        self.price_table = price_table or UsdPriceTable(settings.USD_PRICE_ESTIMATES)

    def usd_prices(self, vault: Vault, current_price: float) -> Tuple[float, float]:
        """USD price per unit of each leg, consistent with the snapshot price.

        Only one leg is taken from the price table; the other is implied by
        the pair price so both legs describe the same moment.
        """
        usd_a = self.price_table.get(vault.asset_a)
        if usd_a is not None:
            return usd_a, usd_a / current_price

        usd_b = self.price_table.get(vault.asset_b)
        if usd_b is not None:
            return usd_b * current_price, usd_b

        # Neither leg has a reference price: value everything in asset B
        return current_price, 1.0

    def assess(self, vault: Vault, snapshot: PoolSnapshot) -> ILAssessment:
        entry_price = vault.entry_price
        if entry_price is None or not math.isfinite(entry_price) or entry_price <= 0:
            raise InvalidEntryPriceError(vault.vault_id, entry_price)

        current_price = snapshot.price
        price_ratio = current_price / entry_price
        loss_fraction = impermanent_loss_fraction(price_ratio)
        il_percentage = abs(loss_fraction) * 100

        # Deposit amounts valued at today's prices
        usd_a, usd_b = self.usd_prices(vault, current_price)
        hold_value = vault.amount_a * usd_a + vault.amount_b * usd_b
        lp_value = hold_value * (1 - loss_fraction)
        il_amount = hold_value - lp_value

        threshold = vault.threshold_percentage
        should_trigger = il_percentage > threshold

        logger.debug(
            "Vault assessed",
            vault_id=vault.vault_id,
            pair=vault.pair,
            price_ratio=round(price_ratio, 6),
            il_percentage=round(il_percentage, 4),
            threshold_percentage=threshold,
            snapshot_source=snapshot.source.value,
        )

        return ILAssessment(
            vault_id=vault.vault_id,
            il_percentage=il_percentage,
            il_amount=il_amount,
            lp_value=lp_value,
            hold_value=hold_value,
            should_trigger_protection=should_trigger,
            entry_price=entry_price,
            current_price=current_price,
            price_ratio=price_ratio,
            threshold_percentage=threshold,
            snapshot_source=snapshot.source,
        )
