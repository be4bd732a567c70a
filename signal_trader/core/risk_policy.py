"""
Risk & Sizing Policy
Tier-bounded notional, leverage and protective stop-loss / take-profit prices
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging

from .errors import ErrorCode, SizingError
from .models import Direction, InstrumentRules, OrderRequest, PlanTier, User
from ..utils.config_loader import ProtectionConfig, TierConfig, TierLimits

logger = logging.getLogger(__name__)


@dataclass
class SizingResult:
    """Order bounds for one user and one signal"""
    tier: PlanTier
    direction: Direction
    price: float
    margin: float
    notional: float
    quantity: float
    leverage: int
    min_notional: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss_pct: Optional[float] = None
    take_profit_pct: Optional[float] = None

    @property
    def protected(self) -> bool:
        return self.stop_loss is not None and self.take_profit is not None

    def to_order(self, instrument: str, client_order_id: Optional[str] = None) -> OrderRequest:
        return OrderRequest(
            instrument=instrument,
            side=self.direction,
            quantity=self.quantity,
            leverage=self.leverage,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
            client_order_id=client_order_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.name,
            "direction": self.direction.value,
            "price": self.price,
            "margin": round(self.margin, 8),
            "notional": round(self.notional, 8),
            "quantity": self.quantity,
            "leverage": self.leverage,
            "min_notional": self.min_notional,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "stop_loss_pct": self.stop_loss_pct,
            "take_profit_pct": self.take_profit_pct,
        }


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RiskPolicy:
    """
    Sizing per plan tier (FREE < BASIC < PREMIUM < VIP)

    margin   = available balance x tier fraction
    notional = margin x leverage
    quantity = notional / price

    Protective percentages are return-on-margin, expressed as multiples of
    leverage, so the price distance is pct / leverage.
    """

    def __init__(
        self,
        tiers: Optional[TierConfig] = None,
        protection: Optional[ProtectionConfig] = None,
    ):
        self.tiers = tiers or TierConfig()
        self.tiers.validate()
        self.protection = protection or ProtectionConfig()

    def limits_for(self, tier: PlanTier) -> TierLimits:
        return self.tiers.tiers[tier.name]

    def min_notional(self, tier: PlanTier, strong: bool = False) -> float:
        floor = self.limits_for(tier).min_notional
        return float(math.floor(floor / 2)) if strong else floor

    def leverage_for(self, user: User) -> int:
        leverage = min(self.limits_for(user.tier).leverage, self.tiers.max_leverage)
        if user.risk_limits.max_leverage:
            leverage = min(leverage, user.risk_limits.max_leverage)
        return max(1, int(leverage))

    def fraction_for(self, user: User) -> float:
        fraction = self.limits_for(user.tier).max_fraction
        if user.risk_limits.max_position_fraction:
            fraction = min(fraction, user.risk_limits.max_position_fraction)
        return fraction

    def requires_protection(self, tier: PlanTier) -> bool:
        return tier.name not in self.protection.exempt_tiers

    def protection_percentages(
        self,
        leverage: int,
        stop_loss_pct: Optional[float] = None,
        take_profit_pct: Optional[float] = None,
    ) -> Tuple[float, float]:
        """Default or caller percentages, clamped into the safe range for this leverage"""
        p = self.protection
        sl = stop_loss_pct if stop_loss_pct is not None else p.stop_loss_multiplier * leverage
        tp = take_profit_pct if take_profit_pct is not None else p.take_profit_multiplier * leverage
        sl = _clamp(sl, p.stop_loss_min_multiplier * leverage, p.stop_loss_max_multiplier * leverage)
        tp = _clamp(tp, p.take_profit_min_multiplier * leverage, p.take_profit_max_multiplier * leverage)
        return sl, tp

    @staticmethod
    def protective_prices(
        direction: Direction, price: float, leverage: int, sl_pct: float, tp_pct: float
    ) -> Tuple[float, float]:
        sl_distance = sl_pct / leverage / 100
        tp_distance = tp_pct / leverage / 100
        if direction is Direction.LONG:
            return price * (1 - sl_distance), price * (1 + tp_distance)
        return price * (1 + sl_distance), price * (1 - tp_distance)

    def size(
        self,
        user: User,
        direction: Direction,
        available: float,
        price: float,
        strong: bool = False,
        stop_loss_pct: Optional[float] = None,
        take_profit_pct: Optional[float] = None,
    ) -> SizingResult:
        """Raises SizingError (BELOW_MINIMUM_NOTIONAL, MISSING_PROTECTION)"""
        if price <= 0:
            raise SizingError(ErrorCode.INVALID_SIGNAL, f"invalid price {price}")

        leverage = self.leverage_for(user)
        margin = max(available, 0.0) * self.fraction_for(user)
        notional = margin * leverage
        minimum = self.min_notional(user.tier, strong)

        if notional < minimum:
            raise SizingError(
                ErrorCode.BELOW_MINIMUM_NOTIONAL,
                f"{user.id}: notional {notional:.2f} below {user.tier.name} minimum {minimum:.2f}",
            )

        result = SizingResult(
            tier=user.tier,
            direction=direction,
            price=price,
            margin=margin,
            notional=notional,
            quantity=round(notional / price, 8),
            leverage=leverage,
            min_notional=minimum,
        )

        exempt = not self.requires_protection(user.tier)
        if exempt and stop_loss_pct == 0 and take_profit_pct == 0:
            return result

        sl_pct, tp_pct = self.protection_percentages(leverage, stop_loss_pct, take_profit_pct)
        stop_loss, take_profit = self.protective_prices(direction, price, leverage, sl_pct, tp_pct)
        if stop_loss > 0 and take_profit > 0:
            result.stop_loss = stop_loss
            result.take_profit = take_profit
            result.stop_loss_pct = sl_pct
            result.take_profit_pct = tp_pct

        self.check_protection(user.tier, result.stop_loss, result.take_profit)
        return result

    def fit_to_instrument(self, sizing: SizingResult, rules: InstrumentRules) -> SizingResult:
        """
        Floor the quantity to the lot step and round protective prices to the tick

        Flooring shrinks the notional, so the tier minimum (and the exchange
        minimum, when it is higher) is checked again on the fitted order.
        """
        quantity = rules.floor_quantity(sizing.quantity)
        notional = quantity * sizing.price
        minimum = max(sizing.min_notional, rules.min_notional)

        if quantity <= 0 or quantity < rules.min_qty or notional < minimum:
            raise SizingError(
                ErrorCode.BELOW_MINIMUM_NOTIONAL,
                f"{rules.instrument}: {sizing.quantity} floors to {quantity} "
                f"(step {rules.qty_step}), notional {notional:.2f} below {minimum:.2f}",
            )

        sizing.quantity = quantity
        sizing.notional = notional
        sizing.margin = notional / sizing.leverage
        if sizing.stop_loss is not None:
            sizing.stop_loss = rules.round_price(sizing.stop_loss)
        if sizing.take_profit is not None:
            sizing.take_profit = rules.round_price(sizing.take_profit)

        self.check_protection(sizing.tier, sizing.stop_loss, sizing.take_profit)
        return sizing

    def check_protection(self, tier: PlanTier, stop_loss: Optional[float], take_profit: Optional[float]):
        """Non-exempt tiers never open without both protective prices"""
        if not self.requires_protection(tier):
            return
        if stop_loss is None or take_profit is None or stop_loss <= 0 or take_profit <= 0:
            raise SizingError(
                ErrorCode.MISSING_PROTECTION,
                f"{tier.name} orders must carry stop-loss and take-profit",
            )

    def describe(self) -> Dict[str, Any]:
        return {
            "max_leverage": self.tiers.max_leverage,
            "tiers": {
                name: {
                    "min_notional": limits.min_notional,
                    "max_fraction": limits.max_fraction,
                    "leverage": limits.leverage,
                }
                for name, limits in self.tiers.tiers.items()
            },
            "exempt_tiers": list(self.protection.exempt_tiers),
        }
