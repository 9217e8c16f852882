"""Platform / payee revenue split.

All arithmetic is integer minor units. The platform share is rounded half
away from zero and the payee receives the exact remainder, so the two
shares always add back up to the gross amount.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from fitspace.utils.logger import logger
from ..shared.exceptions import MoneyInvariantViolation, ValidationError

DEFAULT_PLATFORM_PERCENT = Decimal("11")


@dataclass(frozen=True)
class ProcessingFee:
    percent: Decimal
    fixed: int


# Card processing list prices per region, informational only.
PROCESSING_FEES: Dict[str, ProcessingFee] = {
    "EEA": ProcessingFee(Decimal("1.5"), 25),
    "UK": ProcessingFee(Decimal("2.5"), 20),
    "US": ProcessingFee(Decimal("2.9"), 30),
    "INTERNATIONAL": ProcessingFee(Decimal("3.25"), 25),
}


@dataclass(frozen=True)
class FeeModel:
    platform_pct: Decimal = DEFAULT_PLATFORM_PERCENT
    processing_pct: Decimal = Decimal("0")
    processing_fixed: int = 0

    @classmethod
    def for_region(cls, region: str, platform_pct: Decimal = DEFAULT_PLATFORM_PERCENT) -> "FeeModel":
        fee = PROCESSING_FEES.get(region.upper())
        if fee is None:
            raise ValidationError(f"Unknown processing region: {region}")
        return cls(platform_pct=Decimal(str(platform_pct)), processing_pct=fee.percent, processing_fixed=fee.fixed)


@dataclass(frozen=True)
class CommissionSplit:
    gross: int
    platform_share: int
    payee_share: int
    processing_fee_estimate: int


@dataclass(frozen=True)
class CommissionSummary:
    total_revenue: int
    total_platform: int
    total_payee: int
    total_processing_estimate: int
    payment_count: int
    average_charge: int


def _percent_ratio(percent: Decimal) -> Tuple[int, int]:
    numerator, denominator = Decimal(str(percent)).as_integer_ratio()
    return numerator, denominator * 100


def _divide_half_away(numerator: int, denominator: int) -> int:
    quotient, remainder = divmod(abs(numerator), denominator)
    if 2 * remainder >= denominator:
        quotient += 1
    return quotient if numerator >= 0 else -quotient


def percent_of(amount: int, percent: Decimal) -> int:
    num, den = _percent_ratio(percent)
    return _divide_half_away(amount * num, den)


def _validate_amount(gross) -> None:
    if isinstance(gross, bool) or not isinstance(gross, int):
        raise ValidationError(f"Amount must be an integer number of minor units, got {gross!r}")
    if gross < 0:
        raise ValidationError(f"Amount must not be negative, got {gross}")


def _validate_fee_model(fee_model: FeeModel) -> None:
    if not Decimal("0") <= Decimal(str(fee_model.platform_pct)) <= Decimal("100"):
        raise ValidationError(f"Platform percent out of range: {fee_model.platform_pct}")
    if Decimal(str(fee_model.processing_pct)) < 0 or fee_model.processing_fixed < 0:
        raise ValidationError("Processing fee model must not be negative")


def split(gross: int, fee_model: Optional[FeeModel] = None) -> CommissionSplit:
    fee_model = fee_model or FeeModel()
    _validate_amount(gross)
    _validate_fee_model(fee_model)

    platform_share = percent_of(gross, fee_model.platform_pct)
    payee_share = gross - platform_share

    if platform_share + payee_share != gross or not 0 <= platform_share <= gross:
        logger.critical(
            f"[COMMISSION] Split does not conserve gross={gross}: "
            f"platform={platform_share} payee={payee_share} pct={fee_model.platform_pct}"
        )
        raise MoneyInvariantViolation(
            f"Commission split for {gross} produced platform={platform_share}, payee={payee_share}"
        )

    processing = 0
    if gross > 0:
        processing = percent_of(gross, fee_model.processing_pct) + fee_model.processing_fixed

    return CommissionSplit(
        gross=gross,
        platform_share=platform_share,
        payee_share=payee_share,
        processing_fee_estimate=processing,
    )


def resolve_platform_percent(
    default_percent: Decimal = DEFAULT_PLATFORM_PERCENT,
    team_fee_percent: Optional[Decimal] = None,
) -> Decimal:
    """A team's negotiated fee wins over the platform default."""
    if team_fee_percent is not None:
        return Decimal(str(team_fee_percent))
    return Decimal(str(default_percent))


def summarize_commissions(charges: Iterable[int], fee_model: Optional[FeeModel] = None) -> CommissionSummary:
    fee_model = fee_model or FeeModel()
    total_revenue = total_platform = total_payee = total_processing = count = 0

    for gross in charges:
        result = split(gross, fee_model)
        total_revenue += result.gross
        total_platform += result.platform_share
        total_payee += result.payee_share
        total_processing += result.processing_fee_estimate
        count += 1

    if total_platform + total_payee != total_revenue:
        logger.critical(
            f"[COMMISSION] Summary does not conserve revenue={total_revenue}: "
            f"platform={total_platform} payee={total_payee}"
        )
        raise MoneyInvariantViolation("Commission summary totals do not reconcile")

    return CommissionSummary(
        total_revenue=total_revenue,
        total_platform=total_platform,
        total_payee=total_payee,
        total_processing_estimate=total_processing,
        payment_count=count,
        average_charge=_divide_half_away(total_revenue, count) if count else 0,
    )
