"""Commission split calculation."""

import logging
import math
from typing import Optional

from ..storage.models import FinancialBreakdown

AGENCY_SHARE = 0.5       # Brokerage keeps half of the service fee
AGENT_SHARE = 0.5        # The other half goes to the agents
CO_BROKE_SPLIT = 0.5     # Listing/selling split when two different agents
TOLERANCE = 0.01         # Absolute tolerance for breakdown arithmetic


class CommissionEngine:
    """Split a transaction's service fee between the agency and its agents.

    Calculation has no side effects, so the same engine serves both the
    completion path and read-only previews.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def calculate_breakdown(
        self,
        total_service_fee: float,
        listing_agent_id: str,
        selling_agent_id: str
    ) -> FinancialBreakdown:
        """Calculate the financial breakdown for a service fee.

        Args:
            total_service_fee: Fee charged on the sale
            listing_agent_id: Agent who listed the property
            selling_agent_id: Agent who sold it (may equal the listing agent)

        Returns:
            FinancialBreakdown with agency and per-agent amounts
        """
        agency_commission = total_service_fee * AGENCY_SHARE
        total_agent_commission = total_service_fee * AGENT_SHARE

        if listing_agent_id == selling_agent_id:
            # One agent on both sides keeps the whole agent share
            listing_agent_commission = total_agent_commission
            selling_agent_commission = 0.0
            self.logger.debug(
                f"Same agent scenario: agent {listing_agent_id} gets {listing_agent_commission}"
            )
        else:
            listing_agent_commission = total_agent_commission * CO_BROKE_SPLIT
            selling_agent_commission = total_agent_commission * CO_BROKE_SPLIT
            self.logger.debug(
                f"Different agents scenario: listing {listing_agent_commission}, "
                f"selling {selling_agent_commission}"
            )

        return FinancialBreakdown(
            agency_commission=agency_commission,
            total_agent_commission=total_agent_commission,
            listing_agent_commission=listing_agent_commission,
            selling_agent_commission=selling_agent_commission,
            listing_agent_id=listing_agent_id,
            selling_agent_id=selling_agent_id,
        )

    def validate_breakdown(self, breakdown: FinancialBreakdown) -> bool:
        """Check a breakdown's internal arithmetic.

        The components must add up to agency + total agent commission, and
        the agency part must be half of that total. Returns False on any
        mismatch instead of raising.
        """
        total_calculated = (
            breakdown.agency_commission
            + breakdown.listing_agent_commission
            + breakdown.selling_agent_commission
        )
        expected_total = breakdown.agency_commission + breakdown.total_agent_commission

        if not math.isfinite(total_calculated) or not math.isfinite(expected_total):
            self.logger.error(f"Commission validation failed: non-finite amount in {breakdown}")
            return False

        if abs(total_calculated - expected_total) > TOLERANCE:
            self.logger.error(
                f"Commission validation failed: total mismatch. "
                f"Expected: {expected_total}, Calculated: {total_calculated}"
            )
            return False

        expected_agency = total_calculated * AGENCY_SHARE
        if abs(breakdown.agency_commission - expected_agency) > TOLERANCE:
            self.logger.error(
                f"Commission validation failed: agency commission mismatch. "
                f"Expected: {expected_agency}, Actual: {breakdown.agency_commission}"
            )
            return False

        return True
