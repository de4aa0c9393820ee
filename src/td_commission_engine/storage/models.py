"""Data models for agents, transactions and commission ledger entries."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any


class AgentType(Enum):
    """Which side(s) of a sale an agent works."""

    LISTING = "listing"
    SELLING = "selling"
    BOTH = "both"


class TransactionStage(Enum):
    """Lifecycle stages of a sale, in order."""

    AGREEMENT = "agreement"
    EARNEST_MONEY = "earnest_money"
    TITLE_DEED = "title_deed"
    COMPLETED = "completed"


class CommissionType(Enum):
    """Ledger entry kinds."""

    AGENCY = "agency"
    LISTING = "listing"
    SELLING = "selling"


class CommissionStatus(Enum):
    """Payment status of a ledger entry."""

    PENDING = "pending"
    PROCESSED = "processed"
    PAID = "paid"


@dataclass
class Agent:
    """A real estate agent and their running commission totals."""

    id: str
    email: str
    first_name: str
    last_name: str
    phone: str = ""
    agent_type: AgentType = AgentType.BOTH
    is_active: bool = True

    # Only ever changed by AgentRegistry.credit_commission
    total_commission_earned: float = 0.0
    transaction_count: int = 0

    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def average_commission_per_transaction(self) -> float:
        if self.transaction_count > 0:
            return self.total_commission_earned / self.transaction_count
        return 0.0


@dataclass(frozen=True)
class FinancialBreakdown:
    """How a completed transaction's service fee was split."""

    agency_commission: float
    total_agent_commission: float
    listing_agent_commission: float
    selling_agent_commission: float
    listing_agent_id: str
    selling_agent_id: str

    @property
    def total(self) -> float:
        return self.agency_commission + self.listing_agent_commission + self.selling_agent_commission

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinancialBreakdown":
        return cls(
            agency_commission=float(data["agency_commission"]),
            total_agent_commission=float(data["total_agent_commission"]),
            listing_agent_commission=float(data["listing_agent_commission"]),
            selling_agent_commission=float(data["selling_agent_commission"]),
            listing_agent_id=data["listing_agent_id"],
            selling_agent_id=data["selling_agent_id"],
        )


@dataclass
class Transaction:
    """A property sale moving through the stage lifecycle."""

    id: str
    property_address: str
    property_type: str
    total_service_fee: float
    listing_agent_id: str
    selling_agent_id: str
    client_name: str = ""
    client_contact: str = ""

    stage: TransactionStage = TransactionStage.AGREEMENT

    # Present iff stage is COMPLETED
    financial_breakdown: Optional[FinancialBreakdown] = None

    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_completed(self) -> bool:
        return self.stage == TransactionStage.COMPLETED

    @property
    def is_same_agent(self) -> bool:
        return self.listing_agent_id == self.selling_agent_id


@dataclass
class Commission:
    """A payable ledger line derived from a financial breakdown."""

    id: str
    transaction_id: str
    amount: float
    commission_type: CommissionType
    agent_id: Optional[str] = None  # None = agency commission
    status: CommissionStatus = CommissionStatus.PENDING
    paid_date: Optional[datetime] = None
    notes: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_agency(self) -> bool:
        return self.agent_id is None
