"""
Financial records whose amounts and free text are encrypted at rest.

Amounts are floats in memory; validation here runs before the storage
adapter encrypts anything.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .user import utcnow

MAX_AMOUNT = 1_000_000_000


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class BudgetPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class GoalType(str, Enum):
    SAVE = "save"
    REDUCE = "reduce"
    EARN = "earn"
    INVEST = "invest"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class GoalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Transaction(BaseModel):
    """Income or expense entry. Description and amount are encrypted."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    description: str = Field(min_length=1, max_length=200)
    amount: float = Field(ge=0.01, le=MAX_AMOUNT)
    category: str = Field(min_length=1, max_length=64)
    type: TransactionType
    date: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(validate_assignment=True, use_enum_values=True)


class Budget(BaseModel):
    """Spending budget for one category. Amount and spent are encrypted."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    category: str = Field(min_length=1, max_length=64)
    amount: float = Field(ge=0, le=MAX_AMOUNT)
    spent: float = Field(default=0.0, ge=0, le=MAX_AMOUNT)
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(validate_assignment=True, use_enum_values=True)

    @property
    def percentage_used(self) -> float:
        if self.amount <= 0:
            return 0.0
        return round(self.spent / self.amount * 100, 2)


class Goal(BaseModel):
    """Savings or spending goal. Title, description and both amounts are encrypted."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: GoalType = GoalType.SAVE
    category: str = Field(min_length=1, max_length=64)
    target_amount: float = Field(ge=0, le=MAX_AMOUNT)
    current_amount: float = Field(default=0.0, ge=0, le=MAX_AMOUNT)
    target_date: datetime
    start_date: datetime = Field(default_factory=utcnow)
    status: GoalStatus = GoalStatus.ACTIVE
    priority: GoalPriority = GoalPriority.MEDIUM
    is_recurring: bool = False
    recurring_period: Optional[BudgetPeriod] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(validate_assignment=True, use_enum_values=True)

    @model_validator(mode="after")
    def check_recurring_period(self) -> "Goal":
        if self.is_recurring and self.recurring_period is None:
            raise ValueError("recurring_period is required for recurring goals")
        return self

    @property
    def progress_percentage(self) -> float:
        if self.target_amount <= 0:
            return 0.0
        return min(100.0, round(self.current_amount / self.target_amount * 100, 2))


class TransactionCreate(BaseModel):
    """Request body for creating a transaction."""

    description: str = Field(min_length=1, max_length=200)
    amount: float = Field(ge=0.01, le=MAX_AMOUNT)
    category: str = Field(min_length=1, max_length=64)
    type: TransactionType
    date: Optional[datetime] = None


class TransactionResponse(BaseModel):
    """Decrypted transaction as returned to clients."""

    id: str
    description: str
    amount: float
    category: str
    type: TransactionType
    date: datetime
