"""
Database Models
"""
from app.db.models.budget_account import BudgetAccount
from app.db.models.budget_transaction import BudgetTransaction
from app.db.models.wallet_balance import WalletBalance
from app.db.models.points_transaction import PointsTransaction
from app.db.models.due_item import DueItem
from app.db.models.cashback_campaign import CashbackCampaign

__all__ = [
    "BudgetAccount",
    "BudgetTransaction",
    "WalletBalance",
    "PointsTransaction",
    "DueItem",
    "CashbackCampaign",
]
