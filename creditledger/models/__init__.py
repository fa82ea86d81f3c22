from creditledger.models.base import Base
from creditledger.models.user import User
from creditledger.models.credit import CreditTransaction, TransactionType
from creditledger.models.receipt import Receipt

__all__ = ["Base", "User", "CreditTransaction", "TransactionType", "Receipt"]
