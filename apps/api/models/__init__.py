"""Models package."""

from .user import User
from .transaction import Transaction
from .credit_ledger import CreditLedger
from .conversation import Conversation
from .message import Message
