"""Models package."""

from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .credit_transfer import CreditTransfer
from .pending_payment import PendingPayment
from .webhook_event import WebhookEvent
from .quota_counter import QuotaCounter
from .generation_job import GenerationJob
