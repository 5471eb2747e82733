from .action_type_service import ActionTypeService, get_action_type_service
from .authority_service import AuthorityService, get_authority_service
from .ledger_service import ActionLedgerService, BatchResult, get_ledger_service
from .feedback_service import FeedbackService, get_feedback_service

__all__ = [
    "ActionTypeService",
    "get_action_type_service",
    "AuthorityService",
    "get_authority_service",
    "ActionLedgerService",
    "BatchResult",
    "get_ledger_service",
    "FeedbackService",
    "get_feedback_service",
]
