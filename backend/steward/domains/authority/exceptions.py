"""Authority domain errors.

Illegal ledger transitions are not errors: they return ``None`` so that the
caller re-checks the entry and tells the user it was already handled.
"""


class AuthorityError(Exception):
    """Base class for authority engine errors"""


class UnknownActionTypeError(AuthorityError, LookupError):
    """An action type id or name is not in the catalog (configuration error)"""

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}")


class ActionNotExecutableError(AuthorityError):
    """The ledger entry is not in a state from which it may be executed"""

    def __init__(self, action_log_id: str, status: str):
        self.action_log_id = action_log_id
        self.status = status
        super().__init__(f"Action {action_log_id} cannot be executed in status: {status}")
