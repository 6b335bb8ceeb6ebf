from loanflow.utils.login_security import check_lockout, register_login_attempt

__all__ = [
    "check_lockout",
    "register_login_attempt",
]
