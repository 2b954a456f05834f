"""Authentication context for requests made on behalf of an account."""

from dataclasses import dataclass, field

from src.database.models.accounts import Account


@dataclass
class AuthenticatedAccountContext:
    """Authenticated account plus the verified token claims."""

    account: Account
    claims: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.account:
            raise ValueError("Account is required in authentication context")

    @property
    def account_id(self):
        return self.account.id
