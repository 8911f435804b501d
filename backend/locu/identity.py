import logging
from typing import Optional

logger = logging.getLogger(__name__)

LOCAL_OWNER_ID = "local"


class IdentityResolver:
    """Current owner of local rows: an account id, or ``"local"`` when anonymous."""

    def __init__(self, account_id: Optional[str] = None):
        self._account_id = (account_id or "").strip() or None

    @property
    def owner_id(self) -> str:
        return self._account_id or LOCAL_OWNER_ID

    @property
    def account_id(self) -> Optional[str]:
        return self._account_id

    @property
    def is_anonymous(self) -> bool:
        return self._account_id is None

    def sign_in(self, account_id: str) -> None:
        account_id = (account_id or "").strip()
        if not account_id or account_id == LOCAL_OWNER_ID:
            raise ValueError("account id is required")
        self._account_id = account_id
        logger.info("Signed in as %s", account_id)

    def sign_out(self) -> None:
        self._account_id = None
        logger.info("Signed out; writes stay local")
