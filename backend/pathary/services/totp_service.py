"""TOTP second factor: secret creation and code verification"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from pathary.core.security import generate_totp_secret, totp_uri_from_secret, verify_totp
from pathary.services.user_service import user_service


@dataclass(frozen=True)
class PendingTotp:
    secret: str
    provisioning_uri: str


class TotpService:
    """Thin layer over pyotp bound to the user's stored provisioning URI"""

    @staticmethod
    def create_totp(account_name: str) -> PendingTotp:
        secret = generate_totp_secret()
        return PendingTotp(secret=secret, provisioning_uri=totp_uri_from_secret(secret, account_name))

    @staticmethod
    def verify_totp_uri(db: Session, user_id: int, code: int, totp_uri: Optional[str] = None) -> bool:
        """
        Check a code against ``totp_uri`` or, when omitted, the user's stored URI
        """
        uri = totp_uri or user_service.find_totp_uri(db, user_id)
        if uri is None:
            return False
        return verify_totp(code, uri)


totp_service = TotpService()
