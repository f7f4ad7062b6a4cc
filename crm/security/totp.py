# crm/security/totp.py
from datetime import datetime, timezone
from typing import Optional

import pyotp
from pyotp.utils import strings_equal

MFA_ISSUER = "Antreva CRM"

# ±1 time-step of clock drift
VALID_WINDOW = 1


class TotpPolicy:
    """
    RFC 6238 codes (30s step, 6 digits) via pyotp.

    verify() returns the matched time-step rather than a bool so the caller can persist it;
    a step at or before the last accepted one never validates again.
    """

    def __init__(self, issuer: str = MFA_ISSUER, valid_window: int = VALID_WINDOW):
        self.issuer = issuer
        self.valid_window = valid_window

    def generate_secret(self) -> str:
        return pyotp.random_base32()

    def generate(self, secret: str, for_time: Optional[datetime] = None) -> str:
        totp = pyotp.TOTP(secret)
        if for_time is None:
            return totp.now()
        return totp.at(for_time)

    def generate_uri(self, secret: str, label: str) -> str:
        """otpauth:// URI for the enrolment QR code."""
        return pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=self.issuer)

    def verify(
        self,
        code: str,
        secret: str,
        last_used_step: Optional[int] = None,
        for_time: Optional[datetime] = None,
    ) -> Optional[int]:
        '''
        :param code: 6 位数字验证码
        :param secret: base32 TOTP secret (already decrypted)
        :param last_used_step: last accepted time-step for this user, None if never used
        :return: matched time-step, or None when the code is wrong, expired or replayed
        '''
        code = (code or "").strip().replace(" ", "")
        if not code.isdigit():
            return None

        totp = pyotp.TOTP(secret)
        for_time = for_time or datetime.now(timezone.utc)
        current_step = totp.timecode(for_time)

        for offset in range(-self.valid_window, self.valid_window + 1):
            step = current_step + offset
            if last_used_step is not None and step <= last_used_step:
                continue
            if strings_equal(code, totp.generate_otp(step)):
                return step
        return None
