from enum import Enum, IntEnum

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------


class ResponseCode(IntEnum):
    """head.code values in the API response envelope. 0 is success."""

    OK = 0
    VALIDATION_ERROR = 1000
    SIGNATURE_INVALID = 1001
    UNAUTHORIZED = 1002
    FORBIDDEN = 1003
    NOT_FOUND = 1004
    CONFLICT = 1005
    BAD_CREDENTIALS = 1006
    OTP_INVALID = 1007
    OTP_THROTTLED = 1008
    OTP_DELIVERY_FAILED = 1009
    TICKET_INVALID = 1010
    REGISTRATION_CLOSED = 1011
    RATE_LIMITED = 1429
    INTERNAL_ERROR = 1500


class LoginType(str, Enum):
    password = "password"
    otp = "otp"


class OtpChannel(str, Enum):
    sms = "sms"
    email = "email"


class Role(str, Enum):
    user = "user"
    admin = "admin"


# Login identity kind -> OTP delivery channel.
IDENTITY_CHANNEL: dict[str, OtpChannel] = {
    "email": OtpChannel.email,
    "phone": OtpChannel.sms,
}
