"""RFC 6238 time-based one-time passwords for site logins with 2FA (pyotp)."""

import hashlib
from datetime import datetime, timezone

import pyotp

DEFAULT_DIGITS = 6
DEFAULT_PERIOD = 30


def generate_secret(length: int = 32) -> str:
    """Random base32 seed of `length` characters (160 bits by default), unpadded."""

    return pyotp.random_base32(length)


def normalize_secret(secret: str) -> str:
    """Uppercase, strip spaces/dashes, and restore base32 padding."""

    cleaned = secret.replace(" ", "").replace("-", "").upper().rstrip("=")
    return cleaned + "=" * (-len(cleaned) % 8)


def format_secret(secret: str) -> str:
    """Group a seed into blocks of four for manual entry."""

    cleaned = normalize_secret(secret).rstrip("=")
    return " ".join(cleaned[i : i + 4] for i in range(0, len(cleaned), 4))


def _timestamp(at: datetime | float | None) -> float:
    if at is None:
        return datetime.now(timezone.utc).timestamp()
    if isinstance(at, datetime):
        return at.timestamp()
    return float(at)


def _moment(at: datetime | float | None) -> datetime:
    # Aware UTC so pyotp never falls back to local time.
    return datetime.fromtimestamp(int(_timestamp(at)), tz=timezone.utc)


def _generator(secret: str, digits: int, period: int, algorithm: str = "sha1") -> pyotp.TOTP:
    return pyotp.TOTP(
        normalize_secret(secret).rstrip("="),
        digits=digits,
        digest=getattr(hashlib, algorithm),
        interval=period,
    )


def totp(
    secret: str,
    at: datetime | float | None = None,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD,
    algorithm: str = "sha1",
) -> str:
    return _generator(secret, digits, period, algorithm).at(_moment(at))


def verify(
    token: str,
    secret: str,
    at: datetime | float | None = None,
    window: int = 1,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD,
) -> bool:
    """Accept tokens from `window` steps either side of `at` to absorb clock drift."""

    token = token.strip().replace(" ", "")
    if len(token) != digits or not token.isdigit():
        return False
    return _generator(secret, digits, period).verify(token, for_time=_moment(at), valid_window=window)


def seconds_remaining(at: datetime | float | None = None, period: int = DEFAULT_PERIOD) -> int:
    return period - int(_timestamp(at) % period)


def provisioning_uri(secret: str, account: str, issuer: str = "cardrelay") -> str:
    """otpauth:// URI for authenticator apps."""

    return _generator(secret, DEFAULT_DIGITS, DEFAULT_PERIOD).provisioning_uri(name=account, issuer_name=issuer)
