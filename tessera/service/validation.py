from __future__ import annotations

from tessera.service.errors import ValidationError

EMAIL_MESSAGE = "Invalid email format"
PASSWORD_MESSAGE = (
    "Password must be at least 8 characters long and contain at least one "
    "uppercase letter, one lowercase letter, and one number"
)
USERNAME_MESSAGE = (
    "Username must be 3-50 characters long and contain only letters, numbers, "
    "and underscores"
)

# Lengths are measured in UTF-8 bytes
EMAIL_MIN_BYTES = 5
EMAIL_MAX_BYTES = 255
PASSWORD_MIN_BYTES = 8
USERNAME_MIN_BYTES = 3
USERNAME_MAX_BYTES = 50

_ASCII_DIGITS = frozenset("0123456789")


def _byte_length(value: str) -> int:
    return len(value.encode("utf-8"))


def is_valid_email(email: str) -> bool:
    if not isinstance(email, str):
        return False
    if not EMAIL_MIN_BYTES <= _byte_length(email) <= EMAIL_MAX_BYTES:
        return False
    if email.count("@") != 1:
        return False
    local_part, domain_part = email.split("@")
    if not local_part or not domain_part:
        return False
    return "." in domain_part


def is_strong_password(password: str) -> bool:
    if not isinstance(password, str):
        return False
    if _byte_length(password) < PASSWORD_MIN_BYTES:
        return False
    has_upper = any(ch.isupper() for ch in password)
    has_lower = any(ch.islower() for ch in password)
    has_digit = any(ch in _ASCII_DIGITS for ch in password)
    return has_upper and has_lower and has_digit


def is_valid_username(username: str) -> bool:
    if not isinstance(username, str):
        return False
    if not USERNAME_MIN_BYTES <= _byte_length(username) <= USERNAME_MAX_BYTES:
        return False
    return all(ch.isalnum() or ch == "_" for ch in username)


class CredentialValidator:
    """Format and strength checks for registration input.

    Each ``validate_*`` method returns ``None`` on success and raises
    ``ValidationError`` naming the rejected field otherwise. No state is kept.
    """

    def validate_email(self, email: str) -> None:
        if not is_valid_email(email):
            raise ValidationError(EMAIL_MESSAGE, field="email")

    def validate_password_strength(self, password: str) -> None:
        if not is_strong_password(password):
            raise ValidationError(PASSWORD_MESSAGE, field="password")

    def validate_username(self, username: str) -> None:
        if not is_valid_username(username):
            raise ValidationError(USERNAME_MESSAGE, field="username")

    def validate_registration(
        self, email: str, password: str, username: str | None = None
    ) -> None:
        self.validate_email(email)
        self.validate_password_strength(password)
        if username is not None:
            self.validate_username(username)


__all__ = [
    "CredentialValidator",
    "is_valid_email",
    "is_strong_password",
    "is_valid_username",
]
