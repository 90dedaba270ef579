"""Form validation run before any database or email call."""

import re

EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s-]{10,}$")
SPECIAL_CHARACTERS = "!@#$%^&*"
MIN_PASSWORD_LENGTH = 8


def email_error(value: str | None) -> str | None:
    if not value:
        return "Email is required."
    if not EMAIL_PATTERN.match(value):
        return "Please enter a valid email address."
    return None


def phone_error(value: str | None) -> str | None:
    if not value:
        return "Phone number is required."
    if not PHONE_PATTERN.match(value):
        return "Please enter a valid phone number."
    return None


def password_error(value: str | None, *, strict: bool = False) -> str | None:
    """Return the first problem with ``value``.

    ``strict`` additionally requires a digit, both letter cases and one of
    ``!@#$%^&*``; it is used when a password is reset by email.
    """

    value = value or ""
    if len(value) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if not strict:
        return None
    if not re.search(r"\d", value):
        return "Password must contain at least one number."
    if not re.search(r"[a-z]", value):
        return "Password must contain at least one lowercase letter."
    if not re.search(r"[A-Z]", value):
        return "Password must contain at least one uppercase letter."
    if not any(char in SPECIAL_CHARACTERS for char in value):
        return f"Password must contain at least one special character ({SPECIAL_CHARACTERS})."
    return None


def registration_errors(form) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not (form.get("full_name") or "").strip():
        errors["full_name"] = "Full name is required."
    if not (form.get("username") or "").strip():
        errors["username"] = "Username is required."
    checks = {
        "email": email_error((form.get("email") or "").strip()),
        "phone": phone_error((form.get("phone") or "").strip()),
        "password": password_error(form.get("password")),
    }
    errors.update({name: message for name, message in checks.items() if message})
    if form.get("confirm_password") != form.get("password"):
        errors["confirm_password"] = "Passwords do not match."
    return errors
