from __future__ import annotations

import re
from typing import List

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128

_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

# Matched case-insensitively as substrings
COMMON_PASSWORDS = ("password123", "admin123456", "welcome12345")


def password_policy_violations(password: str) -> List[str]:
    """Return one message per rule ``password`` breaks; empty when acceptable."""
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        errors.append("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("password must contain an uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("password must contain a digit")
    if not _SPECIAL_CHARACTERS.search(password):
        errors.append("password must contain a special character")
    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        errors.append("password is too common")
    return errors
