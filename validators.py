"""validators.py — Input rules shared by the auth and profile services."""

import re

from errors import ErrorKind, ServiceError

USERNAME_RE  = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
MIN_PASSWORD = 6


def validate_password(password: str):
    if len(password) < MIN_PASSWORD:
        raise ServiceError(ErrorKind.INVALID_REQUEST,
                           f"Password must be at least {MIN_PASSWORD} characters")

def validate_username(username: str):
    if not USERNAME_RE.match(username):
        raise ServiceError(ErrorKind.INVALID_REQUEST,
                           "Username must be 3-32 letters, digits, dots, dashes or underscores")
