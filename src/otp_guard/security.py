"""Security primitives: code generation, comparison and log masking."""

from __future__ import annotations

import hmac
import secrets
import string

DEFAULT_CODE_LENGTH = 4


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Generate a numeric code using the OS CSPRNG.

    Leading zeros are allowed, so every string of *length* digits is
    equally likely.
    """
    return "".join(secrets.choice(string.digits) for _ in range(length))


def constant_time_equals(expected: str, submitted: str) -> bool:
    """Compare two codes without leaking where they first differ.

    Unequal lengths return ``False`` straight away; code length is fixed
    and public, so that branch gives nothing away.
    """
    if len(expected) != len(submitted):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))


def mask_contact(contact: str) -> str:
    """Mask a contact for logs: ``j***n@example.com`` / ``+91******3210``."""
    if "@" in contact:
        local, _, domain = contact.partition("@")
        if len(local) <= 2:
            masked_local = local[:1] + "***"
        else:
            masked_local = local[0] + "***" + local[-1]
        return f"{masked_local}@{domain}"

    prefix = 3 if contact.startswith("+") else 2
    if len(contact) <= prefix + 4:
        return "*" * len(contact)
    return contact[:prefix] + "*" * (len(contact) - prefix - 4) + contact[-4:]
