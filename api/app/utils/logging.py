import re

_JID_PATTERN = re.compile(r"\b(\d{3,})(\d{4})@([a-zA-Z0-9.-]+)")
_PHONE_PATTERN = re.compile(r"\+?\d{7,}")


def redact_destination(destination: str) -> str:
    """
    Redact a chat destination for logging.

    Keeps the last four digits and the domain so operators can still tell
    conversations apart, e.g. "5551234567@s.whatsapp.net" becomes
    "******4567@s.whatsapp.net".
    """
    user, sep, domain = destination.partition("@")
    if len(user) <= 4:
        masked = "*" * len(user)
    else:
        masked = "*" * (len(user) - 4) + user[-4:]
    return f"{masked}{sep}{domain}"


def redact_pii(text: str) -> str:
    """
    Redact phone numbers and chat identifiers from free text.

    Used on provider error messages before they are logged, since those
    frequently echo the destination back.
    """
    text = _JID_PATTERN.sub(
        lambda m: "*" * len(m.group(1)) + m.group(2) + "@" + m.group(3), text
    )

    # Bare phone numbers
    text = _PHONE_PATTERN.sub("[PHONE]", text)

    return text


def redact_token(token: str) -> str:
    """Show only the first characters of a secret (e.g. an enrollment code)."""
    return f"{token[:6]}..." if len(token) > 6 else "***"
